"""Tests for the health-check endpoint."""

from __future__ import annotations

import pytest

from api import __version__


@pytest.mark.asyncio
async def test_health_reports_database(client) -> None:
    resp = await client.get("/api/v1/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok"}


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client) -> None:
    resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "req-123"})

    assert resp.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_correlation_id_is_generated(client) -> None:
    resp = await client.get("/api/v1/health")

    assert len(resp.headers["X-Correlation-ID"]) == 36
