"""Interface to the SMS one-time-password provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class OtpSendResult:
    success: bool
    session_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class OtpCheckResult:
    success: bool
    approved: bool = False
    error: str | None = None


class OtpProvider(Protocol):
    """Sends and checks verification codes.

    Implementations report provider failures in the result instead of
    raising, so the caller can record the attempt as failed.
    """

    async def send_verification(self, e164: str) -> OtpSendResult: ...

    async def check_verification(self, e164: str, code: str) -> OtpCheckResult: ...


def mask_phone(phone: str) -> str:
    """Keep the first four and last two characters, e.g. ``+346*****78``."""
    if len(phone) <= 6:
        return "*" * len(phone)
    return phone[:4] + "*" * (len(phone) - 6) + phone[-2:]
