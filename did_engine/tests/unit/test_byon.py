"""Unit tests for bring-your-own-number verification."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from did_engine.byon import ByonService, OtpCheckResult, OtpSendResult, mask_phone
from did_engine.errors import ByonError, DidNotFound
from did_engine.state.repository import (
    ByonVerificationRepository,
    CountryRepository,
    CustomerRepository,
    DidRepository,
)
from did_engine.state.tables import DidStatus, VerificationStatus

PHONE = "+14155551234"


class _FakeOtp:
    """In-memory OTP provider that accepts a single fixed code."""

    def __init__(self, code: str = "123456", *, send_error: str | None = None) -> None:
        self.code = code
        self.send_error = send_error
        self.sent: list[str] = []
        self.checked: list[tuple[str, str]] = []

    async def send_verification(self, e164: str) -> OtpSendResult:
        if self.send_error is not None:
            return OtpSendResult(success=False, error=self.send_error)
        self.sent.append(e164)
        return OtpSendResult(success=True, session_id=f"VE{len(self.sent):04d}")

    async def check_verification(self, e164: str, code: str) -> OtpCheckResult:
        self.checked.append((e164, code))
        approved = code == self.code
        return OtpCheckResult(success=True, approved=approved, error=None if approved else "Invalid code")


@pytest.fixture()
def otp() -> _FakeOtp:
    return _FakeOtp()


@pytest_asyncio.fixture
async def countries(async_session):
    repo = CountryRepository(async_session)
    return {
        "US": await repo.create("US", "United States", "1"),
        "BS": await repo.create("BS", "Bahamas", "1242"),
        "ES": await repo.create("ES", "Spain", "34"),
    }


def _service(session, clock, otp, **kwargs) -> ByonService:
    return ByonService(session, otp=otp, clock=clock, **kwargs)


class TestMaskPhone:
    def test_keeps_prefix_and_last_two(self) -> None:
        assert mask_phone("+14155551234") == "+141******34"

    def test_short_values_are_fully_masked(self) -> None:
        assert mask_phone("+1234") == "*****"


# ---------------------------------------------------------------------------
# Initiate
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_sends_code(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)

    result = await service.initiate(prepaid_customer.id, f"  {PHONE} ")

    assert otp.sent == [PHONE]
    assert result["expires_in"] == 600
    assert result["daily_attempts_remaining"] == 9
    assert result["byon_count"] == 0
    assert result["byon_limit"] == 5

    record = await ByonVerificationRepository(async_session).get(result["verification_id"])
    assert record.status == VerificationStatus.PENDING
    assert record.session_id == "VE0001"
    assert record.expires_at == clock.now() + timedelta(minutes=10)


@pytest.mark.asyncio
@pytest.mark.parametrize("phone", ["4155551234", "+0123456", "+1", "+1234567890123456", "+1-415-555"])
async def test_initiate_rejects_non_e164(async_session, clock, otp, prepaid_customer, phone) -> None:
    with pytest.raises(ByonError) as exc_info:
        await _service(async_session, clock, otp).initiate(prepaid_customer.id, phone)

    assert exc_info.value.code == ByonError.INVALID_PHONE_FORMAT
    assert exc_info.value.http_status == 400
    assert otp.sent == []


@pytest.mark.asyncio
async def test_inventory_numbers_cannot_be_claimed(async_session, clock, otp, prepaid_customer, available_did):
    with pytest.raises(ByonError) as exc_info:
        await _service(async_session, clock, otp).initiate(prepaid_customer.id, available_did.e164)

    assert exc_info.value.code == ByonError.INVENTORY_NUMBER
    assert exc_info.value.http_status == 409


@pytest.mark.asyncio
async def test_number_held_by_another_customer(async_session, clock, otp, prepaid_customer) -> None:
    other = await CustomerRepository(async_session).create("Other")
    await DidRepository(async_session).create(
        PHONE,
        status=DidStatus.ASSIGNED,
        owner_customer_id=other.id,
        next_renewal_at=date(2026, 4, 1),
        is_byon=True,
    )

    with pytest.raises(ByonError) as exc_info:
        await _service(async_session, clock, otp).initiate(prepaid_customer.id, PHONE)

    assert exc_info.value.code == ByonError.DUPLICATE_NUMBER


@pytest.mark.asyncio
async def test_daily_limit_resets_at_utc_midnight(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    for _ in range(10):
        await service.initiate(prepaid_customer.id, PHONE)

    with pytest.raises(ByonError) as exc_info:
        await service.initiate(prepaid_customer.id, PHONE)
    assert exc_info.value.code == ByonError.DAILY_LIMIT_EXCEEDED
    assert exc_info.value.http_status == 429

    clock.advance(timedelta(hours=14))
    result = await service.initiate(prepaid_customer.id, PHONE)
    assert result["daily_attempts_remaining"] == 9


@pytest.mark.asyncio
async def test_byon_limit_uses_customer_override(async_session, clock, otp) -> None:
    customer = await CustomerRepository(async_session).create("Capped", byon_limit=1)
    await DidRepository(async_session).create(
        "+14155550001",
        status=DidStatus.ASSIGNED,
        owner_customer_id=customer.id,
        next_renewal_at=date(2026, 4, 1),
        is_byon=True,
    )
    service = _service(async_session, clock, otp)

    with pytest.raises(ByonError) as exc_info:
        await service.initiate(customer.id, PHONE)
    assert exc_info.value.code == ByonError.BYON_LIMIT_REACHED
    assert exc_info.value.http_status == 403

    # Re-verifying a number the customer already holds does not need a free slot.
    result = await service.initiate(customer.id, "+14155550001")
    assert result["byon_count"] == 1


@pytest.mark.asyncio
async def test_send_failure_marks_record_failed(async_session, clock, prepaid_customer) -> None:
    service = _service(async_session, clock, _FakeOtp(send_error="carrier rejected"))

    with pytest.raises(ByonError) as exc_info:
        await service.initiate(prepaid_customer.id, PHONE)

    assert exc_info.value.code == ByonError.VERIFICATION_FAILED
    assert exc_info.value.http_status == 503
    latest = await ByonVerificationRepository(async_session).find_latest(PHONE, prepaid_customer.id)
    assert latest.status == VerificationStatus.FAILED
    status = await service.get_status(prepaid_customer.id)
    assert status.daily_verifications_used == 1


@pytest.mark.asyncio
async def test_failed_resend_keeps_earlier_code_usable(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    started = await service.initiate(prepaid_customer.id, PHONE)
    clock.advance(timedelta(minutes=1))
    with pytest.raises(ByonError):
        await _service(async_session, clock, _FakeOtp(send_error="carrier rejected")).initiate(
            prepaid_customer.id, PHONE
        )

    did = await service.verify(prepaid_customer.id, PHONE, "123456")

    assert did.status == DidStatus.ASSIGNED
    assert did.owner_customer_id == prepaid_customer.id
    verification = await ByonVerificationRepository(async_session).get(started["verification_id"])
    assert verification.status == VerificationStatus.APPROVED


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verify_creates_free_assigned_did(async_session, clock, otp, prepaid_customer, countries) -> None:
    service = _service(async_session, clock, otp)
    started = await service.initiate(prepaid_customer.id, PHONE)

    did = await service.verify(prepaid_customer.id, PHONE, " 123456 ")

    assert did.is_byon is True
    assert did.status == DidStatus.ASSIGNED
    assert did.owner_customer_id == prepaid_customer.id
    assert did.setup_price == Decimal("0.00")
    assert did.monthly_price == Decimal("0.00")
    assert did.country_id == countries["US"].id
    assert did.national_number == "4155551234"
    assert did.next_renewal_at == date(2026, 4, 1)
    assert did.byon_verification_id == started["verification_id"]

    record = await ByonVerificationRepository(async_session).get(started["verification_id"])
    assert record.status == VerificationStatus.APPROVED
    assert record.verified_at == clock.now()
    assert (await service.get_status(prepaid_customer.id)).byon_count == 1


@pytest.mark.asyncio
async def test_wrong_codes_burn_attempts(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    started = await service.initiate(prepaid_customer.id, PHONE)

    remaining = []
    for _ in range(3):
        with pytest.raises(ByonError) as exc_info:
            await service.verify(prepaid_customer.id, PHONE, "000000")
        assert exc_info.value.code == ByonError.INVALID_CODE
        assert exc_info.value.http_status == 401
        remaining.append(exc_info.value.details["attempts_remaining"])

    assert remaining == [2, 1, 0]
    record = await ByonVerificationRepository(async_session).get(started["verification_id"])
    assert record.status == VerificationStatus.FAILED
    assert record.attempts == 3

    # Even the right code is refused once the attempts are spent.
    with pytest.raises(ByonError) as exc_info:
        await service.verify(prepaid_customer.id, PHONE, "123456")
    assert exc_info.value.code == ByonError.MAX_ATTEMPTS
    assert exc_info.value.http_status == 429
    assert len(otp.checked) == 3
    assert (await ByonVerificationRepository(async_session).get(started["verification_id"])).attempts == 3

    # A fresh code starts a new record with a full set of attempts.
    await service.initiate(prepaid_customer.id, PHONE)
    did = await service.verify(prepaid_customer.id, PHONE, "123456")
    assert did.owner_customer_id == prepaid_customer.id


@pytest.mark.asyncio
async def test_expired_code(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    started = await service.initiate(prepaid_customer.id, PHONE)
    clock.advance(timedelta(minutes=11))

    with pytest.raises(ByonError) as exc_info:
        await service.verify(prepaid_customer.id, PHONE, "123456")

    assert exc_info.value.code == ByonError.EXPIRED
    record = await ByonVerificationRepository(async_session).get(started["verification_id"])
    assert record.status == VerificationStatus.EXPIRED
    assert otp.checked == []


@pytest.mark.asyncio
async def test_verify_without_initiate(async_session, clock, otp, prepaid_customer) -> None:
    with pytest.raises(ByonError) as exc_info:
        await _service(async_session, clock, otp).verify(prepaid_customer.id, PHONE, "123456")

    assert exc_info.value.code == ByonError.NOT_FOUND
    assert exc_info.value.http_status == 404


@pytest.mark.asyncio
async def test_reverification_relinks_existing_did(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    await service.initiate(prepaid_customer.id, PHONE)
    first = await service.verify(prepaid_customer.id, PHONE, "123456")

    again = await service.initiate(prepaid_customer.id, PHONE)
    second = await service.verify(prepaid_customer.id, PHONE, "123456")

    assert second.id == first.id
    assert second.byon_verification_id == again["verification_id"]
    assert (await service.get_status(prepaid_customer.id)).byon_count == 1


# ---------------------------------------------------------------------------
# Release and country detection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_release_disables_and_reverify_reactivates(async_session, clock, otp, prepaid_customer) -> None:
    service = _service(async_session, clock, otp)
    await service.initiate(prepaid_customer.id, PHONE)
    did = await service.verify(prepaid_customer.id, PHONE, "123456")

    released = await service.release_byon(did.id)

    assert released.status == DidStatus.DISABLED
    assert released.owner_customer_id is None
    assert (await service.get_status(prepaid_customer.id)).byon_count == 0

    await service.initiate(prepaid_customer.id, PHONE)
    restored = await service.verify(prepaid_customer.id, PHONE, "123456")
    assert restored.id == did.id
    assert restored.status == DidStatus.ASSIGNED


@pytest.mark.asyncio
async def test_release_refuses_inventory_numbers(async_session, clock, otp, available_did) -> None:
    service = _service(async_session, clock, otp)

    with pytest.raises(ByonError) as exc_info:
        await service.release_byon(available_did.id)
    assert exc_info.value.code == ByonError.RELEASE_DENIED

    with pytest.raises(DidNotFound):
        await service.release_byon(987654)


@pytest.mark.asyncio
async def test_detect_country_prefers_longest_prefix(async_session, clock, otp, countries) -> None:
    service = _service(async_session, clock, otp)

    assert (await service.detect_country("+12425551234")).iso_code == "BS"
    assert (await service.detect_country("+14155551234")).iso_code == "US"
    assert (await service.detect_country("+34910000001")).iso_code == "ES"
    assert await service.detect_country("+999123") is None


@pytest.mark.asyncio
async def test_status_defaults(async_session, clock, otp, prepaid_customer) -> None:
    status = await _service(async_session, clock, otp, default_limit=3).get_status(prepaid_customer.id)

    assert status.to_dict() == {
        "byon_count": 0,
        "byon_limit": 3,
        "can_add_more": True,
        "daily_verifications_used": 0,
        "daily_verifications_remaining": 10,
        "daily_limit": 10,
    }
