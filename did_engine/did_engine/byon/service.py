"""Bring-your-own-number (BYON) verification.

A customer proves they control a number by echoing back an SMS code.  On
success the number joins their DIDs as a free, ``assigned`` BYON DID.
Abuse is bounded three ways: a per-customer daily cap on verification
requests, a per-customer cap on BYON numbers, and a per-code attempt
limit.

Phone numbers only ever reach the logs through :func:`mask_phone`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.byon.otp import OtpProvider, mask_phone
from did_engine.clock import Clock, SystemClock, as_utc, first_of_next_month, utc_midnight
from did_engine.errors import ByonError, CustomerNotFound, DidNotFound
from did_engine.inventory import InventoryStateMachine
from did_engine.state.repository import (
    ByonVerificationRepository,
    CountryRepository,
    CustomerRepository,
    DidRepository,
)
from did_engine.state.tables import (
    ByonVerificationTable,
    CountryTable,
    CustomerTable,
    DidStatus,
    DidTable,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

DAILY_LIMIT = 10
OTP_EXPIRY_MINUTES = 10
MAX_OTP_ATTEMPTS = 3
DEFAULT_BYON_LIMIT = 5

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


@dataclass(frozen=True)
class ByonStatus:
    byon_count: int
    byon_limit: int
    daily_verifications_used: int
    daily_limit: int = DAILY_LIMIT

    @property
    def can_add_more(self) -> bool:
        return self.byon_count < self.byon_limit

    @property
    def daily_verifications_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_verifications_used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "byon_count": self.byon_count,
            "byon_limit": self.byon_limit,
            "can_add_more": self.can_add_more,
            "daily_verifications_used": self.daily_verifications_used,
            "daily_verifications_remaining": self.daily_verifications_remaining,
            "daily_limit": self.daily_limit,
        }


class ByonService:
    """OTP-gated onboarding of customer-owned numbers.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    otp:
        SMS verification provider.
    clock:
        Time source for code expiry and the daily window.
    default_limit:
        BYON cap for customers without their own ``byon_limit``.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        otp: OtpProvider,
        clock: Clock | None = None,
        default_limit: int = DEFAULT_BYON_LIMIT,
    ) -> None:
        self._otp = otp
        self._clock = clock or SystemClock()
        self._default_limit = default_limit
        self._customers = CustomerRepository(session)
        self._countries = CountryRepository(session)
        self._dids = DidRepository(session)
        self._verifications = ByonVerificationRepository(session)
        self._inventory = InventoryStateMachine(session, clock=self._clock)

    # -- Checks ---------------------------------------------------------------

    async def _customer(self, customer_id: int) -> CustomerTable:
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})
        return customer

    def _limit_for(self, customer: CustomerTable) -> int:
        return customer.byon_limit if customer.byon_limit is not None else self._default_limit

    @staticmethod
    def _normalise(phone: str) -> str:
        phone = phone.strip()
        if not E164_PATTERN.match(phone):
            raise ByonError.invalid_phone_format(phone)
        return phone

    async def _check_availability(self, phone: str, customer_id: int) -> bool:
        """Raise if *phone* is taken; return whether the customer already holds it."""
        existing = await self._dids.get_by_e164(phone)
        if existing is None:
            return False
        if not existing.is_byon:
            raise ByonError.inventory_number(phone)
        if existing.owner_customer_id is not None and existing.owner_customer_id != customer_id:
            raise ByonError.duplicate_number(phone)
        return existing.owner_customer_id == customer_id

    # -- Operations -----------------------------------------------------------

    async def get_status(self, customer_id: int) -> ByonStatus:
        customer = await self._customer(customer_id)
        return ByonStatus(
            byon_count=await self._dids.count_byon(customer.id),
            byon_limit=self._limit_for(customer),
            daily_verifications_used=await self._verifications.count_since(
                customer.id, utc_midnight(self._clock.now())
            ),
        )

    async def initiate(self, customer_id: int, phone_number: str) -> dict[str, Any]:
        """Validate the number, open a verification record and send the code."""
        customer = await self._customer(customer_id)
        phone = self._normalise(phone_number)
        logger.info("BYON initiate: customer %s, number %s", customer.id, mask_phone(phone))

        already_held = await self._check_availability(phone, customer.id)

        status = await self.get_status(customer.id)
        if status.daily_verifications_used >= DAILY_LIMIT:
            raise ByonError.daily_limit_exceeded(DAILY_LIMIT)
        if not already_held and status.byon_count >= status.byon_limit:
            raise ByonError.byon_limit_reached(status.byon_limit)

        now = self._clock.now()
        verification = await self._verifications.create(
            customer_id=customer.id,
            phone_number=phone,
            status=VerificationStatus.PENDING,
            attempts=0,
            created_at=now,
            expires_at=now + timedelta(minutes=OTP_EXPIRY_MINUTES),
        )

        sent = await self._otp.send_verification(phone)
        if not sent.success:
            await self._verifications.update(verification, status=VerificationStatus.FAILED)
            logger.warning(
                "BYON code delivery failed for customer %s, number %s: %s",
                customer.id,
                mask_phone(phone),
                sent.error,
            )
            raise ByonError.verification_failed(sent.error or "Failed to send verification code")

        await self._verifications.update(verification, session_id=sent.session_id)
        logger.info("BYON verification %s sent to %s", verification.id, mask_phone(phone))
        return {
            "verification_id": verification.id,
            "expires_in": OTP_EXPIRY_MINUTES * 60,
            "daily_attempts_remaining": max(0, status.daily_verifications_remaining - 1),
            "byon_count": status.byon_count,
            "byon_limit": status.byon_limit,
        }

    async def verify(self, customer_id: int, phone_number: str, code: str) -> DidTable:
        """Check *code* and, when approved, hand the number to the customer."""
        customer = await self._customer(customer_id)
        phone = self._normalise(phone_number)
        code = code.strip()
        now = self._clock.now()

        # An exhausted record stays the newest one until a new code is requested.
        latest = await self._verifications.find_latest(phone, customer.id)
        if (
            latest is not None
            and latest.status == VerificationStatus.FAILED
            and latest.attempts >= MAX_OTP_ATTEMPTS
        ):
            raise ByonError.max_attempts()
        verification = await self._verifications.find_latest_pending(phone, customer.id)
        if verification is None:
            raise ByonError.not_found()
        if as_utc(verification.expires_at) < now:
            await self._verifications.update(verification, status=VerificationStatus.EXPIRED)
            raise ByonError.expired()
        if verification.attempts >= MAX_OTP_ATTEMPTS:
            await self._verifications.update(verification, status=VerificationStatus.FAILED)
            raise ByonError.max_attempts()

        await self._verifications.update(verification, attempts=verification.attempts + 1)
        checked = await self._otp.check_verification(phone, code)
        if not (checked.success and checked.approved):
            remaining = MAX_OTP_ATTEMPTS - verification.attempts
            if remaining <= 0:
                await self._verifications.update(verification, status=VerificationStatus.FAILED)
            logger.warning(
                "BYON invalid code for customer %s, number %s (%d attempt(s) left)",
                customer.id,
                mask_phone(phone),
                max(0, remaining),
            )
            raise ByonError.invalid_code(max(0, remaining))

        await self._verifications.update(verification, status=VerificationStatus.APPROVED, verified_at=now)
        did = await self._grant(customer, phone, verification)
        logger.info("BYON number %s verified for customer %s (DID %s)", mask_phone(phone), customer.id, did.id)
        return did

    async def release_byon(self, did_id: int) -> DidTable:
        """Administrator release: detach a BYON DID from its customer."""
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if not did.is_byon:
            raise ByonError.release_denied()
        released = await self._inventory.disable_byon(did.id)
        logger.info("BYON DID %s (%s) released", did.id, mask_phone(did.e164))
        return released

    # -- DID creation ---------------------------------------------------------

    async def detect_country(self, phone: str) -> CountryTable | None:
        """Longest dial-code prefix match, four digits down to one."""
        digits = phone.lstrip("+")
        for length in range(min(4, len(digits)), 0, -1):
            country = await self._countries.find_by_dial_code(digits[:length])
            if country is not None:
                return country
        return None

    async def _grant(self, customer: CustomerTable, phone: str, verification: ByonVerificationTable) -> DidTable:
        next_renewal = first_of_next_month(self._clock.now().date())
        existing = await self._dids.get_by_e164(phone)
        if existing is not None and existing.is_byon:
            if existing.status == DidStatus.DISABLED:
                return await self._inventory.reactivate_byon(existing.id, customer.id, verification.id, next_renewal)
            if existing.owner_customer_id == customer.id:
                return await self._inventory.relink_byon(existing.id, customer.id, verification.id)
            raise ByonError.duplicate_number(phone)
        if existing is not None:
            raise ByonError.inventory_number(phone)

        country = await self.detect_country(phone)
        digits = phone.lstrip("+")
        national = digits[len(country.dial_code):] if country is not None else digits
        return await self._inventory.create_byon_did(
            e164=phone,
            national_number=national,
            customer_id=customer.id,
            verification_id=verification.id,
            country_id=country.id if country is not None else None,
            next_renewal_at=next_renewal,
        )
