"""Bring-your-own-number verification."""

from did_engine.byon.otp import OtpCheckResult, OtpProvider, OtpSendResult, mask_phone
from did_engine.byon.service import ByonService, ByonStatus

__all__ = [
    "ByonService",
    "ByonStatus",
    "OtpCheckResult",
    "OtpProvider",
    "OtpSendResult",
    "mask_phone",
]
