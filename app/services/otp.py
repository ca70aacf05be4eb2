from __future__ import annotations

import enum
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from app.models import Account

OTP_DIGITS = "0123456789"


class OtpOutcome(str, enum.Enum):
    ISSUED = "ISSUED"
    VERIFIED = "VERIFIED"
    INVALID_CODE = "INVALID_CODE"
    EXPIRED = "EXPIRED"
    RESEND_LIMIT_EXCEEDED = "RESEND_LIMIT_EXCEEDED"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_code(code: str | None) -> str:
    return (code or "").strip()


def generate_otp(length: int = 6) -> str:
    return "".join(secrets.choice(OTP_DIGITS) for _ in range(max(4, length)))


def issue_otp(
    account: Account,
    *,
    ttl_minutes: int,
    length: int = 6,
    now_utc: datetime | None = None,
) -> str:
    now = now_utc or _utc_now()
    code = generate_otp(length)
    account.otp_code = code
    account.otp_expires_at = now + timedelta(minutes=ttl_minutes)
    account.is_verified = False
    return code


def is_otp_window_open(account: Account, *, now_utc: datetime | None = None) -> bool:
    if account.otp_expires_at is None:
        return False
    now = now_utc or _utc_now()
    return now < _as_utc(account.otp_expires_at)


def consume_otp(
    account: Account,
    presented_code: str | None,
    *,
    max_resends: int,
    now_utc: datetime | None = None,
) -> OtpOutcome:
    """Check a presented code: resend ceiling, then equality, then expiry.

    Only a fully successful check mutates the account.
    """
    if (account.otp_resend_count or 0) >= max_resends:
        return OtpOutcome.RESEND_LIMIT_EXCEEDED

    stored_code = account.otp_code
    candidate = _normalize_code(presented_code)
    if not stored_code or not candidate:
        return OtpOutcome.INVALID_CODE
    if not hmac.compare_digest(stored_code.encode("utf-8"), candidate.encode("utf-8")):
        return OtpOutcome.INVALID_CODE

    if not is_otp_window_open(account, now_utc=now_utc):
        return OtpOutcome.EXPIRED

    account.otp_code = None
    account.is_verified = True
    account.otp_resend_count = 0
    return OtpOutcome.VERIFIED


def resend_otp(
    account: Account,
    *,
    ttl_minutes: int,
    max_resends: int,
    length: int = 6,
    now_utc: datetime | None = None,
) -> tuple[OtpOutcome, str | None]:
    if (account.otp_resend_count or 0) >= max_resends:
        return OtpOutcome.RESEND_LIMIT_EXCEEDED, None

    code = issue_otp(account, ttl_minutes=ttl_minutes, length=length, now_utc=now_utc)
    account.otp_resend_count = (account.otp_resend_count or 0) + 1
    return OtpOutcome.ISSUED, code
