"""
Mobile number verification for the card configuration flow.

Per number:  unverified --request_code--> code_requested --verify_code(ok)--> verified
             code_requested --expired / too many attempts--> unverified
             any --bypass--> verified (only while OTP_BYPASS_ENABLED)

A wrong code keeps the number in code_requested and bumps its attempt count. Attempts are unlimited
and bypass is allowed unless configured otherwise; codes always expire after OTP_TTL_SECONDS.
State lives in the shared store; writes are compare-and-swap on the session version.
"""
import logging
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from cardshop.config import Settings
from cardshop.errors import AuthorizationError, ExternalServiceError, ValidationError, service_boundary
from cardshop.metrics import otp_requests_total, otp_verifications_total
from cardshop.notifications import NotificationDispatcher, render_otp_sms, to_e164
from cardshop.store import KeyValueStore, Versioned

logger = logging.getLogger(__name__)

VERIFICATION_KEY_PREFIX = "mobile_verification:"
_ALLOWED_CHARS = re.compile(r"^[\d\s\-+()]+$")
MIN_DIGITS = 10
MAX_DIGITS = 15


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    CODE_REQUESTED = "code_requested"
    VERIFIED = "verified"


@dataclass(frozen=True)
class VerificationSession:
    mobile: str
    state: VerificationState
    attempts: int = 0
    issued_at: float | None = None
    verified_at: float | None = None


@dataclass(frozen=True)
class DispatchResult:
    sent: bool
    mobile: str
    expires_at: float
    code: str | None = None  # only when OTP_EXPOSE_CODE is on


def normalize_mobile(full_number: Any) -> str:
    """'+91 99999 99999' -> '+919999999999'; raises ValidationError for anything unusable."""
    if not isinstance(full_number, str) or not full_number.strip():
        raise ValidationError("Mobile number is required")
    if not _ALLOWED_CHARS.match(full_number.strip()):
        raise ValidationError("Mobile number contains invalid characters")
    digits = re.sub(r"\D", "", full_number)
    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise ValidationError(f"Please enter a valid mobile number ({MIN_DIGITS}-{MAX_DIGITS} digits)")
    return to_e164(full_number)


class VerificationWorkflow:
    def __init__(
        self,
        store: KeyValueStore,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

    def _ttl_for(self, state: str) -> int:
        if state == VerificationState.VERIFIED.value:
            return self._settings.verified_ttl_seconds
        # Keep an expired code around long enough to report "expired" rather than "no code".
        return self._settings.otp_ttl_seconds * 2

    def _new_code(self) -> str:
        length = self._settings.otp_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    async def _write(self, key: str, value: dict[str, Any], expected: Versioned | None) -> bool:
        return await self._store.put_if_version(
            key, value, expected.version if expected else None, ttl_seconds=self._ttl_for(value["state"])
        )

    def _expired(self, session: dict[str, Any], now: float) -> bool:
        return now - session["issued_at"] >= self._settings.otp_ttl_seconds

    @service_boundary
    async def request_code(self, full_number: Any) -> DispatchResult:
        mobile = normalize_mobile(full_number)
        key = VERIFICATION_KEY_PREFIX + mobile
        code = self._new_code()
        now = self._clock()
        pending = {
            "state": VerificationState.CODE_REQUESTED.value,
            "code": code,
            "issued_at": now,
            "attempts": 0,
            "verified_at": None,
        }
        for _ in range(self._settings.order_cas_max_attempts):
            previous = await self._store.get(key)
            if await self._write(key, pending, previous):
                break
        else:
            raise ExternalServiceError("Verification is busy for this number, please retry")

        try:
            await self._dispatcher.send_sms(mobile, render_otp_sms(code, self._settings.otp_ttl_seconds))
        except Exception as e:
            otp_requests_total.labels(outcome="failure").inc()
            logger.warning("Verification SMS to %s failed: %s", mobile, e)
            await self._restore(key, code, previous)
            raise ExternalServiceError("Failed to send verification code") from e

        otp_requests_total.labels(outcome="sent").inc()
        logger.info("Verification code issued for %s", mobile)
        if self._settings.otp_expose_code:
            logger.info("Development verification code for %s: %s", mobile, code)
        return DispatchResult(
            sent=True,
            mobile=mobile,
            expires_at=now + self._settings.otp_ttl_seconds,
            code=code if self._settings.otp_expose_code else None,
        )

    async def _restore(self, key: str, code: str, previous: Versioned | None) -> None:
        """Put back what was there before an undelivered code, unless someone wrote since."""
        current = await self._store.get(key)
        if current is None or current.value.get("code") != code:
            return
        if previous is None:
            await self._store.delete(key)
        else:
            await self._write(key, previous.value, current)

    def _code_text(self, submitted_code: Any) -> str:
        """Codes are digit strings; a JSON number gets its leading zeros back (12345 -> '012345')."""
        if submitted_code is None:
            return ""
        if isinstance(submitted_code, str):
            return submitted_code.strip()
        if isinstance(submitted_code, int) and not isinstance(submitted_code, bool) and submitted_code >= 0:
            return f"{submitted_code:0{self._settings.otp_length}d}"
        raise ValidationError("Invalid verification code")

    @service_boundary
    async def verify_code(self, full_number: Any, submitted_code: Any) -> bool:
        mobile = normalize_mobile(full_number)
        submitted = self._code_text(submitted_code)
        if not submitted:
            raise ValidationError("Please enter the verification code")
        key = VERIFICATION_KEY_PREFIX + mobile
        max_attempts = self._settings.otp_max_attempts

        for _ in range(self._settings.order_cas_max_attempts):
            entry = await self._store.get(key)
            session = entry.value if entry else None
            if session is not None and session["state"] == VerificationState.VERIFIED.value:
                return True
            if session is None or session["state"] != VerificationState.CODE_REQUESTED.value:
                raise ValidationError("No verification code requested for this number")

            now = self._clock()
            reset = dict(session, state=VerificationState.UNVERIFIED.value, code=None)
            if self._expired(session, now):
                if await self._write(key, reset, entry):
                    otp_verifications_total.labels(result="expired").inc()
                    raise ValidationError("Verification code expired, please request a new one")
                continue

            if secrets.compare_digest(submitted.encode("utf-8"), session["code"].encode("utf-8")):
                verified = dict(
                    session,
                    state=VerificationState.VERIFIED.value,
                    code=None,
                    verified_at=now,
                )
                if await self._write(key, verified, entry):
                    otp_verifications_total.labels(result="verified").inc()
                    logger.info("Mobile %s verified", mobile)
                    return True
                continue

            attempts = session["attempts"] + 1
            if max_attempts and attempts >= max_attempts:
                if await self._write(key, dict(reset, attempts=attempts), entry):
                    otp_verifications_total.labels(result="locked").inc()
                    logger.warning("Mobile %s: code discarded after %d invalid attempts", mobile, attempts)
                    raise ValidationError("Too many invalid attempts, please request a new code")
                continue
            if await self._write(key, dict(session, attempts=attempts), entry):
                otp_verifications_total.labels(result="invalid").inc()
                raise ValidationError("Invalid verification code")

        raise ExternalServiceError("Verification is busy for this number, please retry")

    @service_boundary
    async def bypass(self, full_number: Any) -> VerificationSession:
        """Mark the number verified without a code. Development escape hatch."""
        mobile = normalize_mobile(full_number)
        if not self._settings.otp_bypass_enabled:
            raise AuthorizationError("Verification bypass is disabled")
        key = VERIFICATION_KEY_PREFIX + mobile
        now = self._clock()
        for _ in range(self._settings.order_cas_max_attempts):
            entry = await self._store.get(key)
            attempts = entry.value.get("attempts", 0) if entry else 0
            value = {
                "state": VerificationState.VERIFIED.value,
                "code": None,
                "issued_at": entry.value.get("issued_at") if entry else None,
                "attempts": attempts,
                "verified_at": now,
                "bypassed": True,
            }
            if await self._write(key, value, entry):
                otp_verifications_total.labels(result="bypassed").inc()
                logger.warning("Mobile verification bypassed for %s", mobile)
                return VerificationSession(
                    mobile=mobile, state=VerificationState.VERIFIED, attempts=attempts, verified_at=now
                )
        raise ExternalServiceError("Verification is busy for this number, please retry")

    @service_boundary
    async def session(self, full_number: Any) -> VerificationSession:
        mobile = normalize_mobile(full_number)
        entry = await self._store.get(VERIFICATION_KEY_PREFIX + mobile)
        if entry is None:
            return VerificationSession(mobile=mobile, state=VerificationState.UNVERIFIED)
        value = entry.value
        state = VerificationState(value["state"])
        if state == VerificationState.CODE_REQUESTED and self._expired(value, self._clock()):
            state = VerificationState.UNVERIFIED
        return VerificationSession(
            mobile=mobile,
            state=state,
            attempts=value.get("attempts", 0),
            issued_at=value.get("issued_at"),
            verified_at=value.get("verified_at"),
        )

    async def status(self, full_number: Any) -> VerificationState:
        return (await self.session(full_number)).state

    async def ensure_verified(self, full_number: Any) -> None:
        """Checkout gate for a card configuration."""
        if await self.status(full_number) != VerificationState.VERIFIED:
            raise ValidationError("Mobile number is not verified")
