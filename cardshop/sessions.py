"""
Admin sessions.

A single shared PIN authenticates the console. A successful check issues an opaque bearer token
"<issued_at>.<nonce>.<hmac>" carried in the admin_session cookie; a server-side record keyed by the
nonce allows logout to revoke it before the 24h TTL runs out. No refresh: expiry is fixed at issuance.
"""
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from cardshop.config import Settings
from cardshop.errors import AuthenticationError, ExternalServiceError, ValidationError
from cardshop.metrics import admin_logins_total
from cardshop.permissions import Principal
from cardshop.store import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
PIN_FAILURES_KEY = "admin_pin:failures"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    issued_at: int
    expires_at: int
    max_age: int


@dataclass(frozen=True)
class SessionStatus:
    valid: bool
    expires_at: int | None = None
    expires_in: int | None = None


INVALID = SessionStatus(valid=False)


class SessionManager:
    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._settings = settings
        self._clock = clock
        self._secret = settings.session_secret.encode("utf-8")

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def _signature_ok(self, issued_at: int, nonce: str, signature: str) -> bool:
        expected = self._sign(f"{issued_at}.{nonce}")
        return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))

    async def verify_pin(self, pin: str | None) -> None:
        if not pin:
            raise ValidationError("PIN is required")
        max_failures = self._settings.admin_pin_max_failures
        try:
            if max_failures and await self._locked_out():
                admin_logins_total.labels(result="locked").inc()
                raise AuthenticationError("Too many failed attempts, try again later")
            matched = secrets.compare_digest(
                pin.encode("utf-8"),
                self._settings.admin_pin.encode("utf-8"),
            )
            if not matched:
                admin_logins_total.labels(result="invalid_pin").inc()
                logger.warning("Invalid admin PIN attempt")
                if max_failures:
                    await self._record_failure(max_failures)
                raise AuthenticationError("Invalid PIN")
            if max_failures:
                await self._store.delete(PIN_FAILURES_KEY)
        except (AuthenticationError, ValidationError):
            raise
        except Exception as e:
            logger.exception("PIN check failed on store access: %s", e)
            raise ExternalServiceError() from e

    async def _locked_out(self) -> bool:
        entry = await self._store.get(PIN_FAILURES_KEY)
        if entry is None:
            return False
        return entry.value.get("locked_until", 0) > self._clock()

    async def _record_failure(self, max_failures: int) -> None:
        lockout = self._settings.admin_pin_lockout_seconds
        for _ in range(self._settings.order_cas_max_attempts):
            entry = await self._store.get(PIN_FAILURES_KEY)
            count = (entry.value["count"] if entry else 0) + 1
            value = {"count": count, "locked_until": 0}
            if count >= max_failures:
                value = {"count": 0, "locked_until": self._clock() + lockout}
                logger.warning("Admin PIN locked for %ds after %d failures", lockout, count)
            if await self._store.put_if_version(
                PIN_FAILURES_KEY, value, entry.version if entry else None, ttl_seconds=lockout
            ):
                return

    async def create_session(self) -> IssuedSession:
        issued_at = int(self._clock())
        ttl = self._settings.session_ttl_seconds
        nonce = secrets.token_urlsafe(32)
        payload = f"{issued_at}.{nonce}"
        token = f"{payload}.{self._sign(payload)}"
        record = {"issued_at": issued_at, "expires_at": issued_at + ttl}
        try:
            await self._store.put_if_version(SESSION_KEY_PREFIX + nonce, record, None, ttl_seconds=ttl)
        except Exception as e:
            logger.exception("Could not store admin session: %s", e)
            raise ExternalServiceError() from e
        return IssuedSession(token=token, issued_at=issued_at, expires_at=issued_at + ttl, max_age=ttl)

    async def login(self, pin: str | None) -> IssuedSession:
        await self.verify_pin(pin)
        session = await self.create_session()
        admin_logins_total.labels(result="success").inc()
        logger.info("Admin login successful")
        return session

    @staticmethod
    def _parse(token: str | None) -> tuple[int, str, str] | None:
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            return None
        issued_at, nonce, signature = parts
        if not (issued_at.isascii() and issued_at.isdigit()):
            return None
        return int(issued_at), nonce, signature

    async def validate_session(self, token: str | None) -> SessionStatus:
        """Missing, malformed, forged, expired and revoked tokens all come back as INVALID."""
        parsed = self._parse(token)
        if parsed is None:
            return INVALID
        issued_at, nonce, signature = parsed
        if not self._signature_ok(issued_at, nonce, signature):
            return INVALID
        expires_at = issued_at + self._settings.session_ttl_seconds
        now = self._clock()
        if now >= expires_at:
            return INVALID
        try:
            record = await self._store.get(SESSION_KEY_PREFIX + nonce)
        except Exception as e:
            logger.exception("Could not read admin session: %s", e)
            raise ExternalServiceError() from e
        if record is None:
            return INVALID
        return SessionStatus(valid=True, expires_at=expires_at, expires_in=int(expires_at - now))

    async def destroy_session(self, token: str | None) -> None:
        parsed = self._parse(token)
        if parsed is None:
            return
        issued_at, nonce, signature = parsed
        if not self._signature_ok(issued_at, nonce, signature):
            return
        try:
            await self._store.delete(SESSION_KEY_PREFIX + nonce)
        except Exception as e:
            logger.exception("Could not revoke admin session: %s", e)
            raise ExternalServiceError() from e
        logger.info("Admin session revoked")

    async def authenticate(self, token: str | None) -> Principal:
        status = await self.validate_session(token)
        if not status.valid:
            raise AuthenticationError()
        return Principal(role=self._settings.admin_session_role)
