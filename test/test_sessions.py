import pytest
from conftest import TEST_PIN, make_settings, run

from cardshop.errors import AuthenticationError, ValidationError
from cardshop.permissions import Role
from cardshop.sessions import SessionManager


def test_new_session_is_valid_until_ttl(sessions, clock):
    issued = run(sessions.create_session())
    status = run(sessions.validate_session(issued.token))
    assert status.valid
    assert status.expires_in == 24 * 60 * 60

    clock.advance(24 * 60 * 60 - 1)
    assert run(sessions.validate_session(issued.token)).valid

    clock.advance(1)
    assert not run(sessions.validate_session(issued.token)).valid


@pytest.mark.parametrize("token", [None, "", "garbage", "1.2", "a.b.c", "²³.nonce.sig"])
def test_malformed_tokens_are_just_invalid(sessions, token):
    status = run(sessions.validate_session(token))
    assert not status.valid
    assert status.expires_at is None


def test_tampered_token_is_invalid(sessions):
    issued = run(sessions.create_session())
    issued_at, nonce, signature = issued.token.split(".")
    forged = f"{int(issued_at) + 3600}.{nonce}.{signature}"
    assert not run(sessions.validate_session(forged)).valid


def test_token_signed_with_another_secret_is_invalid(store, clock):
    other = SessionManager(store, make_settings(session_secret="someone-else"), clock=clock)
    mine = SessionManager(store, make_settings(), clock=clock)
    issued = run(other.create_session())
    assert not run(mine.validate_session(issued.token)).valid


def test_destroy_revokes_before_expiry(sessions):
    issued = run(sessions.create_session())
    run(sessions.destroy_session(issued.token))
    assert not run(sessions.validate_session(issued.token)).valid


def test_destroy_ignores_unknown_tokens(sessions):
    run(sessions.destroy_session(None))
    run(sessions.destroy_session("not.a.token"))


def test_login_checks_pin(sessions):
    issued = run(sessions.login(TEST_PIN))
    assert run(sessions.validate_session(issued.token)).valid

    with pytest.raises(AuthenticationError):
        run(sessions.login("0000"))
    with pytest.raises(ValidationError):
        run(sessions.login(""))


def test_pin_is_injected_configuration(store, clock):
    manager = SessionManager(store, make_settings(admin_pin="9876"), clock=clock)
    with pytest.raises(AuthenticationError):
        run(manager.login(TEST_PIN))
    run(manager.login("9876"))


def test_unlimited_pin_attempts_by_default(sessions):
    for _ in range(20):
        with pytest.raises(AuthenticationError):
            run(sessions.login("0000"))
    run(sessions.login(TEST_PIN))


def test_pin_lockout_when_configured(store, clock):
    manager = SessionManager(
        store,
        make_settings(admin_pin_max_failures=3, admin_pin_lockout_seconds=60),
        clock=clock,
    )
    for _ in range(3):
        with pytest.raises(AuthenticationError):
            run(manager.login("0000"))
    with pytest.raises(AuthenticationError) as excinfo:
        run(manager.login(TEST_PIN))
    assert "Too many" in excinfo.value.message

    clock.advance(61)
    run(manager.login(TEST_PIN))


def test_authenticate_returns_configured_role(store, clock):
    manager = SessionManager(store, make_settings(admin_session_role="moderator"), clock=clock)
    issued = run(manager.create_session())
    principal = run(manager.authenticate(issued.token))
    assert principal.role == Role.MODERATOR.value

    with pytest.raises(AuthenticationError):
        run(manager.authenticate("bogus"))
