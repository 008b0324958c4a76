import pytest
from conftest import RecordingDispatcher, make_settings, run

from cardshop.errors import AuthorizationError, ExternalServiceError, ValidationError
from cardshop.verification import VerificationState, VerificationWorkflow, normalize_mobile

NUMBER = "+91 9999999999"


def make_workflow(store, clock, dispatcher=None, **overrides):
    return VerificationWorkflow(store, dispatcher or RecordingDispatcher(), make_settings(**overrides), clock=clock)


def test_normalize_mobile():
    assert normalize_mobile("+91 9999999999") == "+919999999999"
    assert normalize_mobile(" +1 (732) 555-0101 ") == "+17325550101"


@pytest.mark.parametrize("bad", ["", "   ", None, "+91 12345", "+91 99999abc99", "1" * 16])
def test_normalize_mobile_rejects(bad):
    with pytest.raises(ValidationError):
        normalize_mobile(bad)


def test_request_then_verify_correct_code(workflow, dispatcher):
    result = run(workflow.request_code(NUMBER))
    assert result.sent
    assert result.code is None
    assert dispatcher.sms[0][0] == "+919999999999"
    assert run(workflow.status(NUMBER)) == VerificationState.CODE_REQUESTED

    assert run(workflow.verify_code(NUMBER, dispatcher.last_code())) is True
    session = run(workflow.session(NUMBER))
    assert session.state == VerificationState.VERIFIED
    run(workflow.ensure_verified(NUMBER))


def test_same_number_in_other_formatting_shares_state(workflow, dispatcher):
    run(workflow.request_code("+91 99999 99999"))
    assert run(workflow.verify_code("+919999999999", dispatcher.last_code()))


def test_wrong_code_keeps_code_requested_and_counts(workflow, dispatcher):
    run(workflow.request_code(NUMBER))
    code = dispatcher.last_code()
    wrong = "000000" if code != "000000" else "111111"

    for expected_attempts in (1, 2):
        with pytest.raises(ValidationError) as excinfo:
            run(workflow.verify_code(NUMBER, wrong))
        assert "Invalid verification code" in excinfo.value.message
        session = run(workflow.session(NUMBER))
        assert session.state == VerificationState.CODE_REQUESTED
        assert session.attempts == expected_attempts

    assert run(workflow.verify_code(NUMBER, code))


def test_unlimited_attempts_by_default(workflow, dispatcher):
    run(workflow.request_code(NUMBER))
    code = dispatcher.last_code()
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(25):
        with pytest.raises(ValidationError):
            run(workflow.verify_code(NUMBER, wrong))
    assert run(workflow.verify_code(NUMBER, code))


def test_max_attempts_discards_the_code(store, clock):
    dispatcher = RecordingDispatcher()
    workflow = make_workflow(store, clock, dispatcher, otp_max_attempts=3)
    run(workflow.request_code(NUMBER))
    code = dispatcher.last_code()
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(2):
        with pytest.raises(ValidationError):
            run(workflow.verify_code(NUMBER, wrong))
    with pytest.raises(ValidationError) as excinfo:
        run(workflow.verify_code(NUMBER, wrong))
    assert "Too many" in excinfo.value.message
    assert run(workflow.status(NUMBER)) == VerificationState.UNVERIFIED

    # the right code no longer works; a fresh one does
    with pytest.raises(ValidationError):
        run(workflow.verify_code(NUMBER, code))
    run(workflow.request_code(NUMBER))
    assert run(workflow.verify_code(NUMBER, dispatcher.last_code()))


def test_code_expires(workflow, dispatcher, clock, settings):
    run(workflow.request_code(NUMBER))
    clock.advance(settings.otp_ttl_seconds)
    assert run(workflow.status(NUMBER)) == VerificationState.UNVERIFIED
    with pytest.raises(ValidationError) as excinfo:
        run(workflow.verify_code(NUMBER, dispatcher.last_code()))
    assert "expired" in excinfo.value.message


def test_verify_without_request(workflow):
    with pytest.raises(ValidationError):
        run(workflow.verify_code(NUMBER, "123456"))
    with pytest.raises(ValidationError):
        run(workflow.verify_code(NUMBER, ""))


def test_request_code_requires_number(workflow):
    with pytest.raises(ValidationError):
        run(workflow.request_code(""))


def test_new_request_replaces_the_old_code(workflow, dispatcher):
    run(workflow.request_code(NUMBER))
    old = dispatcher.last_code()
    run(workflow.request_code(NUMBER))
    new = dispatcher.last_code()
    if old != new:
        with pytest.raises(ValidationError):
            run(workflow.verify_code(NUMBER, old))
    assert run(workflow.verify_code(NUMBER, new))


def test_failed_sms_leaves_no_pending_code(workflow, dispatcher):
    dispatcher.fail_with = RuntimeError("SNS down")
    with pytest.raises(ExternalServiceError):
        run(workflow.request_code(NUMBER))
    assert run(workflow.status(NUMBER)) == VerificationState.UNVERIFIED


def test_failed_sms_restores_previous_state(workflow, dispatcher):
    run(workflow.bypass(NUMBER))
    dispatcher.fail_with = RuntimeError("SNS down")
    with pytest.raises(ExternalServiceError):
        run(workflow.request_code(NUMBER))
    assert run(workflow.status(NUMBER)) == VerificationState.VERIFIED


@pytest.mark.parametrize("prior", ["none", "requested", "verified", "failed"])
def test_bypass_always_verifies(workflow, dispatcher, prior):
    if prior != "none":
        run(workflow.request_code(NUMBER))
    if prior == "verified":
        run(workflow.verify_code(NUMBER, dispatcher.last_code()))
    if prior == "failed":
        with pytest.raises(ValidationError):
            run(workflow.verify_code(NUMBER, "not-the-code"))

    session = run(workflow.bypass(NUMBER))
    assert session.state == VerificationState.VERIFIED
    assert run(workflow.status(NUMBER)) == VerificationState.VERIFIED


def test_bypass_can_be_disabled(store, clock):
    workflow = make_workflow(store, clock, otp_bypass_enabled=False)
    with pytest.raises(AuthorizationError):
        run(workflow.bypass(NUMBER))
    assert run(workflow.status(NUMBER)) == VerificationState.UNVERIFIED


def test_exposed_code_for_development(store, clock):
    dispatcher = RecordingDispatcher()
    workflow = make_workflow(store, clock, dispatcher, otp_expose_code=True, otp_length=4)
    result = run(workflow.request_code(NUMBER))
    assert result.code == dispatcher.last_code()
    assert len(result.code) == 4


def test_checkout_gate(workflow):
    with pytest.raises(ValidationError):
        run(workflow.ensure_verified(NUMBER))


def test_numeric_code_keeps_its_leading_zeros(workflow, monkeypatch):
    monkeypatch.setattr(workflow, "_new_code", lambda: "012345")
    run(workflow.request_code(NUMBER))
    assert run(workflow.verify_code(NUMBER, 12345)) is True


@pytest.mark.parametrize("submitted", [12345.0, True, -12345, ["012345"], {"code": "012345"}])
def test_codes_of_other_types_are_rejected_without_an_attempt(workflow, monkeypatch, submitted):
    monkeypatch.setattr(workflow, "_new_code", lambda: "012345")
    run(workflow.request_code(NUMBER))
    with pytest.raises(ValidationError):
        run(workflow.verify_code(NUMBER, submitted))
    assert run(workflow.session(NUMBER)).attempts == 0
    assert run(workflow.verify_code(NUMBER, " 012345 "))
