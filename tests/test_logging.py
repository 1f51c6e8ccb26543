from idvault.logging import (
    _add_correlation_id,
    _redact_secrets,
    correlation_id_var,
    fingerprint,
    get_correlation_id,
    set_correlation_id,
)


def test_redacts_credential_fields():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2-hunter2",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "mfa_secret": {"nested": True},
            "email": "alice@example.com",
            "pin_token": "abc",
        },
    )

    assert event["event"] == "login_failed"
    assert event["password"] == "hu***r2"
    assert event["refresh_token"] == "ey***ig"
    assert event["mfa_secret"] == "***"
    assert event["email"] == "al***om"
    assert event["pin_token"] == "***"


def test_leaves_ordinary_fields_alone():
    event = _redact_secrets(
        None,
        "info",
        {"event": "x", "account_id": "acct-1", "attempts": 3, "error_code": "account_locked"},
    )

    assert event == {"event": "x", "account_id": "acct-1", "attempts": 3, "error_code": "account_locked"}


def test_correlation_id_is_added_when_set():
    token = correlation_id_var.set(None)
    try:
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}

        cid = set_correlation_id()
        assert get_correlation_id() == cid
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
        assert set_correlation_id("req-42") == "req-42"
    finally:
        correlation_id_var.reset(token)


def test_fingerprint_is_short_and_stable():
    assert fingerprint("nobody") == fingerprint("nobody")
    assert fingerprint("nobody") != fingerprint("somebody")
    assert len(fingerprint("nobody")) == 12
