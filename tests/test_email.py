import smtplib

from idvault.service.email import EmailNotifier


class TestDevMode:
    def test_unconfigured_notifier_keeps_messages(self):
        notifier = EmailNotifier(base_url="https://id.example.com/", reset_ttl_minutes=30)

        assert not notifier.is_configured
        assert notifier.send_password_reset("alice@example.com", "tok-123")

        (message,) = notifier.outbox
        assert message.to_email == "alice@example.com"
        assert "https://id.example.com/reset-password?token=tok-123" in message.text_body
        assert "30 minutes" in message.html_body

    def test_outbox_keeps_only_recent_messages(self):
        notifier = EmailNotifier(outbox_size=2)

        for n in range(5):
            notifier.send_password_reset(f"user{n}@example.com", f"tok-{n}")

        assert [m.to_email for m in notifier.outbox] == ["user3@example.com", "user4@example.com"]

    def test_recipient_redaction(self):
        assert EmailNotifier._redact_email("alice@example.com") == "al***@example.com"
        assert EmailNotifier._redact_email("no-at-sign") == "redacted"


class _FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, from_addr, to_addr, body):
        self.sent.append((from_addr, to_addr, body))


def _configured(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    values.update(overrides)
    return EmailNotifier(**values)


def test_smtp_delivery(monkeypatch):
    _FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    notifier = _configured()

    assert notifier.send_password_reset("alice@example.com", "tok-123")

    (server,) = _FakeSMTP.instances
    assert server.logged_in == "mailer"
    from_addr, to_addr, body = server.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "alice@example.com"
    assert "Reset your password" in body
    assert len(notifier.outbox) == 0


def test_smtp_failure_returns_false(monkeypatch):
    class Refusing(_FakeSMTP):
        def sendmail(self, from_addr, to_addr, body):
            raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})

    monkeypatch.setattr(smtplib, "SMTP", Refusing)

    assert not _configured().send_password_reset("ghost@example.com", "tok")


def test_transport_error_returns_false(monkeypatch):
    def unreachable(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP_SSL", unreachable)

    assert not _configured(smtp_use_tls=False, smtp_port=465).send_password_reset(
        "alice@example.com", "tok"
    )
