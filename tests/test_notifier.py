import smtplib
from unittest import mock

import pytest
import requests

from auth_service.notifier import (
    ApiNotifier,
    ApiProvider,
    LogNotifier,
    SmtpNotifier,
    SmtpProvider,
    build_notifier,
    resolve_email_provider,
    resolve_sender,
)

BASE = {"FRONTEND_URL": "https://app.test"}


class TestProviderResolution:

    def test_sendgrid_when_api_key_present(self):
        provider = resolve_email_provider(dict(BASE, SENDGRID_API_KEY="SG.key"))
        assert isinstance(provider, ApiProvider)
        assert provider.api_key == "SG.key"

    def test_smtp_by_default(self):
        provider = resolve_email_provider(dict(BASE, SMTP_USER="me@gmail.com",
                                               SMTP_PASS="pw", SMTP_PORT=465,
                                               SMTP_SECURE=True))
        assert isinstance(provider, SmtpProvider)
        assert provider.use_ssl is True
        assert provider.port == 465

    def test_explicit_provider_wins(self):
        provider = resolve_email_provider(dict(BASE, EMAIL_PROVIDER="smtp",
                                               SENDGRID_API_KEY="SG.key",
                                               SMTP_USER="me@gmail.com"))
        assert isinstance(provider, SmtpProvider)

    @pytest.mark.parametrize("config", [
        {},
        {"EMAIL_PROVIDER": "log", "SMTP_USER": "me@gmail.com"},
        {"EMAIL_PROVIDER": "sendgrid"},
        {"EMAIL_PROVIDER": "pigeon"},
    ])
    def test_unconfigured_falls_back_to_logging(self, config):
        provider = resolve_email_provider(dict(BASE, **config))
        assert provider is None
        assert isinstance(build_notifier(provider, BASE), LogNotifier)

    def test_build_notifier(self):
        smtp = SmtpProvider("smtp.test", 587, "me@test", "pw")
        assert isinstance(build_notifier(smtp, BASE), SmtpNotifier)
        api = ApiProvider("SG.key")
        assert isinstance(build_notifier(api, BASE), ApiNotifier)

    def test_sender_wraps_bare_address(self):
        assert resolve_sender({"MAIL_FROM": "noreply@test"}) == \
            ("Online Test Platform", "noreply@test")
        assert resolve_sender({"MAIL_FROM": "Quiz <quiz@test>"}) == ("Quiz", "quiz@test")
        assert resolve_sender({}) is None


def test_log_notifier_always_succeeds():
    notifier = LogNotifier("https://app.test")
    assert notifier.send_verification_email("ann@x.com", "tok", "Ann") is True
    assert notifier.unsubscribe_url("ann+1@x.com") == \
        "https://app.test/unsubscribe?email=ann%2B1%40x.com"


class TestSmtpNotifier:

    @pytest.fixture
    def smtp(self):
        with mock.patch("smtplib.SMTP") as smtp_class:
            smtp_class.return_value.noop.return_value = (250, b"OK")
            yield smtp_class

    def make(self, **overrides):
        provider = SmtpProvider("smtp.test", 587, "me@test", "pw", **overrides)
        return SmtpNotifier(provider, "https://app.test")

    def test_sends_verification_email(self, smtp):
        notifier = self.make()
        assert notifier.send_verification_email("ann@x.com", "tok123", "Ann") is True

        conn = smtp.return_value
        conn.starttls.assert_called_once()
        conn.login.assert_called_once_with("me@test", "pw")
        message = conn.send_message.call_args[0][0]
        assert message["To"] == "ann@x.com"
        assert message["Subject"] == "Verify Your Email - Online Test Platform"
        assert message["List-Unsubscribe"] == \
            "<https://app.test/unsubscribe?email=ann%40x.com>"
        assert "https://app.test/auth/verify/tok123" in message.get_content()

    def test_connections_are_reused(self, smtp):
        notifier = self.make()
        notifier.send_login_success_email("ann@x.com", "Ann")
        notifier.send_login_success_email("bob@x.com", "Bob")
        assert smtp.call_count == 1
        assert smtp.return_value.send_message.call_count == 2

    def test_connection_retired_after_max_messages(self, smtp):
        notifier = self.make(max_messages=1)
        notifier.send_login_success_email("ann@x.com", "Ann")
        notifier.send_login_success_email("bob@x.com", "Bob")
        assert smtp.call_count == 2
        assert smtp.return_value.quit.call_count == 2

    def test_failure_returns_false(self, smtp):
        smtp.return_value.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
        notifier = self.make()
        assert notifier.send_reset_email("ann@x.com", "tok", "Ann") is False
        smtp.return_value.quit.assert_called_once()

    def test_close_quits_idle_connections(self, smtp):
        notifier = self.make()
        notifier.send_login_success_email("ann@x.com", "Ann")
        smtp.return_value.quit.assert_not_called()
        notifier.close()
        smtp.return_value.quit.assert_called_once()

    def test_verify(self, smtp):
        assert self.make().verify() is True
        smtp.side_effect = ConnectionRefusedError("no server")
        assert self.make().verify() is False


class TestApiNotifier:

    def make(self):
        return ApiNotifier(ApiProvider("SG.key"), "https://app.test",
                           sender=("Online Test Platform", "noreply@test"))

    def test_posts_to_sendgrid(self):
        notifier = self.make()
        with mock.patch.object(notifier.http, "post") as post:
            assert notifier.send_password_reset_success_email("ann@x.com", "Ann") is True

        url = post.call_args[0][0]
        payload = post.call_args[1]["json"]
        assert url == "https://api.sendgrid.com/v3/mail/send"
        assert payload["personalizations"] == [{"to": [{"email": "ann@x.com"}]}]
        assert payload["from"] == {"email": "noreply@test", "name": "Online Test Platform"}
        assert notifier.http.headers["Authorization"] == "Bearer SG.key"

    def test_http_error_returns_false(self):
        notifier = self.make()
        with mock.patch.object(notifier.http, "post") as post:
            post.return_value.raise_for_status.side_effect = requests.HTTPError("401")
            assert notifier.send_verification_email("ann@x.com", "tok", "Ann") is False

    def test_no_sender_returns_false(self):
        notifier = ApiNotifier(ApiProvider("SG.key"), "https://app.test")
        with mock.patch.object(notifier.http, "post") as post:
            assert notifier.send_login_success_email("ann@x.com") is False
        post.assert_not_called()

    def test_close_releases_http_session(self):
        notifier = self.make()
        with mock.patch.object(notifier.http, "close") as close:
            notifier.close()
        close.assert_called_once()
