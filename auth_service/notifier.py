"""
Outbound email for the auth flows.

The provider is picked once at startup: :func:`resolve_email_provider` reads
the configuration into an :class:`SmtpProvider` or :class:`ApiProvider`
(or ``None`` when nothing is configured) and :func:`build_notifier` turns
that into a single :class:`Notifier`. Every ``send_*`` method returns
``True`` on success and ``False`` on failure; it never raises for
transport errors.
"""

import contextlib
import logging
import queue
import smtplib
import ssl
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, parseaddr
from typing import Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)


@dataclass
class SmtpProvider:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_ssl: bool = False
    max_connections: int = 3
    max_messages: int = 50
    timeout: float = 20.0


@dataclass
class ApiProvider:
    api_key: str
    api_url: str = "https://api.sendgrid.com/v3/mail/send"
    max_connections: int = 3
    timeout: float = 20.0


def resolve_sender(config):
    """Return ``(name, address)`` for the From header."""
    explicit = config.get("MAIL_FROM") or config.get("SENDGRID_FROM") or config.get("SMTP_USER")
    if not explicit:
        return None
    name, address = parseaddr(explicit)
    return name or config.get("MAIL_FROM_NAME", "Online Test Platform"), address


def resolve_email_provider(config):
    provider = config.get("EMAIL_PROVIDER") or (
        "sendgrid" if config.get("SENDGRID_API_KEY") else "smtp"
    )

    if provider == "sendgrid":
        if not config.get("SENDGRID_API_KEY"):
            logger.warning("EMAIL_PROVIDER=sendgrid but SENDGRID_API_KEY is not set")
            return None
        return ApiProvider(
            api_key=config["SENDGRID_API_KEY"],
            api_url=config.get("SENDGRID_API_URL", ApiProvider.api_url),
            max_connections=config.get("SMTP_MAX_CONNECTIONS", 3),
            timeout=config.get("SMTP_TIMEOUT", 20.0),
        )

    if provider == "smtp":
        if not config.get("SMTP_USER"):
            logger.warning("SMTP_USER is not set, emails will only be logged")
            return None
        return SmtpProvider(
            host=config.get("SMTP_HOST", "smtp.gmail.com"),
            port=config.get("SMTP_PORT", 587),
            user=config.get("SMTP_USER"),
            password=config.get("SMTP_PASS"),
            use_ssl=config.get("SMTP_SECURE", False),
            max_connections=config.get("SMTP_MAX_CONNECTIONS", 3),
            max_messages=config.get("SMTP_MAX_MESSAGES", 50),
            timeout=config.get("SMTP_TIMEOUT", 20.0),
        )

    if provider != "log":
        logger.warning(f"Unknown EMAIL_PROVIDER {provider!r}, emails will only be logged")
    return None


def build_notifier(provider, config):
    frontend_url = config.get("FRONTEND_URL", "")
    sender = resolve_sender(config)
    if isinstance(provider, SmtpProvider):
        return SmtpNotifier(provider, frontend_url, sender)
    if isinstance(provider, ApiProvider):
        return ApiNotifier(provider, frontend_url, sender)
    return LogNotifier(frontend_url, sender)


class Notifier:
    """Composes the four auth emails and hands them to :meth:`_deliver`."""

    def __init__(self, frontend_url, sender=None):
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.sender = sender

    def unsubscribe_url(self, to):
        return f"{self.frontend_url}/unsubscribe?email={quote(to)}"

    def send_verification_email(self, to, token, name="User"):
        url = f"{self.frontend_url}/auth/verify/{token}"
        body = (
            f"Welcome, {name}!\n\n"
            f"Thank you for registering. Please verify your email address:\n{url}\n\n"
            "This link will expire in 24 hours.\n"
        )
        return self._send(to, "Verify Your Email - Online Test Platform", body)

    def send_reset_email(self, to, token, name="User"):
        url = f"{self.frontend_url}/auth/reset-password/{token}"
        body = (
            f"Reset Your Password, {name}\n\n"
            f"We received a request to reset your password. Set a new one here:\n{url}\n\n"
            "This link will expire in 1 hour.\n"
        )
        return self._send(to, "Reset Your Password - Online Test Platform", body)

    def send_login_success_email(self, to, name="User"):
        body = (
            f"Login Successful, {name}!\n\n"
            "You have successfully logged in to your account.\n"
            "If this wasn't you, secure your account by resetting your password.\n"
        )
        return self._send(to, "Login Successful - Online Test Platform", body)

    def send_password_reset_success_email(self, to, name="User"):
        body = (
            f"Password Changed, {name}\n\n"
            "Your password has been reset successfully.\n"
            "If you did not do this, contact support immediately.\n"
        )
        return self._send(to, "Password Reset Successful - Online Test Platform", body)

    def _send(self, to, subject, body):
        unsubscribe = self.unsubscribe_url(to)
        body = f"{body}\nUnsubscribe: {unsubscribe}\n"
        try:
            self._deliver(to, subject, body, unsubscribe)
        except Exception as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False
        logger.info(f"Email sent to {to}: {subject}")
        return True

    def _deliver(self, to, subject, body, unsubscribe_url):
        raise NotImplementedError

    def verify(self):
        return True

    def close(self):
        pass


class LogNotifier(Notifier):
    """Development fallback: the message is written to the log, not sent."""

    def _deliver(self, to, subject, body, unsubscribe_url):
        logger.info(f"[dev email] to={to} subject={subject!r}\n{body}")


class SmtpConnectionPool:
    """
    Bounded pool of SMTP connections.

    At most ``max_connections`` connections are open at once; a connection
    is closed after ``max_messages`` sends or after any failure.
    """

    def __init__(self, provider):
        self.provider = provider
        self._idle = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(provider.max_connections)

    def _connect(self):
        p = self.provider
        context = ssl.create_default_context()
        if p.use_ssl:
            conn = smtplib.SMTP_SSL(p.host, p.port, timeout=p.timeout, context=context)
        else:
            conn = smtplib.SMTP(p.host, p.port, timeout=p.timeout)
            conn.starttls(context=context)
        if p.user and p.password:
            conn.login(p.user, p.password)
        return conn

    def _checkout(self):
        while True:
            try:
                conn, sent = self._idle.get_nowait()
            except queue.Empty:
                return self._connect(), 0
            try:
                if conn.noop()[0] == 250:
                    return conn, sent
            except OSError:
                # SMTPException is an OSError; the connection went stale
                pass
            self._close(conn)

    @staticmethod
    def _close(conn):
        try:
            conn.quit()
        except OSError:
            conn.close()

    @contextlib.contextmanager
    def connection(self):
        with self._slots:
            conn, sent = self._checkout()
            try:
                yield conn
            except Exception:
                self._close(conn)
                raise
            sent += 1
            if sent >= self.provider.max_messages:
                self._close(conn)
            else:
                self._idle.put((conn, sent))

    def close_all(self):
        while True:
            try:
                conn, _ = self._idle.get_nowait()
            except queue.Empty:
                return
            self._close(conn)


class SmtpNotifier(Notifier):

    def __init__(self, provider, frontend_url, sender=None):
        super().__init__(frontend_url, sender or ("Online Test Platform", provider.user))
        self.pool = SmtpConnectionPool(provider)

    def _deliver(self, to, subject, body, unsubscribe_url):
        message = EmailMessage()
        message["From"] = formataddr(self.sender)
        message["To"] = to
        message["Subject"] = subject
        message["List-Unsubscribe"] = f"<{unsubscribe_url}>"
        message.set_content(body)
        with self.pool.connection() as conn:
            conn.send_message(message)

    def verify(self):
        try:
            with self.pool.connection():
                pass
        except OSError as e:
            logger.error(f"Email transport verification failed: {e}")
            return False
        logger.info("Email transport verified and ready")
        return True

    def close(self):
        self.pool.close_all()


class ApiNotifier(Notifier):
    """SendGrid v3 ``mail/send`` over a pooled HTTP session."""

    def __init__(self, provider, frontend_url, sender=None):
        super().__init__(frontend_url, sender)
        self.provider = provider
        self.http = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=provider.max_connections,
                              pool_block=True)
        self.http.mount("https://", adapter)
        self.http.mount("http://", adapter)
        self.http.headers.update({"Authorization": f"Bearer {provider.api_key}"})

    def _deliver(self, to, subject, body, unsubscribe_url):
        if not self.sender:
            raise ValueError("No sender address configured")
        name, address = self.sender
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": address, "name": name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
            "headers": {"List-Unsubscribe": f"<{unsubscribe_url}>"},
        }
        response = self.http.post(self.provider.api_url, json=payload,
                                  timeout=self.provider.timeout)
        response.raise_for_status()

    def close(self):
        self.http.close()
