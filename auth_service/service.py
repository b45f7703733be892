"""
Authentication flows.

:class:`AuthService` is the only component that writes to the credential
and session stores. Each flow is a short sequence of store calls with no
transaction spanning both stores; emails are sent through the injected
notifier.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta

from .errors import (
    DuplicateEmail,
    ExpiredToken,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidToken,
    MissingToken,
    NotFound,
    NotificationFailed,
    ValidationError,
    WeakPassword,
)
from .models import utcnow
from .tokens import ACCESS, REFRESH

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: dict


def public_profile(user):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
    }


def full_profile(user):
    profile = public_profile(user)
    profile["isVerified"] = user.is_verified
    return profile


def _filled(*values):
    return all(isinstance(v, str) and v.strip() for v in values)


def session_summary(session):
    return {
        "id": session.id,
        "ipAddress": session.ip_address,
        "userAgent": session.user_agent,
        "createdAt": session.created_at.isoformat(),
        "expiresAt": session.expires_at.isoformat(),
    }


class AuthService:

    def __init__(self, credentials, sessions, tokens, notifier,
                 min_password_length=6, reset_expires=timedelta(hours=1)):
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.notifier = notifier
        self.min_password_length = min_password_length
        self.reset_expires = reset_expires

    def _dispatch(self, send, *args):
        """Send a best-effort notification without blocking the caller."""
        def run():
            try:
                if not send(*args):
                    logger.warning(f"Notification {send.__name__} to {args[0]} failed")
            except Exception as e:
                logger.error(f"Notification {send.__name__} to {args[0]} raised: {e}")

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        return thread

    def register(self, name, email, password):
        if not _filled(name, email, password):
            logger.warning("Registration failed: missing name, email or password")
            raise ValidationError("Name, email and password are required")

        if self.credentials.get_by_email(email):
            logger.warning(f"Registration failed: email already registered - {email}")
            raise DuplicateEmail()

        user = self.credentials.create(name, email, password)
        logger.info(f"User registered: {user.email}")

        token = self.tokens.issue_verification(user)
        if not self.notifier.send_verification_email(user.email, token, user.name):
            raise NotificationFailed("Failed to send verification email")
        return user

    def login(self, email, password, client_meta):
        if not _filled(email, password):
            raise ValidationError("Email and password required")

        user = self.credentials.get_by_email(email)
        if not self.credentials.check_password(user, password):
            logger.warning(f"Login failed for email: {email}")
            raise InvalidCredentials()

        access_token = self.tokens.issue_access(user)
        refresh_token = self.tokens.issue_refresh(user)
        self.sessions.create(user.id, access_token, refresh_token, client_meta)
        logger.info(f"User logged in: {user.email}")

        if user.receive_emails:
            self._dispatch(self.notifier.send_login_success_email, user.email, user.name)

        return LoginResult(access_token, refresh_token, public_profile(user))

    def logout(self, access_token):
        self.sessions.delete_by_access_token(access_token)

    def request_password_reset(self, email):
        if not _filled(email):
            raise ValidationError("Email is required")

        user = self.credentials.get_by_email(email)
        if not user:
            raise NotFound()

        token = self.tokens.issue_reset(user)
        self.credentials.set_reset_token(user, token, utcnow() + self.reset_expires)
        logger.info(f"Password reset requested for: {user.email}")

        if not self.notifier.send_reset_email(user.email, token, user.name):
            raise NotificationFailed("Failed to send password reset email")

    def reset_password(self, token, new_password):
        if not _filled(new_password):
            raise ValidationError("Password is required")

        user = self.credentials.find_by_reset_token(token)
        if not user:
            raise InvalidOrExpiredToken("Invalid or expired reset token")

        self.credentials.complete_reset(user, new_password)
        logger.info(f"Password reset for: {user.email}")
        self._dispatch(self.notifier.send_password_reset_success_email, user.email, user.name)

    def verify_email(self, token):
        try:
            claims = self.tokens.verify(token, ACCESS)
        except (InvalidToken, ExpiredToken) as e:
            raise InvalidOrExpiredToken("Invalid or expired verification token") from e

        user = self.credentials.get(claims["user_id"])
        if not user:
            raise InvalidOrExpiredToken("Invalid or expired verification token")

        self.credentials.mark_verified(user)
        logger.info(f"Email verified: {user.email}")
        return user

    def get_profile(self, user_id):
        user = self.credentials.get(user_id)
        if not user:
            raise NotFound()
        return full_profile(user)

    def update_profile(self, user_id, name):
        if not _filled(name):
            raise ValidationError("Name is required")

        user = self.credentials.get(user_id)
        if not user:
            raise NotFound()

        self.credentials.update_name(user, name)
        return public_profile(user)

    def change_password(self, user_id, current_password, new_password):
        if not isinstance(new_password, str) or len(new_password) < self.min_password_length:
            raise WeakPassword(
                f"Password must be at least {self.min_password_length} characters"
            )

        user = self.credentials.get(user_id)
        if not user:
            raise NotFound()

        if not self.credentials.check_password(user, current_password):
            raise InvalidCredentials("Current password is incorrect")

        self.credentials.set_password(user, new_password)
        logger.info(f"Password changed for: {user.email}")

    def refresh(self, refresh_token):
        if not refresh_token:
            raise MissingToken()

        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except (InvalidToken, ExpiredToken) as e:
            raise InvalidToken("Invalid refresh token") from e

        user = self.credentials.get(claims["user_id"])
        if not user:
            logger.warning("User not found for refresh token")
            raise InvalidToken("Invalid refresh token")

        # A refresh token is only good while a session still holds it
        session = self.sessions.find_by_refresh_token(refresh_token)
        if not session or session.user_id != user.id:
            logger.warning(f"No live session for refresh token of user {user.id}")
            raise InvalidToken("Invalid refresh token")

        pair = TokenPair(self.tokens.issue_access(user), self.tokens.issue_refresh(user))
        self.sessions.rotate(session, pair.access_token, pair.refresh_token)
        logger.info(f"Generated new tokens for user: {user.id}")
        return pair

    def unsubscribe(self, email):
        if not _filled(email):
            raise ValidationError("Email is required")

        user = self.credentials.get_by_email(email)
        if not user:
            raise NotFound()

        self.credentials.set_receive_emails(user, False)
        logger.info(f"User unsubscribed: {user.email}")

    def list_sessions(self, user_id):
        if not self.credentials.get(user_id):
            raise NotFound()
        return [session_summary(s) for s in self.sessions.list_for_user(user_id)]
