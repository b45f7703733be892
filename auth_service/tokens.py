"""Signing and verification of access, refresh, verification and reset tokens."""

import logging
import secrets
from datetime import datetime, timedelta, timezone

import jwt

from .errors import ConfigurationError, ExpiredToken, InvalidToken

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """
    Issues HS256 tokens with two distinct secrets.

    Access, email-verification and password-reset tokens are signed with the
    access secret; refresh tokens with the refresh secret. A token signed
    for one purpose never verifies against the other secret.
    """

    def __init__(self, access_secret, refresh_secret, algorithm="HS256",
                 access_expires=timedelta(days=1),
                 refresh_expires=timedelta(days=7),
                 verification_expires=timedelta(days=1),
                 reset_expires=timedelta(hours=1)):
        if not access_secret or not refresh_secret:
            raise ConfigurationError("JWT secrets not configured")
        if access_secret == refresh_secret:
            raise ConfigurationError("Access and refresh secrets must differ")

        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self.algorithm = algorithm
        self.access_expires = access_expires
        self.refresh_expires = refresh_expires
        self.verification_expires = verification_expires
        self.reset_expires = reset_expires

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("JWT_SECRET_KEY"),
            config.get("JWT_REFRESH_SECRET"),
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
            access_expires=config.get("ACCESS_TOKEN_EXPIRES", timedelta(days=1)),
            refresh_expires=config.get("REFRESH_TOKEN_EXPIRES", timedelta(days=7)),
            verification_expires=config.get("VERIFICATION_TOKEN_EXPIRES", timedelta(days=1)),
            reset_expires=config.get("RESET_TOKEN_EXPIRES", timedelta(hours=1)),
        )

    def _sign(self, claims, which, lifetime):
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload.update({
            "iat": now,
            "exp": now + lifetime,
            # Two tokens minted in the same second must still differ
            "jti": secrets.token_urlsafe(16),
        })
        return jwt.encode(payload, self._secrets[which], algorithm=self.algorithm)

    def issue_access(self, user):
        return self._sign({"user_id": user.id, "role": user.role}, ACCESS, self.access_expires)

    def issue_refresh(self, user):
        return self._sign({"user_id": user.id}, REFRESH, self.refresh_expires)

    def issue_verification(self, user):
        return self._sign({"user_id": user.id}, ACCESS, self.verification_expires)

    def issue_reset(self, user):
        return self._sign({"user_id": user.id}, ACCESS, self.reset_expires)

    def verify(self, token, which=ACCESS):
        """
        Decode ``token`` against the ``which`` secret and return its claims.

        Raises :class:`ExpiredToken` when the signature is good but ``exp``
        has passed, :class:`InvalidToken` for everything else.
        """
        if which not in self._secrets:
            raise ValueError(f"Unknown token kind: {which}")
        if not token:
            raise InvalidToken("Invalid token")

        try:
            return jwt.decode(
                token,
                self._secrets[which],
                algorithms=[self.algorithm],
                options={"require": ["exp", "user_id"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise ExpiredToken("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected {which} token: {e}")
            raise InvalidToken("Invalid token") from e
