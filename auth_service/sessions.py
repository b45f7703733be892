"""
Persistence of login sessions.

One row per successful login. Rows are never swept by the flows: every
read filters out sessions whose ``expires_at`` is further in the past than
the grace window, and :meth:`SessionStore.purge_expired` deletes them for
good when run by the ``purge-sessions`` command.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from .errors import InvalidToken, ValidationError
from .models import Session, db, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ClientMeta:
    ip: str
    user_agent: str


class SessionStore:

    def __init__(self, lifetime=timedelta(days=7), grace=timedelta(days=7)):
        self.lifetime = lifetime
        self.grace = grace

    def _horizon(self):
        return utcnow() - self.grace

    def _live(self):
        return Session.query.filter(Session.expires_at > self._horizon())

    def create(self, user_id, access_token, refresh_token, client_meta):
        if client_meta is None or not client_meta.ip or not client_meta.user_agent:
            raise ValidationError("Client IP and user agent are required")

        logger.info(f"Creating session for user: {user_id}")
        session = Session(
            user_id=user_id,
            token=access_token,
            refresh_token=refresh_token,
            ip_address=client_meta.ip,
            user_agent=client_meta.user_agent,
            expires_at=utcnow() + self.lifetime,
        )
        db.session.add(session)
        db.session.commit()
        return session

    def find_by_access_token(self, token, user_id=None):
        if not token:
            return None
        query = self._live().filter(Session.token == token)
        if user_id is not None:
            query = query.filter(Session.user_id == user_id)
        return query.first()

    def find_by_refresh_token(self, token):
        if not token:
            return None
        return self._live().filter(Session.refresh_token == token).first()

    def list_for_user(self, user_id):
        return self._live().filter(Session.user_id == user_id) \
            .order_by(Session.created_at.desc()).all()

    def delete_by_access_token(self, token):
        if not token:
            return
        deleted = Session.query.filter(Session.token == token) \
            .delete(synchronize_session=False)
        db.session.commit()
        if deleted:
            logger.info("Session deleted on logout")

    def rotate(self, session, new_access, new_refresh):
        """
        Swap both tokens of ``session`` and push its expiry forward.

        The update only matches while the row still holds the refresh token
        the caller looked it up by, so of two concurrent rotations of the
        same token exactly one succeeds; the loser gets :class:`InvalidToken`.
        """
        old_refresh = session.refresh_token
        try:
            updated = Session.query.filter(
                Session.id == session.id,
                Session.refresh_token == old_refresh,
            ).update({
                Session.token: new_access,
                Session.refresh_token: new_refresh,
                Session.expires_at: utcnow() + self.lifetime,
                Session.updated_at: utcnow(),
            }, synchronize_session=False)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise InvalidToken("Invalid refresh token") from e

        if not updated:
            logger.warning(f"Session {session.id} was rotated concurrently")
            raise InvalidToken("Invalid refresh token")

        db.session.refresh(session)
        return session

    def purge_expired(self):
        purged = Session.query.filter(Session.expires_at <= self._horizon()) \
            .delete(synchronize_session=False)
        db.session.commit()
        logger.info(f"Purged {purged} expired sessions")
        return purged
