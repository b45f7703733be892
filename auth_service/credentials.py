import logging
import uuid

from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import DuplicateEmail
from .models import User, db, utcnow

logger = logging.getLogger(__name__)


def normalize_email(email):
    return (email or "").strip().lower()


class CredentialStore:
    """User rows: identity, password hash, verification and reset state."""

    def __init__(self, hash_method="scrypt"):
        self.hash_method = hash_method
        # Compared against when the email is unknown so both failures cost one hash
        self._dummy_hash = self.hash_password(uuid.uuid4().hex)

    def hash_password(self, password):
        return generate_password_hash(password, method=self.hash_method)

    def check_password(self, user, password):
        if not isinstance(password, str) or not password:
            return False
        if user is None:
            check_password_hash(self._dummy_hash, password)
            return False
        return check_password_hash(user.password_hash, password)

    def get(self, user_id):
        if not user_id:
            return None
        return db.session.get(User, user_id)

    def get_by_email(self, email):
        return User.query.filter_by(email=normalize_email(email)).first()

    def create(self, name, email, password, role='user', is_verified=False):
        user = User(
            name=name.strip(),
            email=normalize_email(email),
            password_hash=self.hash_password(password),
            role=role,
            is_verified=is_verified,
        )
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError as e:
            # Lost a race against a concurrent registration
            db.session.rollback()
            raise DuplicateEmail() from e
        return user

    def set_password(self, user, password):
        user.password_hash = self.hash_password(password)
        db.session.commit()

    def set_reset_token(self, user, token, expires_at):
        user.reset_token = token
        user.reset_token_expiry = expires_at
        db.session.commit()

    def find_by_reset_token(self, token):
        if not token:
            return None
        return User.query.filter(
            User.reset_token == token,
            User.reset_token_expiry > utcnow(),
        ).first()

    def complete_reset(self, user, password):
        user.password_hash = self.hash_password(password)
        user.reset_token = None
        user.reset_token_expiry = None
        db.session.commit()

    def mark_verified(self, user):
        if user.is_verified:
            return
        user.is_verified = True
        db.session.commit()

    def update_name(self, user, name):
        user.name = name.strip()
        db.session.commit()

    def set_receive_emails(self, user, receive):
        user.receive_emails = receive
        db.session.commit()
