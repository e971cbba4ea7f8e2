import logging
import uuid
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from config import get_settings
from models import IdentityUser

logger = logging.getLogger(__name__)


class IdentityError(ValueError):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_access_token(user_id: str) -> str:
    return _serializer().dumps({"sub": user_id})


def resolve_access_token(token: str) -> Optional[str]:
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.token_max_age_hours * 3600
        )
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("sub")
    return user_id if isinstance(user_id, str) else None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[IdentityUser]:
        stmt = select(IdentityUser).where(
            func.lower(IdentityUser.email) == email.strip().lower()
        )
        return self.session.scalar(stmt)

    def get(self, user_id: str) -> Optional[IdentityUser]:
        return self.session.get(IdentityUser, user_id)

    def create_user(self, email: str, password: str, name: str = "") -> IdentityUser:
        clean_email = email.strip().lower()
        if not clean_email or "@" not in clean_email:
            raise IdentityError("Invalid email address")
        if len(password) < 6:
            raise IdentityError("Password should be at least 6 characters")
        if self._by_email(clean_email):
            raise IdentityError(
                "A user with this email address has already been registered"
            )

        user = IdentityUser(
            id=str(uuid.uuid4()),
            email=clean_email,
            name=name.strip(),
            password_hash=generate_password_hash(password),
        )
        self.session.add(user)
        self.session.flush()
        logger.info("identity_created: user_id=%s", user.id)
        return user

    def authenticate(self, email: str, password: str) -> IdentityUser:
        user = self._by_email(email)
        if not user or not check_password_hash(user.password_hash, password):
            raise IdentityError("Invalid login credentials")
        return user
