"""
Authentication interface for Event Atlas.

Account creation and login forms live outside this service; here we only
decode bearer tokens issued with the shared secret and expose the user's
role and quota-relevant attributes to the pipeline.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.orm import Session

from event_atlas.db.session import Base, get_db
from .config import settings

ALGORITHM = "HS256"
ROLE_ADMIN = "admin"
ROLE_USER = "user"
VALID_ROLES = {ROLE_ADMIN, ROLE_USER}

bearer_scheme = HTTPBearer()


class User(Base):
    """Account row; quota limits derive from ``trust_level`` and ``custom_quotas``."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))
    is_active = Column(Integer, default=1)
    role = Column(String, nullable=False, server_default=ROLE_USER, default=ROLE_USER)
    trust_level = Column(Integer, nullable=True)
    custom_quotas = Column(JSON, nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign ``claims`` (``sub`` is the user's email) with an expiry."""
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    payload = dict(claims, exp=datetime.now(timezone.utc) + lifetime)
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Return the token's subject, or None when the token is invalid, expired or has no subject."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) and subject else None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    email = decode_access_token(credentials.credentials)
    if email is None:
        raise _unauthorized()

    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.is_active:
        raise _unauthorized()
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return current_user


def create_user(
    db: Session,
    email: str,
    full_name: Optional[str] = None,
    role: str = ROLE_USER,
    trust_level: Optional[int] = None,
    custom_quotas: Optional[dict] = None,
) -> User:
    """Insert a user row for seeding and tests. Raises ValueError on a bad role or a taken email."""
    if role not in VALID_ROLES:
        raise ValueError(f"Invalid role '{role}'. Must be one of {sorted(VALID_ROLES)}")
    if db.query(User).filter(User.email == email).first() is not None:
        raise ValueError(f"Email already registered: {email}")

    user = User(
        email=email,
        full_name=full_name,
        role=role,
        trust_level=trust_level,
        custom_quotas=custom_quotas,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
