"""
Authentication helpers.
Provides JWT bearer-token authentication and site-level admin checks.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import Session

from event_importer.db.session import Base, get_db
from .config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours
SITE_ADMIN_ROLES = {"owner", "admin"}


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


# Security scheme
security = HTTPBearer()


class User(Base):
    """User model for authentication."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    is_active = Column(Integer, default=1)
    role = Column(String, nullable=False, server_default="user", default="user")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = _utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get the current authenticated user from JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.is_active:
        raise credentials_exception

    return user


def user_has_admin_access_to_site(db: Session, user: User, site_id: int) -> bool:
    """
    Return True when the user may administer the site.

    Global admins can manage every site; everyone else needs an owner or
    admin membership in the organization that owns the site.
    """
    from event_importer.db.models import Member, Site

    if user.role == "admin":
        return True

    site = db.query(Site).filter(Site.site_id == site_id).first()
    if site is None:
        return False

    membership = (
        db.query(Member)
        .filter(Member.user_id == user.id, Member.organization_id == site.organization_id)
        .first()
    )
    return membership is not None and membership.role in SITE_ADMIN_ROLES
