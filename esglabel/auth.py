"""Users and role checks.

Administrative operations take the acting user's id and re-read the role from
the store on every call; nothing client-held is trusted.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from esglabel.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from esglabel.models import ROLE_ADMIN, ROLE_ANNOTATOR, User

log = logging.getLogger(__name__)


def register_user(session: Session, username: str, password: str, role: str = ROLE_ANNOTATOR) -> User:
    username = username.strip()
    if not username or not password:
        raise ValidationError("Username and password are required")
    if role not in (ROLE_ADMIN, ROLE_ANNOTATOR):
        raise ValidationError(f"Unknown role '{role}'")
    user = User(username=username, password=password, role=role)
    session.add(user)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Username '{username}' is already taken") from exc
    log.info("Registered %s (%s)", username, role)
    return user


def login_user(session: Session, username: str, password: str) -> User:
    user = session.execute(select(User).where(User.username == username.strip())).scalars().first()
    if user is None or user.password != password:
        raise AuthorizationError("Invalid username or password")
    return user


def get_user(session: Session, user_id: int | None) -> User:
    if user_id is None:
        raise AuthorizationError("Not logged in")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def require_admin(session: Session, actor_id: int | None) -> User:
    """Return the acting user if the store says they are an admin."""
    if actor_id is None:
        raise AuthorizationError("Not logged in")
    user = session.get(User, actor_id)
    if user is None or user.role != ROLE_ADMIN:
        raise AuthorizationError("Administrator role required")
    return user


def ensure_admin(session: Session, username: str) -> User | None:
    """Promote *username* to admin if it exists (bootstrap via ESGLABEL_ADMIN_USER)."""
    if not username:
        return None
    user = session.execute(select(User).where(User.username == username)).scalars().first()
    if user is None:
        log.warning("Admin bootstrap user '%s' does not exist yet", username)
        return None
    if user.role != ROLE_ADMIN:
        user.role = ROLE_ADMIN
        session.commit()
        log.info("Promoted %s to admin", username)
    return user
