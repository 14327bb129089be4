"""
PhD Progress Tracker
Identity & role context.

Authentication happens upstream (gateway / SSO proxy). The proxy forwards
the authenticated user id in the ``X-User-Id`` header; this module loads
the matching ``User`` row once per request and exposes it to views as an
immutable ``Actor``. Services receive the ``Actor`` explicitly and enforce
role and ownership rules themselves.

Provides:
    - Actor: {id, role} value passed into every mutating service call
    - init_auth(app): before_request hook populating g.actor
    - current_actor() / require_actor(): view-side accessors
    - ensure_can_view_student(): shared read-access rule
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask, g, request

from phdtrack.core.exceptions import AuthorizationError
from phdtrack.models import db
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC, ROLE_STUDENT, ROLE_SUPERVISOR, User

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


@dataclass(frozen=True)
class Actor:
    id: int
    role: str

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    @property
    def is_staff(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SUPERVISOR, ROLE_GEC)


def _load_actor() -> Actor | None:
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw:
        return None
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("Malformed %s header: %r", USER_HEADER, raw)
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        logger.info("Rejected identity for unknown or inactive user %s", user_id)
        return None
    return Actor.from_user(user)


def init_auth(app: Flask) -> None:
    """Resolve the forwarded identity for every API request."""

    @app.before_request
    def _resolve_actor():
        g.actor = None
        if request.path.startswith("/api/") and not request.path.startswith("/api/v1/health"):
            g.actor = _load_actor()


def current_actor() -> Actor | None:
    return getattr(g, "actor", None)


def require_actor() -> Actor:
    actor = current_actor()
    if actor is None:
        raise AuthorizationError("An authenticated, active user is required")
    return actor


def require_role(actor: Actor, *roles: str) -> None:
    if actor.role not in roles:
        raise AuthorizationError(f"Role {actor.role!r} may not perform this action")


def ensure_can_view_student(actor: Actor, student_id: int) -> None:
    """Students see only their own records; staff may see any student."""
    if actor.is_student and actor.id != student_id:
        raise AuthorizationError("Students may only access their own records")
    if not actor.is_student and not actor.is_staff:
        raise AuthorizationError(f"Role {actor.role!r} may not view student records")


def ensure_owner_or_admin(actor: Actor | None, student_id: int) -> None:
    """Mutations on a student's workflow: the student or an administrator.

    ``actor=None`` means a trusted internal caller (CLI, scheduled job).
    """
    if actor is None:
        return
    if actor.is_admin:
        return
    if actor.is_student and actor.id == student_id:
        return
    raise AuthorizationError("Only the student or an administrator may change this workflow")
