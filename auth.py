"""Caller identity for the HTTP boundary.

Authentication happens upstream: the identity service forwards the signed-in
user as trusted headers::

    X-User-Id     - users.id of the caller
    X-User-Role   - talent | employer | staff | super_admin

``get_current_actor`` turns those into a ``models.Actor`` whose ``id`` is the
employer or talent profile id for those roles and the user id for staff.
"""
from __future__ import annotations

from typing import Annotated, Callable, Optional

import structlog
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

import crud
import errors
import models
from database import get_db

logger = structlog.get_logger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def resolve_actor(db: Session, user: models.User) -> models.Actor:
    """Map a user row to the actor the lifecycle managers expect."""
    if user.role == models.Role.EMPLOYER:
        employer = crud.get_employer_by_user_id(db, user.id)
        if employer is None:
            raise errors.AuthorizationError("Employer profile not found.")
        return models.Actor(id=employer.id, role=models.Role.EMPLOYER)
    if user.role == models.Role.TALENT:
        talent = crud.get_talent_by_user_id(db, user.id)
        if talent is None:
            raise errors.AuthorizationError("Talent profile not found.")
        return models.Actor(id=talent.id, role=models.Role.TALENT)
    return models.Actor(id=user.id, role=models.Role(user.role))


# --- FastAPI dependencies ---
def get_current_actor(
    x_user_id: Annotated[Optional[int], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
    db: Session = Depends(get_db),
) -> models.Actor:
    if x_user_id is None:
        raise _unauthorized("Missing X-User-Id header")

    user = crud.get_user_by_id(db, x_user_id)
    if user is None:
        logger.warning("Unknown user in identity headers", user_id=x_user_id)
        raise _unauthorized("Unknown user")
    if x_user_role is not None and x_user_role != models.Role(user.role).value:
        logger.warning("Role header does not match user", user_id=x_user_id, role=x_user_role)
        raise _unauthorized("Role does not match user")
    if user.status != "active":
        raise errors.AuthorizationError("Account is not active.")

    return resolve_actor(db, user)


def require_roles(*roles: models.Role) -> Callable[..., models.Actor]:
    """Dependency factory: the current actor, provided it holds one of ``roles``."""
    allowed = frozenset(roles)

    def dependency(actor: models.Actor = Depends(get_current_actor)) -> models.Actor:
        if actor.role not in allowed:
            logger.info("Role not permitted", role=actor.role.value, allowed=sorted(r.value for r in allowed))
            raise errors.AuthorizationError()
        return actor

    return dependency


CurrentActor = Annotated[models.Actor, Depends(get_current_actor)]
