"""
FastAPI dependencies for caller identity, role checks and the job queue.

Authentication happens upstream; the gateway forwards the verified identity
in the ``X-User-Id`` and ``X-User-Role`` headers.
"""

import logging

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from taskboard.queues.queue import TaskQueue

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    id: str
    role: str | None = None


def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return CurrentUser(id=x_user_id, role=x_user_role)


def require_roles(*roles: str):
    """Dependency factory that admits only callers holding one of ``roles``."""

    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not roles:
            return user
        if not user.role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Missing role on user"
            )
        if user.role not in roles:
            logger.warning(f"User {user.id} with role {user.role} denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role"
            )
        return user

    return checker


def get_queue(request: Request) -> TaskQueue | None:
    return getattr(request.app.state, "task_queue", None)
