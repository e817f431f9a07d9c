"""FastAPI dependencies."""

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db

logger = logging.getLogger(__name__)


async def get_current_user_id(
    request: Request,
    x_user_id: Annotated[str | None, Header()] = None,
) -> int:
    """Return the authenticated user id placed on the request by the auth middleware.

    In dev mode (DEV_AUTH_BYPASS=true) the ``X-User-Id`` header, or the
    configured dev user, stands in for a real login.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        return int(user_id)

    settings = get_settings()
    if settings.dev_auth_bypass:
        if x_user_id:
            try:
                return int(x_user_id)
            except ValueError:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Invalid X-User-Id header",
                )
        logger.debug("DEV MODE: using dev user %s", settings.dev_user_id)
        return settings.dev_user_id

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


# Type aliases for dependency injection
CurrentUserId = Annotated[int, Depends(get_current_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
