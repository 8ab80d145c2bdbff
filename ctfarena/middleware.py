"""
aiohttp middlewares: requester lookup and error translation.
"""

import logging
from typing import Any, Optional

from aiohttp import web

from .errors import AuthenticationError, CTFError, PermissionDenied
from .models import User

logger = logging.getLogger(__name__)

USER_KEY = "ctf_user"


def _extract_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    # browsers cannot set headers on websocket upgrades
    return request.query.get("token") or None


def auth_middleware(db: Any):
    """
    Resolve the bearer token (if any) to a user stored on the request.

    Missing or unknown tokens leave the request anonymous; handlers decide
    whether that is acceptable.
    """

    @web.middleware
    async def middleware(request: web.Request, handler):
        token = _extract_token(request)
        request[USER_KEY] = await db.get_user_by_token(token) if token else None
        return await handler(request)

    return middleware


def error_middleware(config: Any):
    """Turn CTFError into JSON answers and anything unexpected into a 500."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except CTFError as e:
            return web.json_response(
                {"success": False, "message": e.message}, status=e.status
            )
        except Exception as e:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            body = {"success": False, "message": "Internal server error"}
            if config.is_development:
                body["error"] = str(e)
            return web.json_response(body, status=500)

    return middleware


def current_user(request: web.Request) -> Optional[User]:
    return request.get(USER_KEY)


def require_user(request: web.Request) -> User:
    user = current_user(request)
    if user is None:
        raise AuthenticationError("Not authorized to access this route")
    return user


def require_admin(request: web.Request) -> User:
    user = require_user(request)
    if not user.is_admin:
        raise PermissionDenied("Admin role required")
    return user
