"""
Player identity and request throttling shared by the routers.

Identity is an opaque user id carried in a signed, timestamped cookie.
"""

import asyncio
import json
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.core.logger import get_logger

logger = get_logger("security")

SESSION_COOKIE = "session"

signer = TimestampSigner(settings.security.secret_key)
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit.enabled)


def game_rate_limit() -> str:
    """Rate limit string for game actions, read at request time."""
    return settings.rate_limit.game_requests if settings.rate_limit.enabled else "1000/minute"


def api_rate_limit() -> str:
    return settings.rate_limit.api_requests if settings.rate_limit.enabled else "1000/minute"


def session_max_age() -> int:
    return int(timedelta(days=settings.security.session_days).total_seconds())


def sign_session(user_id: int, username: str) -> str:
    """Build the signed cookie value for a logged-in player."""
    session_data = {"user_id": user_id, "username": username}
    return signer.sign(json.dumps(session_data).encode("utf-8")).decode("utf-8")


async def get_current_user(request: Request) -> Optional[dict]:
    """Get current user from a secure, signed cookie."""
    session_cookie = request.cookies.get(SESSION_COOKIE)
    if not session_cookie:
        return None

    try:
        # Move CPU-bound crypto to a thread to avoid blocking the event loop
        data = await asyncio.to_thread(
            signer.unsign, session_cookie.encode("utf-8"), session_max_age()
        )
        return json.loads(data.decode("utf-8"))
    except SignatureExpired:
        return None
    except BadSignature:
        logger.warning(
            "Rejected session cookie with bad signature",
            extra={"client_ip": request.client.host if request.client else None},
        )
        return None
    except json.JSONDecodeError:
        return None


async def require_user(request: Request) -> int:
    """Dependency for endpoints that need a logged-in player; yields the user id."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user["user_id"]
