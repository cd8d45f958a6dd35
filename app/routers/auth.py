from typing import Optional

from fastapi import APIRouter, Request, Form, HTTPException
from fastapi.responses import JSONResponse

from app.config import settings
from app.core.database import db
from app.core.logger import get_logger
from app.core.security import SESSION_COOKIE, limiter, session_max_age, sign_session

logger = get_logger("auth")

router = APIRouter()


def _session_response(user_id: int, username: str, credits: float) -> JSONResponse:
    response = JSONResponse({"user_id": user_id, "username": username, "credits": credits})
    response.set_cookie(
        SESSION_COOKIE,
        sign_session(user_id, username),
        max_age=session_max_age(),
        httponly=True,
        samesite="Lax",
        secure=not settings.server.debug,  # Use Secure cookies in production
    )
    return response


@router.post("/auth/register")
@limiter.limit("10/minute")
async def user_register(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    password_confirm: Optional[str] = Form(None),
):
    """Create a player account and log it in."""
    username = username.strip()

    if password_confirm is not None and password != password_confirm:
        raise HTTPException(status_code=400, detail="Passwords do not match")

    result = db.create_user(username, password)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])

    logger.info(f"New user registered: {username}")
    return _session_response(result["user_id"], result["username"], result["credits"])


@router.post("/auth/login")
@limiter.limit("10/minute")
async def user_login(request: Request, username: str = Form(...), password: str = Form(...)):
    """Login existing user."""
    user = db.login_user(username.strip(), password)
    if not user:
        logger.warning("Failed login attempt", extra={"username": username.strip()})
        raise HTTPException(status_code=401, detail="Invalid username or password")

    logger.info(f"User logged in: {user['username']}")
    return _session_response(user["id"], user["username"], user["credits"])


@router.get("/logout")
async def logout(request: Request):
    """Logout user."""
    response = JSONResponse({"logged_out": True})
    response.delete_cookie(SESSION_COOKIE)
    return response
