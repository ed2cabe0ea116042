# routes.py -- REST API and the real-time WebSocket endpoint
# All endpoints return JSON. Sessions ride in the cookie or a Bearer header.

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from ..config import config
from ..db import Database
from ..lifecycle import ClientSession
from ..media import InvalidImageError, MediaStore
from ..security import AuthError, authenticate, hash_password, issue_session, verify_session
from ..ws import ConnectionHub

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

MIN_PASSWORD_LEN = 6


class SignupBody(BaseModel):
    fullName: str = ""
    email: str = ""
    password: str = ""


class LoginBody(BaseModel):
    email: str = ""
    password: str = ""


class ProfileBody(BaseModel):
    profilePic: str | None = None


class MessageBody(BaseModel):
    text: str | None = None
    image: str | None = None


def get_db(request: Request) -> Database:
    """FastAPI dependency: get the Database from app.state."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise RuntimeError("Database not initialized")
    return db


def get_hub(request: Request) -> ConnectionHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise RuntimeError("Connection hub not initialized")
    return hub


def get_media(request: Request) -> MediaStore:
    media = getattr(request.app.state, "media", None)
    if media is None:
        raise RuntimeError("Media store not initialized")
    return media


def _session_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(config.cookie_name)


def get_current_user(request: Request, db: Database = Depends(get_db)) -> dict:
    """FastAPI dependency: the user behind the request's session, or 401/404."""
    token = _session_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - No Token Provided"
        )
    user_id = verify_session(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - Invalid Token"
        )
    user = db.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _with_session(user: dict, status_code: int) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=user)
    resp.set_cookie(
        config.cookie_name,
        issue_session(user["_id"]),
        max_age=config.session_days * 24 * 3600,
        httponly=True,
        samesite="strict",
        secure=config.cookie_secure,
    )
    return resp


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health endpoint for Docker healthcheck and monitoring."""
    db = getattr(request.app.state, "db", None)
    hub = getattr(request.app.state, "hub", None)
    start_time = getattr(request.app.state, "start_time", 0)
    result: dict[str, Any] = {
        "status": "ok",
        "uptime_s": round(time.time() - start_time, 1),
        "online_users": len(hub.registry.online_user_ids()) if hub else 0,
        "connections": len(hub.registry) if hub else 0,
    }
    if db is not None:
        try:
            stats = db.get_db_stats()
            result["db_size_bytes"] = stats.get("db_size_bytes", 0)
        except sqlite3.OperationalError:
            result["status"] = "degraded"
    else:
        result["status"] = "starting"
    return result


# -- Auth --


@router.post("/auth/signup")
def signup(body: SignupBody, db: Database = Depends(get_db)) -> JSONResponse:
    full_name = body.fullName.strip()
    email = body.email.strip().lower()
    if not full_name or not email or not body.password:
        return _error(400, "All fields are required")
    if len(body.password) < MIN_PASSWORD_LEN:
        return _error(400, f"Password must be at least {MIN_PASSWORD_LEN} characters")
    if db.get_user_by_email(email) is not None:
        return _error(400, "Email already exists")
    try:
        user = db.create_user(email, full_name, hash_password(body.password))
    except sqlite3.IntegrityError:
        return _error(400, "Email already exists")
    log.info("Signup: %s", user["_id"])
    return _with_session(user, 201)


@router.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)) -> JSONResponse:
    try:
        user = authenticate(db, body.email.strip().lower(), body.password)
    except AuthError as e:
        return _error(400, str(e))
    log.info("Login: %s", user["_id"])
    return _with_session(user, 200)


@router.post("/auth/logout")
def logout() -> JSONResponse:
    resp = JSONResponse(content={"message": "Logged out successfully"})
    resp.delete_cookie(config.cookie_name)
    return resp


@router.put("/auth/update-profile")
def update_profile(
    body: ProfileBody,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    media: MediaStore = Depends(get_media),
) -> Any:
    if not body.profilePic:
        return _error(400, "Profile pic is required")
    try:
        url = media.store_image(body.profilePic)
    except InvalidImageError as e:
        return _error(400, str(e))
    return db.update_profile_pic(user["_id"], url)


@router.get("/auth/check")
def check_auth(user: dict = Depends(get_current_user)) -> dict:
    return user


# -- Messages --


@router.get("/messages/users")
def users_for_sidebar(
    user: dict = Depends(get_current_user), db: Database = Depends(get_db)
) -> Any:
    """Everyone except the caller, for the contact list."""
    try:
        return db.list_other_users(user["_id"])
    except sqlite3.OperationalError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})


@router.get("/messages/{other_id}")
def get_messages(
    other_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)
) -> Any:
    """Conversation history between the caller and another user."""
    try:
        return db.list_messages(user["_id"], other_id)
    except sqlite3.OperationalError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})


@router.post("/messages/send/{receiver_id}")
async def send_message(
    receiver_id: str,
    body: MessageBody,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    media: MediaStore = Depends(get_media),
    hub: ConnectionHub = Depends(get_hub),
) -> JSONResponse:
    """Persist a message, then push it live to the receiver if online."""
    text = body.text.strip() if body.text else None
    if not text and not body.image:
        return _error(400, "Message must have text or an image")

    receiver = await run_in_threadpool(db.get_user, receiver_id)
    if receiver is None:
        return _error(404, "Receiver not found")

    image_url = None
    if body.image:
        try:
            image_url = await run_in_threadpool(media.store_image, body.image)
        except InvalidImageError as e:
            return _error(400, str(e))

    try:
        message = await run_in_threadpool(
            db.insert_message, user["_id"], receiver_id, text or None, image_url
        )
    except sqlite3.OperationalError as e:
        log.exception("Failed to save message")
        return JSONResponse(status_code=500, content={"error": str(e)})

    await hub.route_message(message)
    return JSONResponse(status_code=201, content=message)


# -- Real-time --


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Presence updates and live message delivery for one client."""
    session = ClientSession(websocket, websocket.app.state.hub)
    try:
        if await session.open():
            await session.serve()
    finally:
        await session.close()
