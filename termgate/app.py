"""
Web Terminal Gateway Server

Serves interactive shells to browser clients over WebSockets. Each shell is
a session that survives disconnects: a client can drop, come back on a new
connection, and reconnect to the same shell until the session expires.
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from termgate.auth import AuthError, RateLimiter, STATIC_SECRET_IDENTITY, create_auth_manager
from termgate.config import Settings, load_settings
from termgate.gateway import TerminalGateway, pump_outbox
from termgate.sessions import SessionRegistry
from termgate.sweeper import ExpirySweeper

# =============================================================================
# SECURITY CONFIGURATION
# =============================================================================
# Without auth enabled: binds to localhost only (unauthenticated, safe for local).
# With auth enabled:    credentials required; safe to expose via reverse proxy.
# =============================================================================
LOCAL_HOSTS = ("127.0.0.1", "localhost", "::1")

COOKIE_NAME = "termgate_session"
AUTH_SESSION_CLEANUP_INTERVAL_SECONDS = 3600  # 1 hour (cleans up expired login tokens)

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class StaticSecretRequest(BaseModel):
    secret: str = ""


# =============================================================================
# BACKGROUND TASKS
# =============================================================================


async def cleanup_expired_auth_sessions(app: FastAPI):
    """Periodically clean up expired login tokens to prevent memory leaks."""
    while True:
        try:
            auth_manager = app.state.auth_manager
            if auth_manager:
                count = auth_manager.cleanup_expired_sessions()
                if count > 0:
                    logger.info(f"Cleaned up {count} expired auth session(s)")
        except Exception as e:
            logger.error(f"Auth session cleanup error: {e}")

        await asyncio.sleep(AUTH_SESSION_CLEANUP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    sweeper: ExpirySweeper = app.state.sweeper

    # Startup
    sweeper.start()
    auth_cleanup_task = asyncio.create_task(cleanup_expired_auth_sessions(app))
    logger.info(
        f"Terminal gateway started (shell={settings.terminal.shell}, "
        f"allowed path={settings.terminal.allowed_path}, "
        f"auth={'on' if app.state.auth_manager else 'off'})"
    )

    yield

    # Shutdown
    await sweeper.stop()
    auth_cleanup_task.cancel()
    try:
        await auth_cleanup_task
    except asyncio.CancelledError:
        pass

    await app.state.registry.shutdown()
    logger.info("Terminal gateway stopped")


# =============================================================================
# AUTHENTICATION
# =============================================================================


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _request_token(request: Request) -> Optional[str]:
    """Login token from the session cookie or an ``Authorization: Bearer`` header."""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def get_current_identity(request: Request) -> Optional[str]:
    """The authenticated identity for this request, or None when auth is off."""
    return getattr(request.state, "identity", None)


async def auth_middleware(request: Request, call_next):
    """Gate /api/* behind a valid login token when authentication is enabled."""
    auth_manager = request.app.state.auth_manager
    request.state.identity = None
    if not auth_manager or not request.url.path.startswith("/api/"):
        return await call_next(request)

    token = _request_token(request)
    try:
        request.state.identity = auth_manager.verify(token)
    except AuthError as e:
        return JSONResponse({"detail": str(e)}, status_code=401)
    return await call_next(request)


def _login_response(request: Request, identity: str) -> Response:
    auth_manager = request.app.state.auth_manager
    token = auth_manager.create_session(identity)
    response = JSONResponse({"token": token, "identity": identity})
    response.set_cookie(
        key=COOKIE_NAME,
        value=token,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="strict",
        path="/",
        max_age=int(auth_manager.timeout.total_seconds()),
    )
    return response


router = APIRouter()


@router.post("/login")
async def login(request: Request, body: LoginRequest):
    """Exchange a username and password for a login token."""
    auth_manager = request.app.state.auth_manager
    if not auth_manager:
        raise HTTPException(status_code=404, detail="Authentication is disabled")

    username = body.username.strip()
    client_ip = _get_client_ip(request)
    rate_limiter: RateLimiter = request.app.state.rate_limiter

    if rate_limiter.is_blocked(username, client_ip):
        remaining_seconds = rate_limiter.get_lockout_remaining_seconds(username, client_ip)
        remaining_minutes = (remaining_seconds + 59) // 60  # Round up
        logger.warning(f"Login blocked for user '{username}' from {client_ip} (rate limited)")
        raise HTTPException(
            status_code=429,
            detail=f"Too many failed attempts. Try again in {remaining_minutes} minute(s).",
        )

    if not auth_manager.authenticate(username, body.password):
        rate_limiter.record_failure(username, client_ip)
        remaining = rate_limiter.get_remaining_attempts(username, client_ip)
        logger.info(f"Failed login for user '{username}' from {client_ip} ({remaining} attempts remaining)")
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    rate_limiter.clear_on_success(username, client_ip)
    if not auth_manager.is_allowed(username):
        logger.warning(f"Login by '{username}' refused: not in the allowed list")
        raise HTTPException(status_code=403, detail=f"{username} is not in the allowed list")

    return _login_response(request, username)


@router.post("/auth/static-secret")
async def static_secret_login(request: Request, body: StaticSecretRequest):
    """Exchange the shared static secret for a login token."""
    auth_manager = request.app.state.auth_manager
    if not auth_manager:
        raise HTTPException(status_code=404, detail="Authentication is disabled")
    if not auth_manager.static_secret_configured:
        raise HTTPException(status_code=400, detail="Static secret authentication is not configured")

    client_ip = _get_client_ip(request)
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    if rate_limiter.is_blocked(STATIC_SECRET_IDENTITY, client_ip):
        raise HTTPException(status_code=429, detail="Too many failed attempts.")

    if not auth_manager.authenticate_static_secret(body.secret):
        rate_limiter.record_failure(STATIC_SECRET_IDENTITY, client_ip)
        logger.warning(f"Invalid static secret from {client_ip}")
        raise HTTPException(status_code=401, detail="Invalid secret")

    rate_limiter.clear_on_success(STATIC_SECRET_IDENTITY, client_ip)
    return _login_response(request, STATIC_SECRET_IDENTITY)


@router.post("/logout")
async def logout(request: Request):
    """Destroy the login token."""
    token = _request_token(request)
    auth_manager = request.app.state.auth_manager
    if token and auth_manager:
        auth_manager.destroy_session(token)
    response = JSONResponse({"status": "logged out"})
    response.delete_cookie(COOKIE_NAME, path="/")
    return response


# =============================================================================
# HTTP API
# =============================================================================


@router.get("/health")
async def health(request: Request):
    return {"status": "ok", "sessions": len(request.app.state.registry.list_sessions())}


@router.get("/api/terminal/folder-shortcuts")
async def folder_shortcuts(request: Request):
    shortcuts = list(request.app.state.settings.terminal.folder_shortcuts)
    logger.debug(f"Returned {len(shortcuts)} folder shortcuts")
    return {"shortcuts": shortcuts}


@router.get("/api/terminal/favorite-commands")
async def favorite_commands(request: Request):
    commands = list(request.app.state.settings.terminal.favorite_commands)
    logger.debug(f"Returned {len(commands)} favorite commands")
    return {"commands": commands}


@router.get("/api/sessions")
async def my_sessions(request: Request):
    """List the caller's live sessions (all sessions when auth is off)."""
    registry: SessionRegistry = request.app.state.registry
    identity = get_current_identity(request)
    sessions = registry.list_sessions(owner=identity) if identity else registry.list_sessions()
    return {"sessions": [s.to_dict() for s in sessions]}


# =============================================================================
# WEBSOCKET TRANSPORT
# =============================================================================


@router.websocket("/ws")
async def terminal_websocket(websocket: WebSocket):
    """Terminal protocol endpoint. See termgate.gateway for the messages."""
    gateway: TerminalGateway = websocket.app.state.gateway
    await websocket.accept()

    credential = websocket.query_params.get("token") or websocket.cookies.get(COOKIE_NAME)
    try:
        identity = gateway.authenticate(credential)
    except AuthError as e:
        logger.warning(f"Rejected WebSocket from {websocket.client}: {e}")
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close(code=1008)
        return

    connection = gateway.connect(identity)
    writer = asyncio.create_task(pump_outbox(connection, websocket.send_json))
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            text = frame.get("text")
            if text is None:
                # Binary frames are not part of the protocol
                connection.send_error("Invalid message")
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                connection.send_error("Invalid JSON")
                continue
            await gateway.handle_message(connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        gateway.disconnect(connection)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"WebSocket writer for {connection.connection_id} ended: {e}")


# =============================================================================
# APPLICATION FACTORY
# =============================================================================


def create_app(settings: Optional[Settings] = None, registry: Optional[SessionRegistry] = None) -> FastAPI:
    """Build the FastAPI app and its session manager."""
    settings = settings or load_settings()
    registry = registry or SessionRegistry(
        shell=settings.terminal.shell,
        allowed_path=settings.terminal.allowed_path,
        session_timeout=timedelta(milliseconds=settings.terminal.session_timeout),
        max_sessions=settings.terminal.max_sessions,
    )
    auth_manager = create_auth_manager(settings.auth)

    app = FastAPI(
        title="Web Terminal Gateway",
        description="Reconnectable shell sessions over WebSockets",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.auth_manager = auth_manager
    app.state.rate_limiter = RateLimiter()
    app.state.gateway = TerminalGateway(registry, settings.terminal, auth_manager)
    app.state.sweeper = ExpirySweeper(registry, settings.terminal.cleanup_interval_seconds)

    app.middleware("http")(auth_middleware)
    app.include_router(router)
    return app


def main(argv: Optional[list[str]] = None) -> None:
    import uvicorn

    settings = load_settings()
    parser = argparse.ArgumentParser(description="Serve reconnectable shell sessions over WebSockets.")
    parser.add_argument("--host", default=settings.host, help=f"Bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Port (default: {settings.port})")
    args = parser.parse_args(argv)

    # ==========================================================================
    # SECURITY CHECK
    # ==========================================================================
    # Without auth: localhost only (unauthenticated).
    # With auth:    any bind address is allowed (authentication enforced).
    # ==========================================================================
    if settings.auth.enabled:
        logger.info("Authentication enabled")
    elif args.host not in LOCAL_HOSTS:
        print("=" * 70)
        print("SECURITY ERROR: Refusing to start!")
        print("=" * 70)
        print(f"Bind address is set to '{args.host}'")
        print()
        print("Authentication is NOT enabled.")
        print("Without authentication, the server MUST bind to localhost.")
        print()
        print("To enable authentication, set auth.enabled in config.yaml")
        print("(or AUTH_ENABLE=true) and add a user:")
        print("  python3 edit_user.py add admin")
        print("=" * 70)
        sys.exit(1)

    uvicorn.run(create_app(settings), host=args.host, port=args.port, access_log=False)


if __name__ == "__main__":
    main()
