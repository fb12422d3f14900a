from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from application.anti_cheat import AntiCheatValidator
from application.broadcast import Subscription
from application.services import (
    complete_action,
    get_leaderboard,
    get_user_standing,
    request_action_token,
)
from application.tokens import ActionTokenService
from bootstrap import Scoreboard
from domain.models import CompletionProof, LeaderboardChanged
from interfaces.http.auth import AccessTokenVerifier, AuthenticationError
from interfaces.http.schemas import (
    ActionCompleteBody,
    ActionRequestBody,
    error_payload,
    issued_token_payload,
    score_change_payload,
    score_update_payload,
    snapshot_payload,
    standing_payload,
)

logger = logging.getLogger(__name__)

# Rejections the client can act on are 4xx; INVALID_DELTA is our fault.
ERROR_STATUS = {
    "TOKEN_INVALID": 400,
    "TOKEN_NOT_FOUND": 400,
    "TOKEN_EXPIRED": 400,
    "TOKEN_ALREADY_USED": 400,
    "TOKEN_USER_MISMATCH": 403,
    "SUSPICIOUS_TIMING": 400,
    "RATE_LIMIT_EXCEEDED": 429,
    "INVALID_ACTION_TYPE": 400,
    "INVALID_DELTA": 500,
}

bearer_scheme = HTTPBearer(auto_error=False)


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, retry_after_ms: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retry_after_ms = retry_after_ms


def _scoreboard(request: Request) -> Scoreboard:
    return request.app.state.scoreboard


def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None:
        raise ApiError(401, "UNAUTHORIZED", "Unauthorized")
    verifier: AccessTokenVerifier = request.app.state.verifier
    try:
        return verifier.verify(credentials.credentials)
    except AuthenticationError as exc:
        raise ApiError(401, "UNAUTHORIZED", str(exc)) from exc


async def _purge_expired_state(
    token_service: ActionTokenService,
    validator: AntiCheatValidator,
    interval_s: float,
) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(token_service.purge_expired)
            validator.prune_idle()
        except Exception:
            logger.exception("Expired state purge failed")


def create_app(scoreboard: Scoreboard, verifier: Optional[AccessTokenVerifier] = None) -> FastAPI:
    """
    Build the HTTP + WebSocket API around a wired `Scoreboard`.

    The app's lifespan owns the background work: the broadcaster's flush
    timer and the purge of expired tokens and idle rate windows. Both are
    cancelled on shutdown.
    """

    settings = scoreboard.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scoreboard.broadcaster.start()
        purge_task = asyncio.create_task(
            _purge_expired_state(
                scoreboard.token_service,
                scoreboard.validator,
                settings.token_purge_interval_ms / 1000,
            )
        )
        logger.info("Scoreboard API started (storage=%s)", settings.storage_backend)
        try:
            yield
        finally:
            purge_task.cancel()
            with suppress(asyncio.CancelledError):
                await purge_task
            await scoreboard.broadcaster.stop()
            logger.info("Scoreboard API stopped")

    app = FastAPI(title="Scoreboard API", version="1.0.0", lifespan=lifespan)
    app.state.scoreboard = scoreboard
    app.state.verifier = verifier or AccessTokenVerifier(settings.auth_secret)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        headers = None
        retry_after_s = None
        if exc.retry_after_ms is not None:
            retry_after_s = max(1, math.ceil(exc.retry_after_ms / 1000))
            headers = {"Retry-After": str(retry_after_s)}
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            error_payload(exc.code, exc.message, retry_after_s),
            status_code=exc.status_code,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(error_payload("INVALID_REQUEST", str(exc.errors())), status_code=422)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(error_payload("HTTP_ERROR", str(exc.detail)), status_code=exc.status_code)

    @app.get("/")
    def index() -> dict:
        return {
            "success": True,
            "message": "Scoreboard API Server",
            "version": app.version,
            "endpoints": {
                "requestAction": "POST /api/actions/request",
                "completeAction": "POST /api/actions/complete",
                "leaderboard": "GET /api/leaderboard",
                "myScore": "GET /api/users/me/score",
                "websocket": "WS /api/leaderboard/live",
            },
        }

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok", "subscribers": scoreboard.broadcaster.subscriber_count}

    @app.post("/api/actions/request")
    def request_action(
        body: Optional[ActionRequestBody] = None,
        user_id: str = Depends(current_user),
    ) -> dict:
        body = body or ActionRequestBody()
        result = request_action_token(user_id, body.action_type, scoreboard.token_service)
        if not result.success:
            raise ApiError(ERROR_STATUS.get(result.error_code, 400), result.error_code, result.error_message)
        return {"success": True, "data": issued_token_payload(result.issued)}

    @app.post("/api/actions/complete")
    def complete(body: ActionCompleteBody, user_id: str = Depends(current_user)) -> dict:
        proof = CompletionProof(
            completion_time_ms=body.proof.completion_time,
            checksum=body.proof.checksum,
        )
        result = complete_action(
            user_id,
            body.action_token,
            proof,
            token_service=scoreboard.token_service,
            validator=scoreboard.validator,
            leaderboard_repo=scoreboard.leaderboard_repo,
            broadcaster=scoreboard.broadcaster,
            scoring=scoreboard.scoring,
            clock=scoreboard.clock,
        )
        if not result.success:
            raise ApiError(
                ERROR_STATUS.get(result.error_code, 400),
                result.error_code,
                result.error_message,
                result.retry_after_ms,
            )
        return {"success": True, "data": score_update_payload(result.update)}

    @app.get("/api/leaderboard")
    def leaderboard(limit: Optional[int] = None) -> dict:
        limit = settings.leaderboard_default_limit if limit is None else limit
        snapshot = get_leaderboard(
            limit,
            scoreboard.leaderboard_repo,
            max_limit=settings.leaderboard_max_limit,
            clock=scoreboard.clock,
        )
        return {"success": True, "data": snapshot_payload(snapshot)}

    @app.get("/api/users/me/score")
    def my_score(user_id: str = Depends(current_user)) -> dict:
        standing = get_user_standing(user_id, scoreboard.leaderboard_repo)
        return {"success": True, "data": standing_payload(standing)}

    @app.websocket("/api/leaderboard/live")
    async def leaderboard_live(websocket: WebSocket) -> None:
        await websocket.accept()
        subscription = await scoreboard.broadcaster.subscribe()
        logger.info("Live leaderboard client connected: %s", websocket.client)

        sender = asyncio.create_task(_forward_messages(websocket, subscription))
        receiver = asyncio.create_task(_answer_client(websocket))
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
                with suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await task
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.warning("Live leaderboard connection failed: %s", exc)
            if sender in done and receiver not in done:
                # Broadcaster stopped: tell the client we are going away.
                with suppress(RuntimeError):
                    await websocket.close(code=1001)
        finally:
            subscription.close()
            logger.info("Live leaderboard client disconnected: %s", websocket.client)

    return app


async def _forward_messages(websocket: WebSocket, subscription: Subscription) -> None:
    snapshot_type = "leaderboard:initial"
    async for message in subscription:
        if isinstance(message, LeaderboardChanged):
            await websocket.send_json({"type": "score:update", **score_change_payload(message)})
            continue
        await websocket.send_json({"type": snapshot_type, **snapshot_payload(message)})
        snapshot_type = "leaderboard:update"


async def _answer_client(websocket: WebSocket) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_json({"type": "error", "message": "Messages must be JSON"})
            continue
        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json({"type": "pong", "timestamp": int(time.time() * 1000)})
