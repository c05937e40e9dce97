import asyncio
import hmac
import json
import threading
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger
from redis import Redis

from photo_batch import jobs, ledger
from photo_batch.auth import verify_ws_token
from photo_batch.config import settings
from photo_batch.db import init_db
from photo_batch.dispatcher import Dispatcher
from photo_batch.errors import (
    InsufficientCredits,
    InvalidInput,
    JobAccessDenied,
    JobNotCancellable,
    JobNotFound,
    PhotoBatchError,
    QueueUnavailable,
)
from photo_batch.generator import GeneratorClient
from photo_batch.log import configure_logging
from photo_batch.notifications import NotificationHub, RedisNotifier, WebSocketConnection
from photo_batch.queue import JobQueue, get_redis_connection
from photo_batch.schemas import (
    AdminGrantRequest,
    CancelRequest,
    CreditBalanceResponse,
    CreditCheckResponse,
    JobCreateRequest,
    JobResponse,
    TaskCompleteCallback,
    TaskFailedCallback,
)

_ERROR_STATUS: dict[type[PhotoBatchError], int] = {
    InsufficientCredits: 402,
    InvalidInput: 400,
    JobNotFound: 404,
    JobAccessDenied: 403,
    JobNotCancellable: 409,
    QueueUnavailable: 503,
}


def configure_app(app: FastAPI, conn: Redis | None = None) -> None:
    """Build the per-process services and hang them on ``app.state``."""
    conn = conn or get_redis_connection()
    queue = JobQueue.from_settings(conn)
    hub = NotificationHub()
    relay = RedisNotifier(conn, settings.notify_channel)
    notifier = relay if settings.notify_via_redis else hub

    app.state.redis = conn
    app.state.queue = queue
    app.state.hub = hub
    app.state.relay = relay
    app.state.dispatcher = Dispatcher(queue, notifier)
    app.state.generator = GeneratorClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = threading.Event()
    listener: threading.Thread | None = None
    if settings.notify_via_redis:
        listener = threading.Thread(
            target=app.state.relay.listen, args=(app.state.hub, stop), name="notify-relay", daemon=True
        )
        listener.start()
    yield
    stop.set()
    if listener:
        listener.join(timeout=2)
    app.state.hub.clear()


configure_logging(settings.log_level)
app = FastAPI(title="Photo Batch Service", version=settings.app_version, lifespan=lifespan)
init_db()
configure_app(app)


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"version": settings.app_version},
        "error": error,
    }


@app.exception_handler(PhotoBatchError)
async def _handle_domain_error(request: Request, exc: PhotoBatchError) -> JSONResponse:
    status_code = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    error = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, InsufficientCredits):
        error.update({"required": exc.required, "balance": exc.balance, "shortfall": exc.shortfall})
    if isinstance(exc, QueueUnavailable) and exc.job_id:
        error["job_id"] = exc.job_id
    return JSONResponse(status_code=status_code, content=envelope({}, status="error", error=error))


def _require_admin(x_admin_token: str | None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _require_callback_token(x_callback_token: str | None) -> None:
    if settings.callback_token and not hmac.compare_digest(x_callback_token or "", settings.callback_token):
        raise HTTPException(status_code=401, detail="Invalid callback token")


def _dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


@app.get("/health")
def health() -> dict:
    return envelope({"service": "photo-batch"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "photo-batch", "version": settings.app_version})


@app.post("/v1/jobs")
def create_job(payload: JobCreateRequest, request: Request) -> dict:
    job = _dispatcher(request).submit(payload.user_id, payload.type, payload.batch_size, payload.payload)
    return envelope(JobResponse(**job).model_dump())


@app.get("/v1/jobs")
def list_jobs(
    request: Request,
    user_id: str = Query(...),
    status: str | None = Query(None),
    type: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> dict:
    rows = _dispatcher(request).list_jobs(user_id, status=status, job_type=type, limit=limit, offset=offset)
    return envelope(
        {
            "jobs": [JobResponse(**j).model_dump() for j in rows],
            "total": jobs.count_jobs(user_id=user_id, status=status, job_type=type),
            "limit": limit,
            "offset": offset,
        }
    )


@app.get("/v1/jobs/{job_id}")
def get_job(job_id: str, request: Request, user_id: str | None = Query(None)) -> dict:
    job = _dispatcher(request).get_job(job_id, user_id)
    return envelope(JobResponse(**job).model_dump())


@app.post("/v1/jobs/{job_id}/cancel")
def cancel_job(job_id: str, request: Request, payload: CancelRequest | None = None) -> dict:
    user_id = payload.user_id if payload else None
    job = _dispatcher(request).cancel(job_id, user_id)
    return envelope(JobResponse(**job).model_dump())


@app.get("/v1/credits/{user_id}")
def get_credits(user_id: str, limit: int = Query(20, ge=1, le=100)) -> dict:
    balance = CreditBalanceResponse(**ledger.get_balance(user_id)).model_dump()
    return envelope({"balance": balance, "recent_transactions": ledger.list_transactions(user_id, limit=limit)})


@app.get("/v1/credits/{user_id}/check")
def check_credits(user_id: str, amount: int = Query(..., ge=1)) -> dict:
    return envelope(CreditCheckResponse(**ledger.check(user_id, amount)).model_dump())


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token)
    ledger.grant(payload.user_id, payload.amount, kind=payload.kind, description=payload.note)
    return envelope(CreditBalanceResponse(**ledger.get_balance(payload.user_id)).model_dump())


@app.get("/v1/admin/queues/stats")
def admin_queue_stats(request: Request, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token)
    queue: JobQueue = request.app.state.queue
    hub: NotificationHub = request.app.state.hub
    return envelope(
        {
            "queues": {t: queue.stats(t) for t in queue.job_types},
            "jobs": jobs.get_stats(),
            "online_users": hub.online_users(),
            "connections": hub.connection_count(),
        }
    )


@app.get("/v1/admin/health")
def admin_health(request: Request, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token)
    queue: JobQueue = request.app.state.queue
    generator: GeneratorClient = request.app.state.generator
    return envelope({"redis": queue.health(), "generator": generator.health()})


@app.post("/callback/task-complete")
def task_complete(
    payload: TaskCompleteCallback,
    request: Request,
    x_callback_token: Annotated[str | None, Header()] = None,
) -> dict:
    _require_callback_token(x_callback_token)
    job = _dispatcher(request).complete_from_callback(payload.job_id, payload.result)
    return envelope({"job_id": job["job_id"], "status": job["status"]})


@app.post("/callback/task-failed")
def task_failed(
    payload: TaskFailedCallback,
    request: Request,
    x_callback_token: Annotated[str | None, Header()] = None,
) -> dict:
    _require_callback_token(x_callback_token)
    job = _dispatcher(request).fail_from_callback(payload.job_id, payload.error)
    return envelope({"job_id": job["job_id"], "status": job["status"]})


@app.websocket("/ws")
async def notifications(websocket: WebSocket) -> None:
    await websocket.accept()
    hub: NotificationHub = websocket.app.state.hub
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    user_id: str | None = None

    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                await websocket.send_json({"type": "error", "message": "invalid json"})
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "auth":
                authed = verify_ws_token(message.get("token"))
                if not authed:
                    await websocket.send_json({"type": "error", "message": "authentication failed"})
                    await websocket.close(code=1008)
                    return
                if user_id and user_id != authed:
                    hub.unsubscribe(user_id, connection)
                user_id = authed
                hub.subscribe(user_id, connection)
                await websocket.send_json({"type": "auth_success", "user_id": user_id})
            elif kind == "ping":
                await websocket.send_json({"type": "pong", "timestamp": int(time.time() * 1000)})
            else:
                await websocket.send_json({"type": "error", "message": f"unsupported message type: {kind}"})
    except WebSocketDisconnect:
        logger.debug(f"websocket closed user={user_id}")
    finally:
        if user_id:
            hub.unsubscribe(user_id, connection)
