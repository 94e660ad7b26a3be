"""FastAPI application for pushbatch."""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated, Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from . import db
from ._version import __version__
from .config import get_config
from .errors import PushbatchConfigError, UsageLimitExceeded
from .metrics import metrics
from .pipeline import Pipeline

logger = logging.getLogger(__name__)


def is_no_auth_mode() -> bool:
    """Check if server is running in no-auth mode (for development)."""
    return os.environ.get("PUSHBATCH_NO_AUTH", "").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and build the pipeline."""
    db.init_db()
    pipeline = Pipeline.from_config(get_config())
    app.state.pipeline = pipeline
    logger.info(
        f"pushbatch API ready (db={db.get_db_path()}, dispatcher={type(pipeline.dispatcher).__name__})"
    )

    yield

    await pipeline.close()
    db.close_db()


app = FastAPI(
    title="pushbatch",
    description="Presence-aware push notification batching",
    version=__version__,
    lifespan=lifespan,
)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # /presence/u-1 -> presence, /jobs/sweep -> jobs
    parts = [p for p in request.url.path.split("/") if p]
    endpoint = parts[0] if parts else "root"
    metrics.record_request(endpoint, duration_ms)

    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Request/Response Models ---


class MessageEvent(BaseModel):
    recipient_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    sender_name: str | None = None
    subject_label: str | None = None
    content: str | None = None


class MessageOutcome(BaseModel):
    outcome: str


class SetPresenceRequest(BaseModel):
    conversation_id: str = Field(min_length=1)


class PresenceInfo(BaseModel):
    user_id: str
    active: bool
    active_conversation_id: str | None = None
    last_seen: str | None = None


class SetPresenceResponse(BaseModel):
    user_id: str
    conversation_id: str
    cleared_batches: int


class PendingBatchInfo(BaseModel):
    id: str
    recipient_id: str
    sender_id: str
    sender_display_name: str | None
    conversation_id: str
    subject_label: str | None
    message_count: int
    first_message_preview: str | None
    first_message_at: str
    last_message_at: str


class SweepRequest(BaseModel):
    batch_window_seconds: float | None = Field(default=None, gt=0)
    stale_age_seconds: float | None = Field(default=None, gt=0)


class UsageInfo(BaseModel):
    subject_id: str
    counter: str
    count: int
    limit: int
    remaining: int
    limit_reached: bool
    show_warning: bool
    warning_message: str | None


# --- Auth Helpers ---


def get_admin_token() -> str | None:
    return os.environ.get("PUSHBATCH_ADMIN_TOKEN")


def require_admin(authorization: str | None, x_admin_token: str | None) -> None:
    """
    Verify admin authentication.

    Accepts either X-Admin-Token or Authorization: Bearer carrying
    PUSHBATCH_ADMIN_TOKEN. PUSHBATCH_NO_AUTH=1 disables the check.
    """
    if is_no_auth_mode():
        return

    expected = get_admin_token()
    if not expected:
        raise HTTPException(500, "No auth method configured. Set PUSHBATCH_ADMIN_TOKEN")

    token = x_admin_token
    if not token and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    if not token:
        raise HTTPException(401, "X-Admin-Token or Authorization: Bearer header required")

    if token != expected:
        raise HTTPException(403, "Invalid admin token")


# --- Message Ingress ---


@app.post("/messages", response_model=MessageOutcome)
async def post_message(
    event: MessageEvent,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Fold a persisted chat message into the recipient's pending batch."""
    require_admin(authorization, x_admin_token)
    outcome = await get_pipeline(request).accumulator.on_message(
        recipient_id=event.recipient_id,
        sender_id=event.sender_id,
        sender_name=event.sender_name,
        conversation_id=event.conversation_id,
        subject_label=event.subject_label,
        content=event.content,
    )
    return MessageOutcome(outcome=outcome.value)


# --- Presence ---


@app.put("/presence/{user_id}", response_model=SetPresenceResponse)
async def set_presence(
    user_id: str,
    body: SetPresenceRequest,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Mark a user as viewing a conversation.

    Clients call this on open and then on every heartbeat tick.
    """
    require_admin(authorization, x_admin_token)
    cleared = await get_pipeline(request).presence.set_active(
        user_id, body.conversation_id, heartbeat=False
    )
    return SetPresenceResponse(
        user_id=user_id, conversation_id=body.conversation_id, cleared_batches=cleared
    )


@app.delete("/presence/{user_id}")
async def clear_presence(
    user_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Mark a user as not viewing any conversation."""
    require_admin(authorization, x_admin_token)
    await get_pipeline(request).presence.clear_active(user_id)
    return {"ok": True}


@app.get("/presence/{user_id}", response_model=PresenceInfo)
async def get_presence(
    user_id: str,
    request: Request,
    conversation_id: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Get a user's presence; with conversation_id, whether they are on it."""
    require_admin(authorization, x_admin_token)
    presence = get_pipeline(request).presence
    record = await presence.get(user_id)

    if conversation_id is not None:
        active = await presence.is_active(user_id, conversation_id)
    else:
        active = bool(record and record["active_conversation_id"])

    return PresenceInfo(
        user_id=user_id,
        active=active,
        active_conversation_id=record["active_conversation_id"] if record else None,
        last_seen=record["last_seen"] if record else None,
    )


# --- Pending Batches and Sweep ---


@app.get("/pending/{recipient_id}", response_model=list[PendingBatchInfo])
async def list_pending(
    recipient_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """List batches waiting to be delivered to a recipient."""
    require_admin(authorization, x_admin_token)
    batches = await get_pipeline(request).accumulator.pending_for(recipient_id)
    return [PendingBatchInfo(**b) for b in batches]


@app.post("/jobs/sweep")
async def run_sweep(
    request: Request,
    body: SweepRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    """Deliver every matured batch. Safe to call on any schedule."""
    require_admin(authorization, x_admin_token)
    processor = get_pipeline(request).processor

    kwargs: dict[str, Any] = {}
    if body is not None and body.batch_window_seconds is not None:
        kwargs["batch_window"] = timedelta(seconds=body.batch_window_seconds)
    if body is not None and body.stale_age_seconds is not None:
        kwargs["stale_age"] = timedelta(seconds=body.stale_age_seconds)

    report = await processor.run_sweep(**kwargs)
    return report.to_dict()


# --- Usage ---


@app.get("/usage/{subject_id}/{counter}", response_model=UsageInfo)
async def get_usage(
    subject_id: str,
    counter: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Today's usage against a named daily limit."""
    require_admin(authorization, x_admin_token)
    try:
        status = await get_pipeline(request).limiter.status(subject_id, counter)
    except PushbatchConfigError as e:
        raise HTTPException(404, str(e)) from e
    return UsageInfo(**status.to_dict())


@app.post("/usage/{subject_id}/{counter}", response_model=UsageInfo)
async def consume_usage(
    subject_id: str,
    counter: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Record one use of a rate-limited operation, or refuse with 429."""
    require_admin(authorization, x_admin_token)
    try:
        status = await get_pipeline(request).limiter.consume(subject_id, counter)
    except PushbatchConfigError as e:
        raise HTTPException(404, str(e)) from e
    except UsageLimitExceeded as e:
        raise HTTPException(429, e.status.to_dict()) from e
    return UsageInfo(**status.to_dict())


# --- Health and Metrics ---


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
async def get_metrics(
    authorization: Annotated[str | None, Header()] = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires admin authentication."""
    require_admin(authorization, x_admin_token)
    return {
        **metrics.to_dict(),
        "schema_version": await db.run_sync(db.get_schema_version),
    }
