import asyncio
import contextlib
import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, Optional
from urllib.parse import parse_qs

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from sms_pipeline.bulk import BulkSendOrchestrator
from sms_pipeline.config import settings
from sms_pipeline.dispatcher import Dispatcher
from sms_pipeline.lifecycle import MessageState, WebhookEventStatus
from sms_pipeline.logging_utils import RequestLoggingMiddleware, annotate_request_log, setup_logging
from sms_pipeline.metrics import record_throttle_decision, record_webhook_outcome, render_metrics
from sms_pipeline.provider import ProviderClient, TwilioProvider
from sms_pipeline.reconciler import WebhookReconciler, parse_twilio_payload
from sms_pipeline.schemas import (
    BulkSendResponse,
    ChallengeAttemptResponse,
    ErrorResponse,
    HealthResponse,
    MalformedEvent,
    SendAlertRequest,
    SendOutcome,
    SingleSendRequest,
    SmsLogsListResponse,
    SmsStats,
    WebhookAck,
)
from sms_pipeline.storage import MessageLogStore, SqlMessageLogStore, check_db_health, close_db, init_db
from sms_pipeline.throttle import ThrottleGuard, run_periodic_cleanup
from sms_pipeline.utils import verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the store, provider and throttle guards,
      start the throttle cleanup sweep
    - Shutdown: stop the sweep and release database connections
    """
    await init_db()

    app.state.store = SqlMessageLogStore()
    app.state.provider = TwilioProvider.from_settings(settings)
    app.state.challenge_guard = ThrottleGuard(
        settings.CHALLENGE_THROTTLE_MAX_REQUESTS,
        settings.CHALLENGE_THROTTLE_WINDOW_SECONDS,
        name="challenge",
    )
    app.state.alert_guard = ThrottleGuard(
        settings.ALERT_THROTTLE_MAX_REQUESTS,
        settings.ALERT_THROTTLE_WINDOW_SECONDS,
        name="alerts",
    )
    cleanup_task = asyncio.create_task(
        run_periodic_cleanup(
            [app.state.challenge_guard, app.state.alert_guard],
            settings.THROTTLE_CLEANUP_INTERVAL_SECONDS,
        )
    )

    yield

    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await close_db()


app = FastAPI(
    title="SMS Notification Pipeline",
    description="Bulk SMS dispatch with delivery-status reconciliation and request throttling",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageLogStore:
    return request.app.state.store


def get_provider(request: Request) -> ProviderClient:
    return request.app.state.provider


def get_dispatcher(
    store: MessageLogStore = Depends(get_store),
    provider: ProviderClient = Depends(get_provider),
) -> Dispatcher:
    return Dispatcher(store, provider, timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS)


def get_orchestrator(dispatcher: Dispatcher = Depends(get_dispatcher)) -> BulkSendOrchestrator:
    return BulkSendOrchestrator(dispatcher, delay_seconds=settings.BULK_SEND_DELAY_SECONDS)


def get_reconciler(store: MessageLogStore = Depends(get_store)) -> WebhookReconciler:
    return WebhookReconciler(store)


def client_identifier(request: Request) -> str:
    """Throttle key: the client address. Headers are caller-controlled, so none feed into it."""
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def throttled(guard_attr: str):
    """Build a dependency that consumes a slot from ``app.state.<guard_attr>`` or answers 429."""

    def dependency(request: Request, identifier: str = Depends(client_identifier)) -> str:
        guard: ThrottleGuard = getattr(request.app.state, guard_attr)
        allowed = guard.allow(identifier)
        record_throttle_decision(guard.name, allowed)
        if not allowed:
            retry_after = math.ceil(guard.time_until_reset(identifier))
            logger.warning(f"Throttled request on '{guard.name}'", extra={"retry_after": retry_after})
            annotate_request_log(request, throttle_guard=guard.name, retry_after=retry_after)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="too many requests",
                headers={"Retry-After": str(retry_after)},
            )
        return identifier

    return dependency


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    provider: ProviderClient = Depends(get_provider),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The SMS provider has credentials and a sender number

    Otherwise returns 503 (Service Unavailable).
    """
    if not await check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if not provider.is_configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="SMS provider not configured"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Alert Routes
# =============================================================================

@app.post(
    "/alerts/send",
    response_model=BulkSendResponse,
    responses={429: {"model": ErrorResponse, "description": "Too many alert sends"}},
)
async def send_alerts(
    payload: SendAlertRequest,
    identifier: str = Depends(throttled("alert_guard")),
    orchestrator: BulkSendOrchestrator = Depends(get_orchestrator),
) -> BulkSendResponse:
    """
    Send one alert to every recipient.

    Always 200 once the batch ran; inspect status/failed_count for
    partial failures.
    """
    logger.info(f"Sending alert to {len(payload.recipients)} recipients")

    result = await orchestrator.send_bulk(payload.recipients, payload.message)

    logger.info(
        "Alerts sent",
        extra={
            "total_recipients": result.total,
            "success_count": result.success_count,
            "failed_count": result.failed_count,
        },
    )
    return BulkSendResponse.from_result(result)


@app.post("/sms/test", response_model=SendOutcome)
async def send_test_sms(
    payload: SingleSendRequest,
    identifier: str = Depends(throttled("alert_guard")),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SendOutcome:
    """Send a single message without writing a message log entry."""
    return await dispatcher.send(payload.to, payload.message, record=False)


# =============================================================================
# Challenge Routes
# =============================================================================

@app.post(
    "/challenge/attempts",
    response_model=ChallengeAttemptResponse,
    responses={429: {"model": ErrorResponse, "description": "Too many attempts"}},
)
async def challenge_attempt(
    request: Request,
    identifier: str = Depends(throttled("challenge_guard")),
) -> ChallengeAttemptResponse:
    """Consume one verification attempt for the caller."""
    guard: ThrottleGuard = request.app.state.challenge_guard
    return ChallengeAttemptResponse(
        allowed=True,
        remaining=guard.remaining(identifier),
        reset_in_seconds=round(guard.time_until_reset(identifier), 3),
    )


@app.get("/challenge/status", response_model=ChallengeAttemptResponse)
async def challenge_status(
    request: Request,
    identifier: str = Depends(client_identifier),
) -> ChallengeAttemptResponse:
    """Report the caller's remaining attempts without consuming one."""
    guard: ThrottleGuard = request.app.state.challenge_guard
    remaining = guard.remaining(identifier)
    return ChallengeAttemptResponse(
        allowed=remaining > 0,
        remaining=remaining,
        reset_in_seconds=round(guard.time_until_reset(identifier), 3),
    )


# =============================================================================
# Webhook Routes
# =============================================================================

def _parse_webhook_body(raw_body: bytes, content_type: str) -> Optional[Dict[str, Any]]:
    """Decode a form-encoded or JSON callback body. Returns None if it cannot be decoded."""
    text = raw_body.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            body = json.loads(text) if text else {}
        except json.JSONDecodeError:
            return None
        return body if isinstance(body, dict) else None
    return {key: values[0] for key, values in parse_qs(text, keep_blank_values=True).items()}


@app.post(
    "/webhooks/twilio/sms",
    response_model=WebhookAck,
    responses={
        400: {"model": WebhookAck, "description": "Invalid webhook payload"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def twilio_sms_status(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    store: MessageLogStore = Depends(get_store),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Ingest a Twilio message status callback.

    - Accepts form-encoded (Twilio default) or JSON bodies
    - Verifies X-Twilio-Signature when TWILIO_VALIDATE_SIGNATURE is set
    - Malformed payloads get 400 so Twilio stops retrying them
    - Unknown message ids and repeated callbacks get 200
    """
    raw_body = await request.body()
    payload = _parse_webhook_body(raw_body, request.headers.get("content-type", ""))

    if settings.TWILIO_VALIDATE_SIGNATURE:
        params = {k: str(v) for k, v in (payload or {}).items()}
        if not x_twilio_signature or not verify_twilio_signature(
            str(request.url), params, x_twilio_signature, settings.TWILIO_AUTH_TOKEN
        ):
            logger.error("Invalid Twilio signature")
            event_id = await store.create_webhook_event("twilio", payload or {})
            await store.update_webhook_event(event_id, WebhookEventStatus.INVALID, "invalid signature")
            record_webhook_outcome("invalid_signature")
            annotate_request_log(request, outcome="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    if payload is None:
        event = MalformedEvent(reason="Unparseable webhook body", raw={"body": raw_body.decode("utf-8", errors="replace")})
    else:
        event = parse_twilio_payload(payload)

    try:
        ack = await reconciler.ingest(event, source="twilio")
    except Exception:
        annotate_request_log(request, message_sid=getattr(event, "provider_message_id", None), outcome="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook"
        )

    annotate_request_log(request, message_sid=getattr(event, "provider_message_id", None), outcome=ack.outcome)

    if not ack.success:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=ack.model_dump())
    return ack


@app.post("/webhooks/{path:path}", response_model=WebhookAck, status_code=status.HTTP_400_BAD_REQUEST)
async def unknown_webhook(
    path: str,
    request: Request,
    store: MessageLogStore = Depends(get_store),
):
    """Audit and reject callbacks from sources this service does not handle."""
    raw_body = await request.body()
    logger.warning(f"Unknown webhook received on /webhooks/{path}")

    event_id = await store.create_webhook_event(
        "unknown",
        {"path": path, "body": raw_body.decode("utf-8", errors="replace")},
    )
    await store.update_webhook_event(event_id, WebhookEventStatus.INVALID, "Unknown webhook source")
    record_webhook_outcome("unknown_source")
    annotate_request_log(request, outcome="unknown_source")

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=WebhookAck(success=False, outcome="invalid", message="Invalid webhook").model_dump(),
    )


# =============================================================================
# SMS Log Routes
# =============================================================================

@app.get("/sms/logs", response_model=SmsLogsListResponse)
async def list_sms_logs(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of logs to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of logs to skip")] = 0,
    state: Annotated[MessageState | None, Query(description="Filter by lifecycle state")] = None,
    store: MessageLogStore = Depends(get_store),
) -> SmsLogsListResponse:
    """
    List message logs, newest first.

    Query Parameters:
        - limit: Maximum logs per page (default 50, min 1, max 100)
        - offset: Number of logs to skip (default 0)
        - state: PENDING, SENT, DELIVERED or FAILED
    """
    records, total = await store.list_records(limit=limit, offset=offset, state=state)
    logger.info(f"GET /sms/logs: returned {len(records)} of {total} logs (limit={limit}, offset={offset})")
    return SmsLogsListResponse(data=records, total=total, limit=limit, offset=offset)


@app.get("/sms/stats", response_model=SmsStats)
async def sms_stats(store: MessageLogStore = Depends(get_store)) -> SmsStats:
    """Message counts per lifecycle state and the overall success rate."""
    return await store.stats()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    content, content_type = render_metrics()
    return Response(content=content, media_type=content_type)
