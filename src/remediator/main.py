"""FastAPI application entry point for the review remediation service.

Receives GitHub webhooks, records accepted reviews in the durable queue and
hands them to the single review worker. All long-lived collaborators live
on a ServiceContext attached to the app, so independent app instances
(e.g. in tests) never share state.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.remediator import __version__
from src.remediator.config import RemediatorSettings, get_settings
from src.remediator.github.app_auth import GitHubAppAuth, load_private_key
from src.remediator.github.client import GitHubAPIError, GitHubClient
from src.remediator.github.completion import CompletionTracker
from src.remediator.metrics import RemediatorMetrics
from src.remediator.provisioner.worktree import WorktreeManager
from src.remediator.queue.models import EventType
from src.remediator.queue.store import EventStoreError, SQLiteEventStore
from src.remediator.runner.agent import AgentRunner
from src.remediator.webhook.allowlist import IPAllowList, client_ip
from src.remediator.webhook.handler import InvalidPayloadError, WebhookHandler
from src.remediator.webhook.models import WebhookEventType
from src.remediator.webhook.rate_limit import RateLimiter
from src.remediator.webhook.signature import SIGNATURE_HEADER, SignatureVerifier
from src.remediator.worker import ReviewWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "review-remediator"
EVENT_HEADER = "x-github-event"
SUPPORTED_PROVIDERS = ("github",)
SECONDS_PER_DAY = 86400


@dataclass
class ServiceContext:
    """Everything a running service instance owns.

    Attributes:
        settings: Validated configuration.
        store: Durable event queue.
        rate_limiter: Per-client admission control for the webhook route.
        verifier: Webhook signature verifier.
        handler: Payload parsing and review admission rules.
        github_client: GitHub API client shared by worker and handler.
        worker: Single review worker.
        metrics: Prometheus metrics on this instance's own registry.
        allow_list: Source address check, when enabled.
        app_auth: GitHub App authentication, when configured.
    """

    settings: RemediatorSettings
    store: SQLiteEventStore
    rate_limiter: RateLimiter
    verifier: SignatureVerifier
    handler: WebhookHandler
    github_client: GitHubClient
    worker: ReviewWorker
    metrics: RemediatorMetrics
    allow_list: Optional[IPAllowList] = None
    app_auth: Optional[GitHubAppAuth] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: RemediatorSettings) -> None:
    logger.info("Remediator configuration:")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")
    logger.info(f"  Webhook Secret: {_redact_secret(settings.webhook_secret)}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  GitHub App ID: {settings.github_app_id or '<unset>'}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  Auto Reply: {settings.auto_reply}")
    logger.info(f"  Validate IP: {settings.validate_ip}")
    logger.info(f"  Debug: {settings.debug}")
    logger.info(f"  Agent CLI Path: {settings.agent_cli_path}")
    logger.info(f"  Agent Max Turns: {settings.agent_max_turns}")
    logger.info(f"  Agent Timeout Seconds: {settings.agent_timeout_seconds}")
    logger.info(f"  Queue DB Path: {settings.queue_db_path}")
    logger.info(f"  Max Retries: {settings.max_retries}")
    logger.info(
        f"  Rate Limit: {settings.rate_limit_max_requests} requests"
        f" per {settings.rate_limit_window_seconds}s"
    )
    logger.info(f"  Repository Path: {settings.repository_path}")
    logger.info(f"  Worktree Path: {settings.worktree_path or '<default>'}")
    logger.info(f"  Require Bot Mention: {settings.require_bot_mention}")


def build_context(settings: RemediatorSettings) -> ServiceContext:
    """Wire all service dependencies from settings.

    Args:
        settings: Validated service settings.

    Returns:
        A ServiceContext ready to be passed to create_app.
    """
    metrics = RemediatorMetrics(registry=CollectorRegistry())
    store = SQLiteEventStore(settings.queue_db_path, max_retries=settings.max_retries)

    app_auth = None
    if settings.uses_github_app:
        app_auth = GitHubAppAuth(
            app_id=settings.github_app_id,
            private_key=load_private_key(
                settings.github_app_private_key, settings.github_app_private_key_path
            ),
            base_url=settings.github_base_url,
        )

    github_client = GitHubClient(
        token=None if app_auth else settings.github_token,
        base_url=settings.github_base_url,
        app_auth=app_auth,
    )
    worker = ReviewWorker(
        store=store,
        github_client=github_client,
        completion_tracker=CompletionTracker(
            github_client, reaction=settings.completion_reaction
        ),
        worktree_manager=WorktreeManager(
            repository_path=settings.repository_path,
            worktree_path=settings.worktree_path,
        ),
        agent_runner=AgentRunner(
            agent_path=settings.agent_cli_path,
            max_turns=settings.agent_max_turns,
            timeout_seconds=settings.agent_timeout_seconds,
        ),
        metrics=metrics,
        auto_reply=settings.auto_reply,
        git_author_name=settings.git_author_name,
        git_author_email=settings.git_author_email,
        retry_delay_seconds=settings.retry_delay_seconds,
    )

    return ServiceContext(
        settings=settings,
        store=store,
        rate_limiter=RateLimiter(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        ),
        verifier=SignatureVerifier(settings.webhook_secret),
        handler=WebhookHandler(
            bot_username=settings.bot_username,
            require_bot_mention=settings.require_bot_mention,
        ),
        github_client=github_client,
        worker=worker,
        metrics=metrics,
        allow_list=IPAllowList() if settings.validate_ip else None,
        app_auth=app_auth,
    )


async def resolve_app_identity(context: ServiceContext) -> None:
    """Fill in the bot name and commit identity from the GitHub App.

    Explicit settings win. Raises RuntimeError when mentions are required
    and no bot name could be determined.
    """
    app_auth = context.app_auth
    if app_auth is not None:
        try:
            if not context.handler.bot_username:
                context.handler.bot_username = await app_auth.get_bot_username()
            if not context.worker.git_author_name:
                author = await app_auth.get_git_author()
                context.worker.git_author_name = author.name
                context.worker.git_author_email = (
                    context.worker.git_author_email or author.email
                )
        except GitHubAPIError:
            logger.warning("Could not resolve GitHub App identity", exc_info=True)
        else:
            logger.info(
                "Resolved GitHub App identity",
                extra={
                    "bot_username": context.handler.bot_username,
                    "git_author": context.worker.git_author_name,
                },
            )

    if context.handler.require_bot_mention and not context.handler.bot_username:
        raise RuntimeError("Bot mentions are required but the bot username is unknown")


async def _maintenance_loop(context: ServiceContext) -> None:
    """Periodically drop stale rate-limit windows and old terminal events."""
    interval = context.settings.rate_limit_window_seconds
    retention = context.settings.event_retention_days * SECONDS_PER_DAY
    while True:
        await asyncio.sleep(interval)
        context.rate_limiter.cleanup()
        try:
            await context.store.cleanup(retention)
        except EventStoreError:
            logger.exception("Event cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the queue, recover interrupted work and run the worker.

    Recovered events are queued before the app starts serving, so they are
    processed ahead of anything that arrives over HTTP.
    """
    context: ServiceContext = app.state.context

    logger.info("Review remediator starting up...")
    if context.settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    _log_configuration(context.settings)

    await resolve_app_identity(context)
    await context.store.open()
    await context.worker.recover()
    context.worker.start()
    maintenance = asyncio.create_task(_maintenance_loop(context), name="maintenance")

    logger.info("Review remediator started successfully")

    try:
        yield
    finally:
        logger.info("Review remediator shutting down...")
        maintenance.cancel()
        try:
            await maintenance
        except asyncio.CancelledError:
            pass
        await context.worker.stop()
        await context.github_client.close()
        if context.app_auth is not None:
            await context.app_auth.close()
        await context.store.close()
        logger.info("Review remediator shutdown complete")


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def _reply(status_code: int, success: bool, message: str, **fields: Any) -> JSONResponse:
    body: Dict[str, Any] = {"success": success, "message": message}
    body.update(fields)
    return JSONResponse(status_code=status_code, content=body)


router = APIRouter()


@router.get("/")
async def root():
    """Service descriptor."""
    return {
        "service": SERVICE_NAME,
        "version": __version__,
        "endpoints": {
            "webhook": "POST /webhooks/github",
            "health": "GET /health",
            "metrics": "GET /metrics",
        },
    }


@router.get("/health")
async def health(context: ServiceContext = Depends(get_context)):
    """Liveness plus queue backlog and failure counts.

    Returns 503 when the queue cannot be read.
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        stats = await context.store.get_stats()
    except EventStoreError as e:
        logger.error("Health check could not read queue", extra={"error": str(e)})
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "timestamp": timestamp,
                "version": __version__,
                "message": "Event queue unavailable",
            },
        )

    return {
        "status": "ok",
        "timestamp": timestamp,
        "version": __version__,
        "queue": stats.model_dump(),
    }


@router.get("/metrics")
async def metrics(context: ServiceContext = Depends(get_context)):
    """Prometheus metrics endpoint."""
    try:
        context.metrics.update_queue(await context.store.get_stats())
    except EventStoreError:
        logger.warning("Could not refresh queue metrics", exc_info=True)
    return Response(content=context.metrics.generate(), media_type=CONTENT_TYPE_LATEST)


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    context: ServiceContext = Depends(get_context),
):
    """Webhook receiver.

    Checks run in order: rate limit, source address, signature, event
    type, JSON body. Accepted reviews are durably queued before the
    response is sent.
    """
    if provider not in SUPPORTED_PROVIDERS:
        return _reply(404, False, f"Unknown webhook provider '{provider}'")

    event_header = request.headers.get(EVENT_HEADER, "")
    ip = client_ip(request.headers, request.client.host if request.client else None)

    if not context.rate_limiter.is_allowed(ip):
        context.metrics.record_webhook(event_header, "rate_limited")
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": "Too many requests"},
            headers={"Retry-After": str(context.rate_limiter.retry_after(ip))},
        )

    if context.allow_list is not None and not context.allow_list.is_allowed(ip):
        logger.warning("Rejected webhook from disallowed address", extra={"client": ip})
        context.metrics.record_webhook(event_header, "forbidden")
        return _reply(403, False, "Request source not allowed")

    body = await request.body()
    verification = context.verifier.verify(body, request.headers.get(SIGNATURE_HEADER))
    if not verification.valid:
        logger.warning(
            "Rejected webhook with invalid signature",
            extra={"client": ip, "reason": verification.error.value if verification.error else None},
        )
        context.metrics.record_webhook(event_header, "unauthorized")
        return _reply(401, False, verification.message)

    event_type = context.handler.parse_event_type(event_header)
    if event_type is None:
        context.metrics.record_webhook(event_header, "unsupported")
        return _reply(400, False, f"Unsupported event type: {event_header or '<missing>'}")

    try:
        payload = json.loads(body)
    except ValueError:
        context.metrics.record_webhook(event_type.value, "invalid")
        return _reply(400, False, "Invalid JSON payload")
    if not isinstance(payload, dict):
        context.metrics.record_webhook(event_type.value, "invalid")
        return _reply(400, False, "Invalid JSON payload")

    if event_type == WebhookEventType.PING:
        try:
            ping = context.handler.parse_ping_event(payload)
        except InvalidPayloadError as e:
            context.metrics.record_webhook(event_type.value, "invalid")
            return _reply(400, False, str(e))
        context.metrics.record_webhook(event_type.value, "ignored")
        return _reply(200, True, f"Webhook configured successfully. {ping.zen}".strip())

    if event_type == WebhookEventType.PULL_REQUEST_REVIEW_COMMENT:
        context.metrics.record_webhook(event_type.value, "ignored")
        return _reply(200, True, "Review comment events are handled with their review")

    return await _admit_review(context, body, payload)


async def _admit_review(
    context: ServiceContext,
    body: bytes,
    payload: Dict[str, Any],
) -> JSONResponse:
    event_name = WebhookEventType.PULL_REQUEST_REVIEW.value
    handler = context.handler

    try:
        event = handler.parse_review_event(payload)
    except InvalidPayloadError as e:
        context.metrics.record_webhook(event_name, "invalid")
        return _reply(400, False, str(e))

    decision = handler.evaluate_review(event)
    if decision.process and handler.require_bot_mention and not handler.review_mentions_bot(event):
        try:
            comments = await context.github_client.list_review_comments(
                event.repository.owner, event.repository.name, event.pr_number
            )
        except GitHubAPIError:
            logger.exception(
                "Could not load review comments for mention check",
                extra={"subject": event.subject_id},
            )
            context.metrics.record_webhook(event_name, "error")
            return _reply(502, False, "Could not load review comments")
        decision = handler.evaluate_mention(event, [c.get("body") or "" for c in comments])

    if not decision.process:
        logger.info(
            "Review does not require processing",
            extra={"subject": event.subject_id, "reason": decision.reason},
        )
        context.metrics.record_webhook(event_name, "ignored")
        return _reply(200, True, "Review does not require processing", reason=decision.reason)

    try:
        event_id = await context.store.enqueue(EventType.REVIEW_SUBMITTED, body)
    except EventStoreError:
        logger.exception("Failed to record webhook event", extra={"subject": event.subject_id})
        context.metrics.record_webhook(event_name, "error")
        return _reply(500, False, "Failed to record webhook event")

    context.worker.submit(event_id)
    context.metrics.record_webhook(event_name, "accepted")
    logger.info(
        "Review queued for remediation",
        extra={"event_id": event_id, "subject": event.subject_id},
    )
    return _reply(
        200,
        True,
        "Review processing started",
        eventId=event_id,
        prNumber=event.pr_number,
        repository=event.repository.full_name,
    )


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    """Build the FastAPI application around a service context.

    Args:
        context: Pre-built context. When omitted, settings are read from the
            environment and the real dependencies are wired.
    """
    if context is None:
        context = build_context(get_settings())

    app = FastAPI(
        title="Review Remediator",
        description="Turns change-requesting pull request reviews into pushed fixes",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context
    app.include_router(router)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    return app


def run() -> None:
    """Start the service with uvicorn using environment configuration."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(build_context(settings)), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
