"""FastAPI application exposing the conversation gate in front of a completion provider."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import GateSettings, load_config, settings_from_config
from .errors import GateError, MisconfiguredService, SpendCapReached
from .gate import ChatRequest, compact_history, evaluate_quota, parse_body
from .leads import LeadForwarder, create_forwarder
from .llm import CompletionProvider, build_request, create_from_settings, shape_reply
from .spend import SpendCounter, create_counter, estimate_cost

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHAT_PATH = "/api/chat"
ALLOWED_METHODS = "GET, POST, OPTIONS"
DISCONNECT_POLL_SECONDS = 0.25

_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Apply ``basicConfig`` once; later calls are no-ops."""
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Request lines from the outbound client are noise at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _logging_configured = True


class ClientDisconnected(Exception):
    """The caller went away before the provider answered."""


async def _unless_disconnected(
    request: Request,
    work: Awaitable[T],
    poll: float = DISCONNECT_POLL_SECONDS,
) -> T:
    """Await ``work`` but cancel it as soon as the caller disconnects."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def _error_response(exc: GateError) -> JSONResponse:
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    settings: Optional[GateSettings] = None,
    provider: Optional[CompletionProvider] = None,
    spend: Optional[SpendCounter] = None,
    leads: Optional[LeadForwarder] = None,
) -> FastAPI:
    if settings is None:
        settings = settings_from_config(load_config(config_path))
    configure_logging(settings.log_level)

    # Services
    provider = provider or create_from_settings(settings)
    spend = spend if spend is not None else create_counter(settings.spend_store, settings.spend_path)
    leads = leads if leads is not None else create_forwarder(settings)

    app = FastAPI(title="Concierge Gate", version=__version__)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Browsers refuse credentials together with a wildcard origin.
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["content-type"],
    )

    @app.exception_handler(GateError)
    async def gate_error(request: Request, exc: GateError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/")
    @app.get(CHAT_PATH)
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "service": settings.service,
            "version": __version__,
            "model": settings.model,
        }

    @app.options(CHAT_PATH)
    def preflight() -> Dict[str, Any]:
        return {"ok": True}

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> Response:
        # Any verb the router does not know.
        if exc.status_code == 405:
            return JSONResponse(
                {"error": "Method not allowed. Use POST."},
                status_code=405,
                headers={"Allow": ALLOWED_METHODS},
            )
        return await http_exception_handler(request, exc)

    async def converse(request: Request, req: ChatRequest) -> Any:
        # Quota always sees the caller's full transcript.
        decision = evaluate_quota(req.messages, req.metadata, settings.free_turns)
        if decision.paywall:
            logger.info("paywall: %s user turns (limit %d)", decision.user_turns, settings.free_turns)
            return {"paywall": True, "message": settings.paywall_message}

        if settings.daily_hard_cap > 0:
            # The counter is advisory: an unreadable store fails open.
            try:
                spent = await run_in_threadpool(spend.total)
            except Exception as exc:
                logger.warning("spend store unreadable, cap not enforced: %s", exc)
                spent = 0.0
            if spent >= settings.daily_hard_cap:
                logger.warning("daily cap reached: %.4f >= %.4f", spent, settings.daily_hard_cap)
                raise SpendCapReached("Daily usage cap reached. Try again tomorrow.", spent, settings.daily_hard_cap)

        history = req.messages
        if settings.history_turns > 0:
            history = compact_history(req.messages, settings.history_turns)

        payload = build_request(
            settings.system_prompt,
            history,
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
        completion = await _unless_disconnected(request, provider.complete(payload))

        try:
            cost = estimate_cost(completion.usage, settings.input_per_1k, settings.output_per_1k)
            if cost > 0:
                await run_in_threadpool(spend.add, cost)
        except Exception as exc:
            logger.warning("failed to record spend: %s", exc)
        return shape_reply(completion)

    @app.post(CHAT_PATH)
    async def chat(request: Request, background: BackgroundTasks) -> Any:
        if not settings.api_key:
            raise MisconfiguredService(
                "Missing OPENAI_API_KEY.",
                detail={"hint": "Set OPENAI_API_KEY or provider.api_key in the config file."},
            )
        req = parse_body(await request.body())

        # Scheduled before anything can fail so leads survive paywall and provider errors.
        lead = req.metadata.lead
        if isinstance(lead, dict):
            if lead and leads:
                background.add_task(leads.forward, lead)
        elif lead is not None:
            logger.info("ignoring non-object lead of type %s", type(lead).__name__)

        try:
            return await converse(request, req)
        except ClientDisconnected:
            logger.info("caller disconnected; provider call abandoned")
            return Response(status_code=499)
        except GateError as exc:
            if exc.status_code >= 500:
                logger.warning("chat failed: %s (%s)", exc.code, exc.message)
            return _error_response(exc)
        except Exception as exc:
            logger.exception("unexpected error while handling chat")
            return JSONResponse(
                {"error": "server_error", "message": str(exc) or "Unexpected error"},
                status_code=500,
            )

    return app
