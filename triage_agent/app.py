"""
app.py — FastAPI application for the Ticket Triage Agent.

Endpoints:
    GET  /health          — Health check
    POST /triage          — One-shot analysis + search for a message
    POST /events/message  — Feed a chat message to the conversation state machine
    POST /events/action   — Feed a button click to the conversation state machine

Chat adapters post events here and deliver the returned replies in order.

Run with:
    uvicorn triage_agent.app:app --port 8000
"""

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Bootstrap logging before service imports
from triage_agent.logging_config import setup_logging
setup_logging()

from triage_agent.config import check_required_settings
from triage_agent.llm.parsing import RatedTicket
from triage_agent.services.triage_service import TriageService
from triage_agent.session.machine import (
    ActionEvent,
    CollectingResponder,
    ConversationController,
    MessageEvent,
    Reply,
)

logger = logging.getLogger(__name__)

# ─── FastAPI app ───────────────────────────────────────────────────────────────
app = FastAPI(
    title="Ticket Triage Agent",
    description="Finds and triages issue-tracker tickets from chat messages and screenshots",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazy singletons
_service: TriageService | None = None
_controller: ConversationController | None = None


def _get_service() -> TriageService:
    global _service
    if _service is None:
        _service = TriageService()
    return _service


def _get_controller() -> ConversationController:
    global _controller
    if _controller is None:
        _controller = ConversationController(_get_service())
    return _controller


# ─── Request / Response Models ─────────────────────────────────────────────────

class TriageRequest(BaseModel):
    text: str
    files: list[str] = Field(default_factory=list)


class TriageResponse(BaseModel):
    tool: str | None = None
    parameters: dict | None = None
    error: str | None = None
    matches: list[RatedTicket] = Field(default_factory=list)
    announcements: list[str] = Field(default_factory=list)
    metrics: dict = Field(default_factory=dict)


class EventResponse(BaseModel):
    replies: list[Reply]


# ─── Timing Middleware ─────────────────────────────────────────────────────────

@app.middleware("http")
async def log_request_timing(request: Request, call_next):
    t0 = time.perf_counter()
    logger.info("Request: %s %s", request.method, request.url.path)
    response = await call_next(request)
    elapsed = time.perf_counter() - t0
    logger.info(
        "Response: %s %s → %d in %.3fs",
        request.method, request.url.path, response.status_code, elapsed,
    )
    response.headers["X-Process-Time"] = f"{elapsed:.3f}"
    return response


# ─── Endpoints ─────────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "service": "Ticket Triage Agent"}


@app.post("/triage", response_model=TriageResponse)
async def triage_endpoint(request: TriageRequest):
    """
    Analyse a message and search for related tickets in one go.

    Request body:
        {"text": "checkout button broken on mobile", "files": []}
    """
    if not request.text.strip() and not request.files:
        raise HTTPException(status_code=400, detail="Text or files must be provided.")

    logger.info("POST /triage — text=%r", request.text[:100])
    announcements: list[str] = []

    async def announce(message: str) -> None:
        announcements.append(message)

    response = await _get_service().find_issues(request.text, request.files, announce)
    return TriageResponse(
        tool=response.get("tool"),
        parameters=response.get("parameters"),
        error=response.get("error"),
        matches=response.get("matches", []),
        announcements=announcements,
        metrics=response.get("metrics", {}),
    )


@app.post("/events/message", response_model=EventResponse)
async def message_event(event: MessageEvent):
    responder = CollectingResponder()
    await _get_controller().handle_message(event, responder)
    return EventResponse(replies=responder.replies)


@app.post("/events/action", response_model=EventResponse)
async def action_event(event: ActionEvent):
    responder = CollectingResponder()
    await _get_controller().handle_action(event, responder)
    return EventResponse(replies=responder.replies)


# ─── Startup / Shutdown Events ────────────────────────────────────────────────

@app.on_event("startup")
async def on_startup():
    check_required_settings()
    logger.info("FastAPI startup — Ticket Triage Agent ready.")


@app.on_event("shutdown")
async def on_shutdown():
    if _service is not None:
        await _service.client.aclose()
    logger.info("FastAPI shutdown.")
