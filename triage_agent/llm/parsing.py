"""
parsing.py — Turning model text and tool payloads into typed records.

Every parser raises ParseError carrying the raw payload when the input is
not the structure we asked for; nothing here retries.
"""

import json
import logging
import re
from typing import Any, Iterable

from pydantic import BaseModel, ValidationError

from triage_agent.config import PREVIEW_TICKET_LIMIT, RELEVANCE_THRESHOLD
from triage_agent.errors import ParseError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


class ProductAnalysis(BaseModel):
    product: str
    confidence: float = 0.0
    reasoning: str = ""
    image_description: str | None = None

    def summary(self) -> str:
        return (
            f"product={self.product}; confidence={self.confidence:.2f}; "
            f"reasoning={self.reasoning}; image={self.image_description or 'none'}"
        )


class TicketCandidate(BaseModel):
    title: str = "N/A"
    url: str = "N/A"
    status: str = "N/A"
    assignee: str | None = None
    description: str = "N/A"


class RatedTicket(BaseModel):
    title: str
    url: str | None = None
    score: float
    reason: str = ""


def strip_code_fences(text: str) -> str:
    """Remove a single surrounding ``` fence (with optional language tag)."""
    stripped = (text or "").strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def _load_json(raw: str, what: str) -> Any:
    try:
        return json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError) as exc:
        raise ParseError(f"{what} is not valid JSON: {exc}", raw=raw or "") from exc


def parse_analysis(raw: str) -> ProductAnalysis:
    """Parse the product-analysis model response."""
    data = _load_json(raw, "Analysis response")
    if not isinstance(data, dict):
        raise ParseError("Analysis response is not a JSON object", raw=raw)
    try:
        return ProductAnalysis.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"Analysis response has unexpected fields: {exc.error_count()} error(s)", raw=raw) from exc


def _candidate_from_item(item: dict[str, Any]) -> TicketCandidate:
    snippet = (
        ((item.get("metadata") or {}).get("context") or {}).get("description") or {}
    ).get("snippet")
    return TicketCandidate(
        title=item.get("title") or "N/A",
        url=item.get("url") or "N/A",
        status=item.get("status") or "N/A",
        assignee=item.get("assignee"),
        description=snippet or item.get("description") or "N/A",
    )


def parse_ticket_candidates(texts: Iterable[str]) -> list[TicketCandidate]:
    """
    Parse the search tool's text payload into ticket candidates.

    Accepts a JSON list of issues, or an object wrapping one under
    "issues" or "nodes". An empty payload means no candidates.
    """
    texts = [t for t in texts if t and t.strip()]
    if not texts:
        return []

    raw = texts[0]
    data = _load_json(raw, "Search result")
    if isinstance(data, dict):
        data = data.get("issues", data.get("nodes"))
    if not isinstance(data, list):
        raise ParseError("Search result does not contain a list of issues", raw=raw)

    candidates = [_candidate_from_item(item) for item in data if isinstance(item, dict)]
    logger.debug("Parsed %d ticket candidate(s)", len(candidates))
    return candidates


def parse_ratings(raw: str, threshold: float = RELEVANCE_THRESHOLD) -> list[RatedTicket]:
    """Parse the rating response, keep scores ≥ threshold, highest first."""
    data = _load_json(raw, "Rating response")
    if isinstance(data, dict):
        data = data.get("matches", data.get("tickets"))
    if not isinstance(data, list):
        raise ParseError("Rating response is not a JSON array", raw=raw)
    try:
        rated = [RatedTicket.model_validate(item) for item in data]
    except ValidationError as exc:
        raise ParseError(f"Rating entries are malformed: {exc.error_count()} error(s)", raw=raw) from exc

    kept = [r for r in rated if r.score >= threshold]
    kept.sort(key=lambda r: r.score, reverse=True)
    return kept


def _link(url: str | None, title: str) -> str:
    return f"<{url}|{title}>" if url and url != "N/A" else title


def format_ticket_preview(candidates: list[TicketCandidate], limit: int = PREVIEW_TICKET_LIMIT) -> str:
    """Render up to `limit` candidates as chat-friendly code blocks."""
    blocks = []
    for ticket in candidates[:limit]:
        lines = [
            f"Title: {_link(ticket.url, ticket.title)}",
            f"Description: {ticket.description}",
            f"Status: {ticket.status}",
        ]
        if ticket.assignee and ticket.assignee != "Unassigned":
            lines.append(f"Assignee: {ticket.assignee}")
        blocks.append("```\n" + "\n".join(lines) + "\n```")
    return "\n\n".join(blocks)


def format_rated_tickets(matches: list[RatedTicket]) -> str:
    return "\n".join(
        f"• *{m.score:g}/10* {_link(m.url, m.title)} — {m.reason}" for m in matches
    )
