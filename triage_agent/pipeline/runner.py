"""
runner.py — Builds and runs the triage pipelines.

Pipeline shapes:

    full triage : process_images → query_llm → ticket_search → rate_matching
    analysis    : process_images → query_llm
    search      : ticket_search → rate_matching

A fresh node graph is built for every run and thrown away afterwards.
"""

import logging
from typing import Any, Iterable

from pydantic import BaseModel, Field

from triage_agent.errors import TriageError
from triage_agent.llm.inference import InferenceClient, InferenceRequest, get_inference_client
from triage_agent.llm.parsing import (
    ProductAnalysis,
    RatedTicket,
    parse_analysis,
    parse_ratings,
    strip_code_fences,
)
from triage_agent.llm.prompts import PRODUCT_ANALYSIS_PROMPT, REFINE_QUERY_PROMPT
from triage_agent.pipeline.engine import ExecutionContext, NodeRef, TaskPipeline
from triage_agent.pipeline.nodes import (
    Announce,
    Fetcher,
    ImageIngestionNode,
    ModelQueryNode,
    RelevanceRatingNode,
    SearchOutcome,
    TicketSearchNode,
)
from triage_agent.tools.catalog import RemoteTool
from triage_agent.tools.remote_client import RemoteToolClient, get_remote_client

logger = logging.getLogger(__name__)

PROCESS_IMAGES = "process_images"
QUERY_LLM = "query_llm"
TICKET_SEARCH = "ticket_search"
RATE_MATCHING = "rate_matching"


class SearchReport(BaseModel):
    query: str
    outcome: SearchOutcome
    matches: list[RatedTicket] = Field(default_factory=list)

    @property
    def has_matches(self) -> bool:
        return bool(self.matches)

    def to_response(self) -> dict[str, Any]:
        """Entry-point envelope: `{tool, parameters, error?, matches}`."""
        return {
            **self.outcome.to_response(),
            "matches": [m.model_dump() for m in self.matches],
        }


def failure_response(exc: Exception) -> dict[str, Any]:
    """Envelope for a run that raised: plain-language error, nothing found."""
    if isinstance(exc, TriageError):
        logger.error("Triage run failed (%s): %s", exc.kind.value, exc)
        error = exc.user_message()
    else:
        logger.error("Error in LLM processing pipeline: %s", exc, exc_info=True)
        error = f"LLM processing failed: {exc}"
    return {"tool": None, "parameters": None, "error": error, "matches": []}


def _search_report(query: str, results: dict[str, Any], search: NodeRef, rating: NodeRef) -> SearchReport:
    outcome: SearchOutcome = results[search.node_id]
    matches = parse_ratings(results[rating.node_id]) if outcome.ok else []
    logger.info("Search %r — ok=%s, matches=%d", query[:80], outcome.ok, len(matches))
    return SearchReport(query=query, outcome=outcome, matches=matches)


def _add_analysis_nodes(
    pipeline: TaskPipeline,
    text: str,
    files: Iterable[str],
    announce: Announce,
    inference: InferenceClient,
    fetcher: Fetcher | None,
) -> NodeRef[str]:
    images = pipeline.add_node(ImageIngestionNode(PROCESS_IMAGES, files, fetcher=fetcher))
    return pipeline.add_node(
        ModelQueryNode(QUERY_LLM, PRODUCT_ANALYSIS_PROMPT, text, inference, announce, images=images)
    )


async def run_triage(
    text: str,
    available_tools: Iterable[RemoteTool],
    files: Iterable[str],
    announce: Announce,
    *,
    client: RemoteToolClient | None = None,
    inference: InferenceClient | None = None,
    fetcher: Fetcher | None = None,
) -> SearchReport:
    """Full analysis-then-search cycle. Node failures propagate."""
    client = client or get_remote_client()
    inference = inference or get_inference_client()
    files = list(files)

    pipeline = TaskPipeline("triage")
    query = _add_analysis_nodes(pipeline, text, files, announce, inference, fetcher)
    search = pipeline.add_node(TicketSearchNode(TICKET_SEARCH, text, client, dependencies=[query]))
    rating = pipeline.add_node(
        RelevanceRatingNode(RATE_MATCHING, search, text, inference, announce, analysis=query)
    )

    context = ExecutionContext(
        inputs={"text": text, "files": files},
        available_tools=tuple(available_tools),
    )
    results = await pipeline.execute(context)
    return _search_report(text, results, search, rating)


async def process_message(
    text: str,
    available_tools: Iterable[RemoteTool],
    files: Iterable[str],
    announce: Announce,
    **collaborators: Any,
) -> dict[str, Any]:
    """
    Pipeline entry point: `{tool, parameters, error?, matches}`. Never raises.
    """
    logger.info("Processing message with LLM pipeline: %r", text[:120])
    try:
        report = await run_triage(text, available_tools, files, announce, **collaborators)
    except Exception as exc:
        return failure_response(exc)
    return report.to_response()


async def run_analysis(
    text: str,
    files: Iterable[str],
    announce: Announce,
    *,
    inference: InferenceClient | None = None,
    fetcher: Fetcher | None = None,
) -> tuple[ProductAnalysis, str]:
    """Image ingestion + product analysis. Returns the parsed and raw answer."""
    files = list(files)
    pipeline = TaskPipeline("analysis")
    query = _add_analysis_nodes(
        pipeline, text, files, announce, inference or get_inference_client(), fetcher
    )
    results = await pipeline.execute(ExecutionContext(inputs={"text": text, "files": files}))
    raw = results[query.node_id]
    return parse_analysis(raw), raw


async def run_search(
    query: str,
    available_tools: Iterable[RemoteTool],
    user_message: str,
    announce: Announce,
    *,
    image_description: str | None = None,
    client: RemoteToolClient | None = None,
    inference: InferenceClient | None = None,
) -> SearchReport:
    """Ticket search + relevance rating, seeded directly with a query."""
    pipeline = TaskPipeline("search")
    search = pipeline.add_node(TicketSearchNode(TICKET_SEARCH, query, client or get_remote_client()))
    rating = pipeline.add_node(
        RelevanceRatingNode(
            RATE_MATCHING,
            search,
            user_message,
            inference or get_inference_client(),
            announce,
            image_description=image_description,
        )
    )

    context = ExecutionContext(inputs={"query": query}, available_tools=tuple(available_tools))
    results = await pipeline.execute(context)
    return _search_report(query, results, search, rating)


async def refine_query(
    original_query: str,
    new_text: str,
    analysis: ProductAnalysis | None = None,
    *,
    inference: InferenceClient | None = None,
) -> str:
    """Ask the model for a better query combining the old query and new input."""
    prompt = REFINE_QUERY_PROMPT.format(
        original_query=original_query,
        new_text=new_text,
        analysis=analysis.summary() if analysis else "None",
    )
    raw = await (inference or get_inference_client()).complete(InferenceRequest.from_text(prompt))
    refined = strip_code_fences(raw).strip().strip('"').strip()
    if not refined:
        logger.warning("Empty refined query — falling back to concatenation")
        refined = f"{original_query} {new_text}".strip()
    logger.info("Refined query: %r → %r", original_query[:80], refined[:80])
    return refined
