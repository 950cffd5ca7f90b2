"""
nodes.py — The four node kinds the triage pipeline is built from.

    ImageIngestionNode  → list[ImagePart]   (best effort, never raises per file)
    ModelQueryNode      → str               (raw model text, announced)
    TicketSearchNode    → SearchOutcome     (soft-fails into the result value)
    RelevanceRatingNode → str               (raw rating JSON from the model)

Collaborators (fetcher, inference client, tool client, announce callback)
are injected so nodes never talk to the chat transport directly.
"""

import base64
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

import httpx
from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel

from triage_agent.config import (
    FILE_AUTH_TOKEN,
    FILE_FETCH_TIMEOUT_S,
    PREVIEW_TICKET_LIMIT,
    RELEVANCE_THRESHOLD,
    SEARCH_RESULT_LIMIT,
    SEARCH_TOOL_NAME,
    TEMP_DIR,
)
from triage_agent.errors import ErrorKind, ToolUnavailableError, TriageError, UpstreamError
from triage_agent.llm.inference import ImagePart, InferenceClient, InferenceRequest
from triage_agent.llm.parsing import format_ticket_preview, parse_analysis, parse_ticket_candidates
from triage_agent.llm.prompts import RATE_TICKETS_PROMPT
from triage_agent.pipeline.engine import Dependency, Node, NodeContext, NodeKind, NodeRef
from triage_agent.tools.catalog import RemoteTool, ToolCallResult, find_tool
from triage_agent.tools.remote_client import RemoteToolClient

logger = logging.getLogger(__name__)

Announce = Callable[[str], Awaitable[None]]
Fetcher = Callable[[str], Awaitable[bytes]]

_MIME_TYPES = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def _extension(locator: str) -> str:
    return Path(httpx.URL(locator).path).suffix.lower()


def guess_mime_type(locator: str) -> str:
    """Best-effort MIME type from the file extension; JPEG when unknown."""
    return _MIME_TYPES.get(_extension(locator), "image/jpeg")


async def fetch_file(url: str) -> bytes:
    """Download a private attachment using the bot's bearer token."""
    headers = {"Authorization": f"Bearer {FILE_AUTH_TOKEN}"} if FILE_AUTH_TOKEN else {}
    async with httpx.AsyncClient(timeout=FILE_FETCH_TIMEOUT_S, follow_redirects=True) as client:
        response = await client.get(url, headers=headers)
        response.raise_for_status()
        return response.content


# ─── Image ingestion ──────────────────────────────────────────────────────────

class ImageIngestionNode(Node[list[ImagePart]]):
    kind = NodeKind.IMAGE_INGESTION

    def __init__(self, node_id: str, files: Iterable[str], fetcher: Fetcher | None = None) -> None:
        super().__init__(node_id)
        self.files = list(files)
        self._fetch = fetcher or fetch_file

    async def execute(self, context: NodeContext) -> list[ImagePart]:
        if not self.files:
            return []

        images: list[ImagePart] = []
        with tempfile.TemporaryDirectory(prefix="triage_", dir=TEMP_DIR) as tmp_dir:
            for index, url in enumerate(self.files):
                try:
                    logger.info("Downloading image from %s", url)
                    payload = await self._fetch(url)
                    path = Path(tmp_dir) / f"image_{index}{_extension(url) or '.jpg'}"
                    path.write_bytes(payload)
                    images.append(
                        ImagePart(
                            mime_type=guess_mime_type(url),
                            data=base64.b64encode(path.read_bytes()).decode("ascii"),
                        )
                    )
                except Exception as exc:
                    # one bad attachment must not block the rest of the message
                    logger.error("Error downloading image %s: %s", url, exc)

        logger.info("Processed %d of %d image(s)", len(images), len(self.files))
        return images


# ─── Model query ──────────────────────────────────────────────────────────────

class ModelQueryNode(Node[str]):
    kind = NodeKind.MODEL_QUERY

    def __init__(
        self,
        node_id: str,
        prompt: PromptTemplate,
        text: str,
        inference: InferenceClient,
        announce: Announce,
        images: NodeRef[list[ImagePart]] | None = None,
    ) -> None:
        super().__init__(node_id, [images] if images is not None else [])
        self.prompt = prompt
        self.text = text
        self._inference = inference
        self._announce = announce
        self._images = images

    async def execute(self, context: NodeContext) -> str:
        images = context.result_of(self._images) if self._images is not None else []
        logger.info("Querying LLM with prompt and %d image(s)", len(images))

        request = InferenceRequest.from_text(self.prompt.format(message=self.text), images)
        response = await self._inference.complete(request)

        await self._announce(f"```\n{response}\n```")
        return response


# ─── Ticket search ────────────────────────────────────────────────────────────

class SearchOutcome(BaseModel):
    """
    Result of a TicketSearchNode.

    On success `tool` and `parameters` are set and `raw_result` holds the
    tool payload. On failure both are None and `error`/`error_kind` say
    whether the tool was missing or the call failed.
    """
    tool: RemoteTool | None = None
    parameters: dict[str, Any] | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    raw_result: ToolCallResult | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.tool is not None

    @classmethod
    def failure(cls, error: TriageError) -> "SearchOutcome":
        return cls(error=str(error), error_kind=error.kind)

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "tool": self.tool.name if self.tool else None,
            "parameters": self.parameters,
        }
        if self.error is not None:
            response["error"] = self.error
        return response


class TicketSearchNode(Node[SearchOutcome]):
    kind = NodeKind.TICKET_SEARCH

    def __init__(
        self,
        node_id: str,
        query: str,
        client: RemoteToolClient,
        dependencies: Iterable[Dependency] = (),
        tool_name: str = SEARCH_TOOL_NAME,
        limit: int = SEARCH_RESULT_LIMIT,
    ) -> None:
        super().__init__(node_id, dependencies)
        self.query = query
        self.tool_name = tool_name
        self.limit = limit
        self._client = client

    async def execute(self, context: NodeContext) -> SearchOutcome:
        tool = find_tool(context.available_tools, self.tool_name)
        if tool is None:
            logger.error("%s tool not found in available tools!", self.tool_name)
            return SearchOutcome.failure(ToolUnavailableError(self.tool_name))

        parameters = {"query": self.query, "first": self.limit}
        logger.info("Found %s tool. Preparing call with query: %r", tool.name, self.query)
        try:
            raw = await self._client.call_tool(tool.name, parameters)
        except Exception as exc:
            error = exc if isinstance(exc, TriageError) else UpstreamError(str(exc))
            logger.error("Error calling search tool (%s): %s", error.kind.value, exc)
            outcome = SearchOutcome.failure(error)
            outcome.error = f"Failed to search issues: {error}"
            return outcome

        return SearchOutcome(tool=tool, parameters=parameters, raw_result=raw)


# ─── Relevance rating ─────────────────────────────────────────────────────────

class RelevanceRatingNode(Node[str]):
    kind = NodeKind.RELEVANCE_RATING

    def __init__(
        self,
        node_id: str,
        search: NodeRef[SearchOutcome],
        user_message: str,
        inference: InferenceClient,
        announce: Announce,
        analysis: NodeRef[str] | None = None,
        image_description: str | None = None,
        threshold: int = RELEVANCE_THRESHOLD,
        preview_limit: int = PREVIEW_TICKET_LIMIT,
    ) -> None:
        deps: list[Dependency] = [search]
        if analysis is not None:
            deps.append(analysis)
        super().__init__(node_id, deps)
        self.user_message = user_message
        self.threshold = threshold
        self.preview_limit = preview_limit
        self._search = search
        self._analysis = analysis
        self._image_description = image_description
        self._inference = inference
        self._announce = announce

    def _describe_images(self, context: NodeContext) -> str | None:
        if self._analysis is None:
            return self._image_description
        return parse_analysis(context.result_of(self._analysis)).image_description

    async def execute(self, context: NodeContext) -> str:
        outcome = context.result_of(self._search)
        if not outcome.ok or outcome.raw_result is None:
            logger.warning("Search did not succeed (%s) — nothing to rate", outcome.error)
            return "[]"

        candidates = parse_ticket_candidates(outcome.raw_result.texts)
        if not candidates:
            logger.info("No matching tickets found to rate.")
            return "[]"

        preview = format_ticket_preview(candidates, self.preview_limit)
        await self._announce(f"Found potential matches:\n{preview}")

        prompt = RATE_TICKETS_PROMPT.format(
            threshold=self.threshold,
            message=self.user_message,
            image_description=self._describe_images(context) or "None",
            tickets=json.dumps([c.model_dump() for c in candidates], indent=2),
        )
        logger.info("Querying LLM to rate %d matching ticket(s)", len(candidates))
        return await self._inference.complete(InferenceRequest.from_text(prompt))
