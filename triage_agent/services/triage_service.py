"""
triage_service.py — Orchestration layer between entry points and the pipelines.

Owns the retry policy for the remote tool server: the whole
"get connection → list tools → call tool" sequence is attempted up to
MAX_ATTEMPTS times, invalidating the cached connection and waiting
RETRY_BACKOFF_S between attempts, but only for connectivity failures.
Every other failure goes straight back to the caller.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from triage_agent.config import MAX_ATTEMPTS, METRICS_FILE, RETRY_BACKOFF_S
from triage_agent.errors import ConnectivityError, ErrorKind, UpstreamError
from triage_agent.llm.inference import InferenceClient, get_inference_client
from triage_agent.llm.parsing import ProductAnalysis
from triage_agent.pipeline import runner
from triage_agent.pipeline.nodes import Announce, Fetcher, SearchOutcome
from triage_agent.tools.catalog import RemoteTool
from triage_agent.tools.remote_client import RemoteToolClient, get_remote_client

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _connectivity_failure(result: Any) -> str | None:
    outcome = result.outcome if isinstance(result, runner.SearchReport) else result
    if isinstance(outcome, SearchOutcome) and outcome.error_kind is ErrorKind.CONNECTIVITY:
        return outcome.error
    return None


class TriageService:
    """Entry-point facade for analysing messages and searching the tracker."""

    def __init__(
        self,
        client: RemoteToolClient | None = None,
        inference: InferenceClient | None = None,
        fetcher: Fetcher | None = None,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_s: float = RETRY_BACKOFF_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics_file: Path | None = METRICS_FILE,
    ) -> None:
        self.client = client or get_remote_client()
        self.inference = inference or get_inference_client()
        self.fetcher = fetcher
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._sleep = sleep
        self.metrics_file = metrics_file
        logger.info("TriageService initialised — max_attempts=%d", max_attempts)

    async def _list_tools(self) -> list[RemoteTool]:
        try:
            return await self.client.list_tools()
        except UpstreamError as exc:
            # an unreadable catalog leaves the search tool unavailable for this run
            logger.error("Error listing remote tools: %s", exc)
            return []

    async def with_tools(self, operation: Callable[[list[RemoteTool]], Awaitable[T]]) -> T:
        """
        Run `operation` against a fresh tool catalog, retrying on connectivity loss.

        Raises:
            ConnectivityError: Still disconnected after the last attempt.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.info("Attempt %d: getting tool catalog...", attempt)
                tools = await self._list_tools()
                result = await operation(tools)
                failure = _connectivity_failure(result)
                if failure:
                    raise ConnectivityError(failure)
                return result
            except ConnectivityError as exc:
                if attempt >= self.max_attempts:
                    logger.error("Attempt %d failed, no retries left: %s", attempt, exc)
                    raise
                logger.warning(
                    "Attempt %d failed with connectivity error (%s) — reconnecting in %.1fs",
                    attempt, exc, self.backoff_s,
                )
                await self.client.invalidate()
                await self._sleep(self.backoff_s)

        raise ConnectivityError("Tool call failed after retries.")

    async def find_issues(self, text: str, files: Iterable[str], announce: Announce) -> dict[str, Any]:
        """
        One full analysis-then-search cycle for a message.

        Returns:
            dict with keys tool, parameters, error (None on success),
            matches (rated tickets, best first) and metrics.
        """
        logger.info("TriageService.find_issues() — text=%r", text[:120])
        t0 = time.perf_counter()
        files = list(files)

        async def _triage(tools: list[RemoteTool]) -> runner.SearchReport:
            return await runner.run_triage(
                text, tools, files, announce,
                client=self.client, inference=self.inference, fetcher=self.fetcher,
            )

        try:
            response = (await self.with_tools(_triage)).to_response()
        except Exception as exc:
            response = runner.failure_response(exc)
        response.setdefault("error", None)

        elapsed = time.perf_counter() - t0
        response["metrics"] = {"total_service_latency_s": round(elapsed, 3)}
        self._save_metrics("find_issues", text, {**response, "matches": len(response["matches"])})

        logger.info("TriageService.find_issues() complete — total=%.3fs, error=%s", elapsed, response["error"])
        return response

    async def analyze(self, text: str, files: Iterable[str], announce: Announce) -> ProductAnalysis:
        analysis, _ = await runner.run_analysis(
            text, files, announce, inference=self.inference, fetcher=self.fetcher
        )
        logger.info("Analysis: %s", analysis.summary())
        return analysis

    async def search(
        self,
        query: str,
        user_message: str,
        announce: Announce,
        image_description: str | None = None,
    ) -> runner.SearchReport:
        t0 = time.perf_counter()

        async def _search(tools: list[RemoteTool]) -> runner.SearchReport:
            return await runner.run_search(
                query, tools, user_message, announce,
                image_description=image_description,
                client=self.client, inference=self.inference,
            )

        report = await self.with_tools(_search)
        self._save_metrics(
            "search",
            query,
            {
                "error": report.outcome.error,
                "matches": len(report.matches),
                "metrics": {"total_service_latency_s": round(time.perf_counter() - t0, 3)},
            },
        )
        return report

    async def refine_query(
        self, original_query: str, new_text: str, analysis: ProductAnalysis | None = None
    ) -> str:
        return await runner.refine_query(original_query, new_text, analysis, inference=self.inference)

    def _save_metrics(self, operation: str, text: str, response: dict[str, Any]) -> None:
        """Append a metrics record to logs/metrics.jsonl."""
        if self.metrics_file is None:
            return
        record = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "operation": operation,
            "text": text[:100],
            "error": response.get("error") is not None,
            **{k: v for k, v in response.items() if k in ("matches",)},
            **response.get("metrics", {}),
        }
        try:
            with open(self.metrics_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
            logger.debug("Metrics saved to %s", self.metrics_file)
        except Exception as exc:
            logger.warning("Could not save metrics: %s", exc)
