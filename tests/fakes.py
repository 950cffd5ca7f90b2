"""Test doubles for the inference API and the remote tool server."""

import json
from types import SimpleNamespace
from typing import Any, Callable

from triage_agent.llm.inference import InferenceRequest, TextPart


ANALYSIS_JSON = json.dumps(
    {
        "product": "Checkout",
        "confidence": 0.9,
        "reasoning": "Mentions the checkout button.",
        "image_description": "A greyed-out checkout button on a phone screen",
    }
)

ISSUES = [
    {
        "title": "Checkout button unresponsive on iOS",
        "url": "https://tracker.example.com/ISS-1",
        "status": "In Progress",
        "assignee": "dana",
        "metadata": {"context": {"description": {"snippet": "Tapping checkout does nothing"}}},
    },
    {
        "title": "Cart total rounding",
        "url": "https://tracker.example.com/ISS-2",
        "status": "Todo",
        "assignee": "Unassigned",
        "metadata": {"context": {"description": {"snippet": "Totals off by a cent"}}},
    },
]

RATING_JSON = json.dumps(
    [
        {"title": "Cart total rounding", "url": "https://tracker.example.com/ISS-2", "score": 8, "reason": "Same page"},
        {"title": "Checkout button unresponsive on iOS", "url": "https://tracker.example.com/ISS-1", "score": 9, "reason": "Same symptom"},
    ]
)


class FakeInference:
    """Answers each request with `responder(prompt_text)` and records the prompts."""

    def __init__(self, responder: Callable[[str], str] | None = None) -> None:
        self.requests: list[InferenceRequest] = []
        self._responder = responder or (lambda prompt: ANALYSIS_JSON)

    @property
    def prompts(self) -> list[str]:
        return [
            next(p.text for p in r.parts if isinstance(p, TextPart)) for r in self.requests
        ]

    async def complete(self, request: InferenceRequest) -> str:
        self.requests.append(request)
        return self._responder(self.prompts[-1])


def scripted_inference(refined_query: str = "checkout button mobile safari") -> FakeInference:
    """Route by prompt kind: analysis JSON, rating JSON or a refined query."""

    def respond(prompt: str) -> str:
        if "<Tickets>" in prompt:
            return RATING_JSON
        if "<Original query>" in prompt:
            return refined_query
        return ANALYSIS_JSON

    return FakeInference(respond)


def _tool(name: str) -> SimpleNamespace:
    return SimpleNamespace(name=name, description=f"{name} tool", inputSchema={"type": "object"})


class FakeToolSession:
    """Stands in for an MCP ClientSession."""

    def __init__(self, tool_names=("search_issues",), issues=None, failures=None) -> None:
        self.tool_names = list(tool_names)
        self.issues = ISSUES if issues is None else issues
        self.failures = list(failures or [])   # exceptions raised by successive call_tool calls
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> SimpleNamespace:
        return SimpleNamespace(tools=[_tool(n) for n in self.tool_names])

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> SimpleNamespace:
        self.calls.append((name, dict(arguments or {})))
        if self.failures:
            raise self.failures.pop(0)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=json.dumps(self.issues))],
            isError=False,
        )


class CountingConnector:
    """Connector returning the same fake session and counting connection attempts."""

    def __init__(self, session: FakeToolSession | None = None, errors=None) -> None:
        self.session = session or FakeToolSession()
        self.errors = list(errors or [])
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.session, None
