"""
errors.py — Structured error taxonomy for the triage pipeline.

Every failure the agent can report carries an ErrorKind, so callers decide
whether to retry (CONNECTIVITY) or to report (everything else) without
inspecting message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    TOOL_UNAVAILABLE = "tool_unavailable"
    PARSE = "parse"
    UPSTREAM = "upstream"
    DEPENDENCY = "dependency"
    CONFIGURATION = "configuration"


_EXCERPT_LENGTH = 200


class TriageError(Exception):
    """Base class for all errors raised by the triage agent."""

    kind: ErrorKind = ErrorKind.UPSTREAM

    def user_message(self) -> str:
        """Plain-language text suitable for posting back into the conversation."""
        return f"Sorry, something went wrong: {self}"


class ConnectivityError(TriageError):
    """The remote tool server is unreachable or the connection dropped."""

    kind = ErrorKind.CONNECTIVITY

    def user_message(self) -> str:
        return (
            "Sorry, I couldn't reach the issue tracker right now. "
            "Please try again in a moment."
        )


class ToolUnavailableError(TriageError):
    """A required capability is missing from the remote tool catalog."""

    kind = ErrorKind.TOOL_UNAVAILABLE

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"{tool_name} tool is unavailable")
        self.tool_name = tool_name

    def user_message(self) -> str:
        return "Sorry, issue search is currently unavailable."


class ParseError(TriageError):
    """Model output or a tool payload was not the structured data we expected."""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw or ""

    @property
    def excerpt(self) -> str:
        if len(self.raw) <= _EXCERPT_LENGTH:
            return self.raw
        return self.raw[:_EXCERPT_LENGTH] + "…"

    def user_message(self) -> str:
        return (
            f"Sorry, I couldn't understand the response ({self}). "
            f"Received:\n```\n{self.excerpt}\n```"
        )


class UpstreamError(TriageError):
    """The inference API or the remote tool reported a failure."""

    kind = ErrorKind.UPSTREAM


class DependencyError(TriageError):
    """A pipeline node graph is malformed (missing id, self-loop, duplicate)."""

    kind = ErrorKind.DEPENDENCY

    def __init__(self, message: str, node_id: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class CyclicDependencyError(DependencyError):
    """The pipeline node graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(cycle),
            node_id=cycle[0] if cycle else None,
        )
        self.cycle = cycle


class ConfigurationError(TriageError):
    """A required setting or credential is missing."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, setting: str | None = None) -> None:
        super().__init__(message)
        self.setting = setting
