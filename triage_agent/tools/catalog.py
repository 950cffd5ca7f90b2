"""
catalog.py — Immutable descriptors for the remote tool catalog.

A snapshot of these is taken once per pipeline run and handed to the nodes;
nothing downstream mutates it.
"""

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field


class RemoteTool(BaseModel):
    """A named, schema-described capability exposed by the issue tracker."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None


class ToolCallResult(BaseModel):
    """Normalised result of a remote tool call: its text parts and error flag."""

    model_config = ConfigDict(frozen=True)

    texts: list[str] = Field(default_factory=list)
    is_error: bool = False

    @property
    def first_text(self) -> str:
        return self.texts[0] if self.texts else ""


def find_tool(tools: Iterable[RemoteTool], name: str) -> RemoteTool | None:
    """Exact-name lookup in a catalog snapshot."""
    for tool in tools:
        if tool.name == name:
            return tool
    return None
