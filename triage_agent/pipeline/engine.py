"""
engine.py — Dependency-ordered task pipeline.

A TaskPipeline holds Nodes. Each node declares the ids of the nodes it
depends on; `execute()` resolves a depth-first order over the registered
nodes (registration order breaks ties) and awaits the nodes one at a time,
recording each result in the shared ExecutionContext under the node's id.

Nodes run strictly sequentially even when independent, so any messages
they announce reach the user in one deterministic order.

Each node only sees its declared dependencies: `add_node()` returns a typed
NodeRef, dependents take those refs in their constructors and read them back
through the scoped NodeContext the engine hands to `execute()`.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Iterable, Mapping, TypeVar, Union

from triage_agent.errors import CyclicDependencyError, DependencyError
from triage_agent.tools.catalog import RemoteTool

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NodeKind(str, Enum):
    IMAGE_INGESTION = "image_ingestion"
    MODEL_QUERY = "model_query"
    TICKET_SEARCH = "ticket_search"
    RELEVANCE_RATING = "relevance_rating"


@dataclass(frozen=True)
class NodeRef(Generic[T]):
    """Handle to a registered node; reading it yields that node's result."""

    node_id: str


Dependency = Union[NodeRef, str]


def _dependency_id(dep: Dependency) -> str:
    return dep.node_id if isinstance(dep, NodeRef) else str(dep)


@dataclass
class ExecutionContext:
    """
    Mutable record shared by all nodes of one pipeline run.

    Fields:
        inputs:          Seed values (raw text, file locators, ...).
        results:         node id → completed output, in completion order.
        available_tools: Tool catalog snapshot valid for the run.
    """
    inputs: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    available_tools: tuple[RemoteTool, ...] = ()

    def __post_init__(self) -> None:
        self.available_tools = tuple(self.available_tools)

    def record(self, node_id: str, value: Any) -> None:
        """Append a node result. Results are never overwritten."""
        if node_id in self.results:
            raise DependencyError(
                f'Result for node "{node_id}" has already been recorded', node_id=node_id
            )
        self.results[node_id] = value


class NodeContext:
    """The view of an ExecutionContext a single node is allowed to see."""

    def __init__(self, context: ExecutionContext, node: "Node") -> None:
        self._context = context
        self._node_id = node.node_id
        self._allowed = frozenset(node.dependencies)

    @property
    def inputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._context.inputs)

    @property
    def available_tools(self) -> tuple[RemoteTool, ...]:
        return self._context.available_tools

    def result_of(self, ref: NodeRef[T]) -> T:
        """Return the result of a declared dependency."""
        if ref.node_id not in self._allowed:
            raise DependencyError(
                f'Node "{self._node_id}" read "{ref.node_id}" without declaring it as a dependency',
                node_id=ref.node_id,
            )
        return self._context.results[ref.node_id]


class Node(ABC, Generic[T]):
    """One unit of work in a pipeline."""

    kind: NodeKind

    def __init__(self, node_id: str, dependencies: Iterable[Dependency] = ()) -> None:
        self.node_id = node_id
        # dict.fromkeys keeps declaration order while dropping duplicates
        self.dependencies: tuple[str, ...] = tuple(
            dict.fromkeys(_dependency_id(d) for d in dependencies)
        )

    @abstractmethod
    async def execute(self, context: NodeContext) -> T:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.node_id!r}, deps={list(self.dependencies)})"


class TaskPipeline:
    """Runs a set of nodes once, in dependency order."""

    def __init__(self, name: str = "pipeline") -> None:
        self.name = name
        self._nodes: dict[str, Node] = {}

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def add_node(self, node: Node[T]) -> NodeRef[T]:
        """
        Register a node and return a typed handle to its future result.

        Raises:
            DependencyError: On a duplicate id or a node depending on itself.
        """
        if node.node_id in self._nodes:
            raise DependencyError(f'Node "{node.node_id}" is already registered', node_id=node.node_id)
        if node.node_id in node.dependencies:
            raise DependencyError(f'Node "{node.node_id}" depends on itself', node_id=node.node_id)
        self._nodes[node.node_id] = node
        return NodeRef(node.node_id)

    def resolve_order(self) -> list[str]:
        """
        Depth-first execution order: every dependency precedes its dependents.

        Raises:
            DependencyError:       A declared dependency is not registered.
            CyclicDependencyError: The graph contains a cycle.
        """
        visited: set[str] = set()
        path: list[str] = []
        on_path: set[str] = set()
        order: list[str] = []

        def visit(node_id: str) -> None:
            if node_id in visited:
                return
            if node_id in on_path:
                raise CyclicDependencyError(path[path.index(node_id):] + [node_id])

            path.append(node_id)
            on_path.add(node_id)
            for dep_id in self._nodes[node_id].dependencies:
                if dep_id not in self._nodes:
                    raise DependencyError(
                        f'Dependency "{dep_id}" not found for node "{node_id}"', node_id=dep_id
                    )
                visit(dep_id)
            path.pop()
            on_path.discard(node_id)

            visited.add(node_id)
            order.append(node_id)

        for node_id in self._nodes:
            visit(node_id)
        return order

    async def execute(self, context: ExecutionContext | None = None) -> dict[str, Any]:
        """
        Run every node once, sequentially, in resolved order.

        The first node failure aborts the run and is re-raised unchanged;
        results of nodes that already finished stay in `context.results`.

        Returns:
            The context's results mapping (node id → result).
        """
        if context is None:
            context = ExecutionContext()

        order = self.resolve_order()
        logger.info("TaskPipeline[%s]: executing %d node(s) — order=%s", self.name, len(order), order)
        t_total = time.perf_counter()

        for node_id in order:
            node = self._nodes[node_id]
            t0 = time.perf_counter()
            try:
                result = await node.execute(NodeContext(context, node))
            except Exception as exc:
                logger.error(
                    "TaskPipeline[%s]: node '%s' (%s) failed after %.3fs: %s",
                    self.name, node_id, node.kind.value, time.perf_counter() - t0, exc,
                )
                raise
            context.record(node_id, result)
            logger.info(
                "TaskPipeline[%s]: node '%s' done in %.3fs",
                self.name, node_id, time.perf_counter() - t0,
            )

        logger.info(
            "TaskPipeline[%s]: complete in %.3fs", self.name, time.perf_counter() - t_total
        )
        return context.results
