"""Dependency graph — tracks edges between blocks and the data flowing along them.

The graph owns two pieces of state: the cached last output of every block and
the edge table with its data-flow envelopes. Both change together under one
lock, so a reader never sees a block's output without its outgoing envelopes
refreshed.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
import time
from dataclasses import replace
from typing import Iterable

from blockflow.models import Block, BlockData, Connection, DataFlow, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

MAX_CONNECTIONS_WARNING = 20
SUMMARY_LENGTH = 50

REFERENCE_PATTERN = re.compile(r"\[([A-Za-z]+\d+)\]")
_IMAGE_FORMAT = re.compile(r"^data:image/(\w+);")


class DependencyGraph:
    """Engine-owned block output cache plus edge table."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outputs: dict[str, BlockData] = {}
        self._output_order: dict[str, int] = {}
        self._connections: dict[str, Connection] = {}
        self._seq = itertools.count()

    # --- Commands ---

    def upsert_edges(self, connections: Iterable[Connection]):
        """Replace the tracked edge set.

        Edges are stored as copies. An edge that was already tracked with the
        same instruction keeps the cached data of its envelope; `enabled`
        always comes from the incoming edge.
        """
        with self._lock:
            updated: dict[str, Connection] = {}
            for conn in connections:
                flow = replace(conn.data_flow)
                existing = self._connections.get(conn.id)
                if existing and existing.instruction == conn.instruction:
                    cached = existing.data_flow
                    flow.last_update = cached.last_update
                    flow.data_type = cached.data_type
                    flow.last_data = cached.last_data
                updated[conn.id] = replace(conn, data_flow=flow)
            dropped = set(self._connections) - set(updated)
            self._connections = updated
        if dropped:
            logger.debug(f"Dropped envelopes for {len(dropped)} removed connection(s)")

    def record_output(
        self,
        block_id: str,
        content: str,
        block_type: str = "text",
        block_number: str = "",
        block: Block | None = None,
    ) -> BlockData:
        """Cache a block's output and refresh every outgoing envelope."""
        data = BlockData(
            block_id=block_id,
            block_number=block_number,
            content=content,
            type=block_type,
            timestamp=time.time(),
        )
        if block is not None:
            data.attachment_content = block.attachment_content
            data.instruction_content = block.original_prompt
            data.generated_content = content if content and content != block.original_prompt else None

        composite = _composite_content(data)

        with self._lock:
            self._outputs[block_id] = data
            # Tiebreak for outputs recorded within one clock tick
            self._output_order[block_id] = next(self._seq)
            for conn in self._connections.values():
                if conn.from_id == block_id:
                    conn.data_flow.last_update = data.timestamp
                    conn.data_flow.data_type = block_type
                    conn.data_flow.last_data = composite
        return data

    def clear(self):
        with self._lock:
            self._outputs.clear()
            self._output_order.clear()
            self._connections.clear()

    # --- Queries ---

    def output_of(self, block_id: str) -> BlockData | None:
        with self._lock:
            return self._outputs.get(block_id)

    def connection(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        with self._lock:
            return list(self._connections.values())

    def upstream_ids(self, block_id: str) -> list[str]:
        with self._lock:
            return [
                c.from_id for c in self._connections.values()
                if c.to_id == block_id and c.data_flow.enabled
            ]

    def upstream_of(self, block_id: str) -> list[BlockData]:
        """Cached data of every block with an enabled edge into block_id, oldest first."""
        with self._lock:
            found = []
            for conn in self._connections.values():
                if conn.to_id != block_id or not conn.data_flow.enabled:
                    continue
                data = self._outputs.get(conn.from_id)
                if data is not None and data not in found:
                    found.append(data)
            return sorted(found, key=lambda d: (d.timestamp, self._output_order.get(d.block_id, 0)))

    def available_variables(self, block_id: str) -> list[str]:
        """Block numbers a prompt for block_id may reference, e.g. ["A01", "B02"]."""
        return sorted(d.block_number for d in self.upstream_of(block_id) if d.block_number)

    def upstream_summaries(self, block_id: str) -> list[str]:
        return [f"[{d.block_number}] {summarize(d)}" for d in self.upstream_of(block_id)]

    def describe_upstream(self, block_id: str) -> str:
        summaries = self.upstream_summaries(block_id)
        if not summaries:
            return "No upstream data"
        return "; ".join(summaries)

    # --- Validation ---

    def validate(self, connections: Iterable[Connection], blocks: Iterable[Block]) -> ValidationResult:
        """Check a graph for dangling edges, cycles and excessive size.

        Pure: nothing on the graph instance changes, and the same input
        always produces the same lists in the same order.
        """
        connections = list(connections)
        block_ids = {b.id for b in blocks}
        result = ValidationResult()

        for conn in connections:
            if conn.from_id not in block_ids:
                result.errors.append(ValidationIssue(
                    type="missing_block",
                    message=f"Connection {conn.id} starts at unknown block {conn.from_id}",
                    block_id=conn.from_id,
                    connection_id=conn.id,
                ))
            if conn.to_id not in block_ids:
                result.errors.append(ValidationIssue(
                    type="missing_block",
                    message=f"Connection {conn.id} ends at unknown block {conn.to_id}",
                    block_id=conn.to_id,
                    connection_id=conn.id,
                ))

        for block_id, conn_id in _find_cycles(connections):
            result.errors.append(ValidationIssue(
                type="circular_dependency",
                message=f"Block {block_id} is part of a circular dependency via connection {conn_id}",
                block_id=block_id,
                connection_id=conn_id,
            ))

        if len(connections) > MAX_CONNECTIONS_WARNING:
            result.warnings.append(ValidationIssue(
                type="performance",
                message=(
                    f"{len(connections)} connections exceed the recommended "
                    f"{MAX_CONNECTIONS_WARNING}; execution may be slow"
                ),
            ))

        return result


def _find_cycles(connections: list[Connection]) -> list[tuple[str, str]]:
    """DFS with a recursion stack. Returns (block_id, outgoing connection_id)
    for every block on every cycle found, in discovery order."""
    adjacency: dict[str, list[Connection]] = {}
    nodes: list[str] = []
    for conn in connections:
        adjacency.setdefault(conn.from_id, []).append(conn)
        for node in (conn.from_id, conn.to_id):
            if node not in nodes:
                nodes.append(node)

    visited: set[str] = set()
    on_stack: dict[str, int] = {}
    path: list[tuple[str, Connection | None]] = []
    found: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()

    def visit(node: str):
        visited.add(node)
        on_stack[node] = len(path)
        path.append((node, None))
        for conn in adjacency.get(node, []):
            path[-1] = (node, conn)
            if conn.to_id in on_stack:
                # Path slice from the re-entered node to here is the cycle
                for cycle_node, edge in path[on_stack[conn.to_id]:]:
                    key = (cycle_node, edge.id)
                    if key not in seen:
                        seen.add(key)
                        found.append(key)
            elif conn.to_id not in visited:
                visit(conn.to_id)
        path.pop()
        del on_stack[node]

    for node in nodes:
        if node not in visited:
            visit(node)
    return found


def _composite_content(data: BlockData) -> str:
    """What flows along an edge: generated content, else a text block's attachment, else raw content."""
    if data.generated_content:
        return data.generated_content
    if data.type == "text" and data.attachment_content:
        return data.attachment_content
    return data.content


def summarize(data: BlockData) -> str:
    """One-line human description of a block's cached output."""
    content = data.content or ""
    if data.type == "image":
        match = _IMAGE_FORMAT.match(content)
        if match:
            return f"{match.group(1).upper()} image"
        return "online image" if content.startswith("http") else "image"
    if data.type == "video":
        return "video file" if content.startswith(("http", "blob:", "data:")) else "video content"
    text = _composite_content(data)
    if len(text) > SUMMARY_LENGTH:
        return text[:SUMMARY_LENGTH] + "..."
    return text


def resolve_references(prompt: str, upstream: Iterable[BlockData]) -> str:
    """Replace [A01]-style tokens with the referenced block's content.

    Tokens that name no upstream block are left as written.
    """
    by_number = {d.block_number: _composite_content(d) for d in upstream if d.block_number}

    def replace(match: re.Match) -> str:
        return by_number.get(match.group(1), match.group(0))

    return REFERENCE_PATTERN.sub(replace, prompt)
