"""
Validated, indexed view of a flow definition.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from ..models.flow import (
    ButtonConfig,
    Edge,
    FlowDefinition,
    Node,
    NodeType,
)
from .errors import FlowValidationError, NoMatchingEdge

logger = logging.getLogger(__name__)

ERROR_HANDLE = "error"
ERROR_BRANCH_TYPES = (NodeType.API, NodeType.WEBHOOK)


def button_labels(config: ButtonConfig, index: int) -> Tuple[str, str]:
    """Edge labels accepted for a button: its 0-based index, then its text."""
    return str(index), config.buttons[index]


class FlowGraph:
    """
    Adjacency index keyed by (node id, edge label).

    Construction validates the definition; a FlowGraph only exists for a
    well-formed flow.
    """

    def __init__(self, flow: FlowDefinition):
        self.flow = flow
        self._nodes: Dict[str, Node] = {}
        self._outgoing: Dict[str, List[Edge]] = defaultdict(list)
        self._index: Dict[Tuple[str, Optional[str]], Edge] = {}
        self.start_node_id: str = ""
        self._build()

    def _build(self):
        problems: List[str] = []

        starts = [node for node in self.flow.nodes if node.type == NodeType.START]
        if not starts:
            problems.append("Flow has no start node")
        elif len(starts) > 1:
            problems.append(f"Flow has {len(starts)} start nodes; exactly one is allowed")
        else:
            self.start_node_id = starts[0].id

        for node in self.flow.nodes:
            if node.id in self._nodes:
                problems.append(f"Duplicate node id '{node.id}'")
            self._nodes[node.id] = node

        for edge in self.flow.edges:
            dangling = [ref for ref in (edge.source, edge.target) if ref not in self._nodes]
            if dangling:
                problems.append(f"Edge '{edge.id}' references missing node(s): {', '.join(dangling)}")
                continue
            key = (edge.source, edge.source_handle)
            if key in self._index:
                problems.append(
                    f"Node '{edge.source}' has more than one edge labelled '{edge.source_handle}'"
                )
            self._index[key] = edge
            self._outgoing[edge.source].append(edge)

        for node in self._nodes.values():
            problems.extend(self._check_node(node))

        if problems:
            raise FlowValidationError(problems)

    def _check_node(self, node: Node) -> List[str]:
        problems = []
        edges = self._outgoing.get(node.id, [])
        config = node.config

        if node.type == NodeType.CONDITION:
            for position, rule in enumerate(config.rules, start=1):
                if rule.operator.needs_value and not rule.value:
                    problems.append(
                        f"Condition '{node.id}' rule {position} ({rule.operator.value}) requires a value"
                    )
            for label in ("true", "false"):
                if (node.id, label) not in self._index:
                    problems.append(f"Condition '{node.id}' has no '{label}' edge")

        elif node.type == NodeType.BUTTON:
            if not config.buttons:
                problems.append(f"Button node '{node.id}' has no buttons")
            for index in range(len(config.buttons)):
                if not any((node.id, label) in self._index for label in button_labels(config, index)):
                    problems.append(
                        f"Button node '{node.id}' has no edge for button {index} ('{config.buttons[index]}')"
                    )

        elif node.type == NodeType.JUMP:
            if config.target_node_id not in self._nodes:
                problems.append(f"Jump '{node.id}' targets missing node '{config.target_node_id}'")

        else:
            regular = [
                edge for edge in edges
                if not (node.type in ERROR_BRANCH_TYPES and edge.source_handle == ERROR_HANDLE)
            ]
            if len(regular) > 1:
                problems.append(f"Node '{node.id}' ({node.type.value}) has {len(regular)} outgoing edges; at most one is allowed")

        return problems

    @property
    def start_node(self) -> Node:
        return self._nodes[self.start_node_id]

    def node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, []))

    def has_edge(self, node_id: str, label: Optional[str]) -> bool:
        return (node_id, label) in self._index

    def next_node_id(
        self,
        node_id: str,
        label: Optional[str] = None,
        fallback_unlabeled: bool = False,
    ) -> str:
        """
        Pick the target of the edge leaving `node_id` with `label`.

        Raises NoMatchingEdge when there is none.
        """
        edge = None
        if label is not None:
            edge = self._index.get((node_id, label))
            if edge is None and fallback_unlabeled:
                edge = self._default_edge(node_id)
        else:
            edge = self._default_edge(node_id)

        if edge is None:
            wanted = f"labelled '{label}'" if label is not None else "to follow"
            raise NoMatchingEdge(f"Node '{node_id}' has no outgoing edge {wanted}", node_id=node_id)
        return edge.target

    def _default_edge(self, node_id: str) -> Optional[Edge]:
        edge = self._index.get((node_id, None))
        if edge is not None:
            return edge
        # Builders often tag a node's only output handle; accept it.
        candidates = [e for e in self._outgoing.get(node_id, []) if e.source_handle != ERROR_HANDLE]
        return candidates[0] if len(candidates) == 1 else None
