from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Tuple, TypedDict


class ItemType(Enum):
    FEATURE = "feature"
    PAGE = "page"
    BUG = "bug"
    TASK = "task"


class Priority(Enum):
    MUST_HAVE = "must-have"
    NICE_TO_HAVE = "nice-to-have"
    NOT_PRIORITIZED = "not-prioritized"


class ImplementationStatus(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"


class TextAction(Enum):
    IMPROVE = "improve"
    EXPAND = "expand"
    SHORTEN = "shorten"


@dataclass(frozen=True)
class FlowNode:
    """One page of the product being designed, as drawn on the flow canvas."""
    id: str
    name: str
    description: str = ""
    layout_description: str = ""
    features: Tuple[str, ...] = ()
    x: float = 0.0
    y: float = 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FlowNode":
        return cls(
            id=row["id"],
            name=row.get("name", ""),
            description=row.get("description") or "",
            layout_description=row.get("layout_description") or "",
            features=tuple(row.get("features") or ()),
            x=float(row.get("position_x") or 0),
            y=float(row.get("position_y") or 0),
        )

    def moved(self, x: float, y: float) -> "FlowNode":
        return replace(self, x=float(x), y=float(y))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "layout_description": self.layout_description,
            "features": list(self.features),
            "position": {"x": self.x, "y": self.y},
        }


@dataclass(frozen=True)
class FlowEdge:
    """Directed user-flow transition between two pages."""
    id: str
    source: str
    target: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FlowEdge":
        return cls(id=row["id"], source=row["source_id"], target=row["target_id"])

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target}


@dataclass(frozen=True)
class GraphSnapshot:
    nodes: Tuple[FlowNode, ...] = ()
    edges: Tuple[FlowEdge, ...] = ()

    def node(self, node_id: str) -> Optional[FlowNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edge(self, edge_id: str) -> Optional[FlowEdge]:
        for e in self.edges:
            if e.id == edge_id:
                return e
        return None

    def with_node(self, node: FlowNode) -> "GraphSnapshot":
        """Replace the node with the same id, or append it."""
        if self.node(node.id) is None:
            return replace(self, nodes=self.nodes + (node,))
        return replace(self, nodes=tuple(node if n.id == node.id else n for n in self.nodes))

    def without_node(self, node_id: str) -> "GraphSnapshot":
        return GraphSnapshot(
            nodes=tuple(n for n in self.nodes if n.id != node_id),
            edges=tuple(e for e in self.edges if not e.touches(node_id)),
        )

    def with_edge(self, edge: FlowEdge) -> "GraphSnapshot":
        return replace(self, edges=self.edges + (edge,))

    def without_edge(self, edge_id: str) -> "GraphSnapshot":
        return replace(self, edges=tuple(e for e in self.edges if e.id != edge_id))

    def dangling_edges(self) -> List[FlowEdge]:
        ids = {n.id for n in self.nodes}
        return [e for e in self.edges if e.source not in ids or e.target not in ids]


@dataclass
class EditorHistory:
    undo_stack: List[GraphSnapshot] = field(default_factory=list)
    redo_stack: List[GraphSnapshot] = field(default_factory=list)

    def record(self, snapshot: GraphSnapshot) -> None:
        self.undo_stack.append(snapshot)
        self.redo_stack.clear()

    def discard(self, snapshot: GraphSnapshot) -> None:
        """Drop the undo entry that is ``snapshot`` itself, matched by identity."""
        for i in range(len(self.undo_stack) - 1, -1, -1):
            if self.undo_stack[i] is snapshot:
                del self.undo_stack[i]
                return

    def clear(self) -> None:
        self.undo_stack.clear()
        self.redo_stack.clear()


class FlowGenerationState(TypedDict, total=False):
    # Run identity
    run_id: str
    product_id: str
    source: Literal["generate", "current", "pages"]
    flow_pattern: str

    # Inputs gathered before the first node
    product_context: Dict[str, str]
    features: List[Dict[str, Any]]

    # Page proposals
    suggested_pages: List[Dict[str, Any]]
    selected_pages: List[Dict[str, Any]]
    additional_requirements: str
    refinement: Optional[Dict[str, Any]]
    final_pages: List[Dict[str, Any]]

    # Layout and result
    layout: Dict[str, Any]
    applied: Dict[str, Any]

    # Workflow control
    current_stage: Literal["generate", "select", "refine", "review_refinement", "layout", "applied"]
    checkpoint_reason: str
