import uuid
import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database.database import FLOW_CONNECTIONS, FLOW_PAGES
from database.models import FlowConnectionRecord, FlowPageRecord
from errors import NotFoundError, StoreError, ValidationError
from state import EditorHistory, FlowEdge, FlowNode, GraphSnapshot

logger = logging.getLogger(__name__)

DEFAULT_X = 100.0
DEFAULT_Y = 100.0
POSITION_STEP = 50.0
MIN_DX = 250.0
MIN_DY = 150.0

EDITABLE_FIELDS = ("name", "description", "layout_description", "features")


def free_position(nodes: Iterable[FlowNode]) -> Tuple[float, float]:
    """First diagonal slot from (100, 100) that no node crowds within 250 x 150 px."""
    taken = [(n.x, n.y) for n in nodes]
    offset = 0.0
    x, y = DEFAULT_X, DEFAULT_Y
    while any(abs(px - x) < MIN_DX and abs(py - y) < MIN_DY for px, py in taken):
        offset += POSITION_STEP
        x = DEFAULT_X + offset
        y = DEFAULT_Y + offset
    return x, y


def _clean_features(features: Any) -> List[str]:
    if features is None:
        return []
    if isinstance(features, str):
        features = [features]
    return [str(f).strip() for f in features if str(f).strip()]


class FlowGraphEditor:
    """In-memory page/connection graph of one product, mirrored to the store.

    Every user mutation pushes the pre-change snapshot onto the undo stack and
    clears redo. Undo and redo only swap local snapshots: rows already written
    to the store are not reverted, ``reload`` re-reads them. One editor per
    product is assumed; concurrent writers from elsewhere are last-write-wins.
    """

    def __init__(self, store: Any, product_id: str):
        self.store = store
        self.product_id = product_id
        self.flow_version: Optional[str] = None
        self.snapshot = GraphSnapshot()
        self.history = EditorHistory()
        # node id -> (x, y) not yet persisted
        self.pending_positions: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, store: Any, product_id: str) -> "FlowGraphEditor":
        editor = cls(store, product_id)
        await editor._reload()
        return editor

    async def reload(self) -> None:
        async with self._lock:
            await self._reload()

    async def _reload(self) -> None:
        product = await self.store.get_product(self.product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        version = product["flow_version"]
        page_rows, connection_rows = await asyncio.gather(
            self.store.list_flow_pages(self.product_id, version),
            self.store.list_flow_connections(self.product_id, version),
        )

        snapshot = GraphSnapshot(
            nodes=tuple(FlowNode.from_row(r) for r in page_rows),
            edges=tuple(FlowEdge.from_row(r) for r in connection_rows),
        )
        dangling = snapshot.dangling_edges()
        if dangling:
            logger.warning("[FLOW][WARN] dropping %d dangling connections for product %s", len(dangling), self.product_id)
            snapshot = replace(snapshot, edges=tuple(e for e in snapshot.edges if e not in dangling))

        # unsent positions still win over what the store returned
        self.pending_positions = {k: v for k, v in self.pending_positions.items() if snapshot.node(k)}
        for node_id, (x, y) in self.pending_positions.items():
            snapshot = snapshot.with_node(snapshot.node(node_id).moved(x, y))

        self.flow_version = version
        self.snapshot = snapshot
        self.history.clear()
        logger.info("[FLOW] loaded product %s: %d pages, %d connections", self.product_id, len(snapshot.nodes), len(snapshot.edges))

    # -----------------------
    # Helpers
    # -----------------------
    def _require_node(self, node_id: str) -> FlowNode:
        node = self.snapshot.node(node_id)
        if node is None:
            raise NotFoundError(f"Page '{node_id}' is not on this flow.")
        return node

    def _commit(self, snapshot: GraphSnapshot) -> GraphSnapshot:
        """Make ``snapshot`` current and push the one it replaces; returns the pushed entry."""
        dangling = snapshot.dangling_edges()
        if dangling:
            logger.warning("[FLOW][WARN] dropping %d connections to pages no longer on the canvas", len(dangling))
            snapshot = replace(snapshot, edges=tuple(e for e in snapshot.edges if e not in dangling))
        previous = self.snapshot
        self.history.record(previous)
        self.snapshot = snapshot
        return previous

    async def _flush(self) -> List[str]:
        for node_id, (x, y) in list(self.pending_positions.items()):
            try:
                row = await self.store.update(FLOW_PAGES, node_id, {"position_x": x, "position_y": y})
            except StoreError:
                logger.warning("[FLOW][WARN] position of %s not saved, will retry", node_id)
                continue
            if row is None:
                logger.warning("[FLOW][WARN] page %s no longer stored, dropping its position", node_id)
            self.pending_positions.pop(node_id, None)
        return list(self.pending_positions)

    # -----------------------
    # Mutations
    # -----------------------
    async def move_node(self, node_id: str, x: float, y: float) -> FlowNode:
        async with self._lock:
            node = self._require_node(node_id).moved(x, y)
            self._commit(self.snapshot.with_node(node))
            self.pending_positions[node_id] = (node.x, node.y)
            await self._flush()
            return node

    async def flush_positions(self) -> List[str]:
        """Retry unsaved positions; returns the ids still pending."""
        async with self._lock:
            return await self._flush()

    async def connect(self, source: str, target: str) -> FlowEdge:
        async with self._lock:
            self._require_node(source)
            self._require_node(target)
            if source == target:
                raise ValidationError("A page cannot connect to itself.")
            if any(e.source == source and e.target == target for e in self.snapshot.edges):
                raise ValidationError("These pages are already connected.")

            row = await self.store.insert(
                FLOW_CONNECTIONS,
                FlowConnectionRecord(
                    product_id=self.product_id,
                    flow_version=self.flow_version,
                    source_id=source,
                    target_id=target,
                ),
            )
            edge = FlowEdge.from_row(row)
            self._commit(self.snapshot.with_edge(edge))
            return edge

    async def delete_edge(self, edge_id: str) -> None:
        async with self._lock:
            if self.snapshot.edge(edge_id) is None:
                raise NotFoundError(f"Connection '{edge_id}' is not on this flow.")
            redo = list(self.history.redo_stack)
            pushed = self._commit(self.snapshot.without_edge(edge_id))
            try:
                await self.store.delete(FLOW_CONNECTIONS, edge_id)
            except StoreError:
                self.snapshot = pushed
                self.history.discard(pushed)
                self.history.redo_stack[:] = redo
                logger.warning("[FLOW][WARN] restored connection %s after failed delete", edge_id)
                raise

    async def delete_node(self, node_id: str) -> None:
        async with self._lock:
            self._require_node(node_id)
            await self.store.delete_flow_page(node_id)
            self.pending_positions.pop(node_id, None)
            self._commit(self.snapshot.without_node(node_id))

    async def update_page(self, node_id: str, fields: Dict[str, Any]) -> FlowNode:
        async with self._lock:
            node = self._require_node(node_id)
            changes = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
            if "name" in changes:
                changes["name"] = str(changes["name"]).strip()
                if not changes["name"]:
                    raise ValidationError("Page name is required.")
            if "features" in changes:
                changes["features"] = _clean_features(changes["features"])
            if not changes:
                return node

            row = await self.store.update(FLOW_PAGES, node_id, changes)
            if row is None:
                raise NotFoundError("Page not found.")
            updated = replace(
                FlowNode.from_row(row),
                # keep the on-canvas position, the stored one may still be pending
                x=node.x,
                y=node.y,
            )
            self._commit(self.snapshot.with_node(updated))
            return updated

    async def add_page(self, data: Dict[str, Any]) -> FlowNode:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Page name is required.")
        async with self._lock:
            x, y = free_position(self.snapshot.nodes)
            row = await self.store.insert(
                FLOW_PAGES,
                FlowPageRecord(
                    product_id=self.product_id,
                    flow_version=self.flow_version,
                    name=name,
                    description=data.get("description") or "",
                    layout_description=data.get("layout_description") or "",
                    features=_clean_features(data.get("features")),
                    position_x=x,
                    position_y=y,
                ),
            )
            node = FlowNode.from_row(row)
            self._commit(self.snapshot.with_node(node))
            return node

    async def undo(self) -> bool:
        async with self._lock:
            if not self.history.undo_stack:
                return False
            self.history.redo_stack.append(self.snapshot)
            self.snapshot = self.history.undo_stack.pop()
            return True

    async def redo(self) -> bool:
        async with self._lock:
            if not self.history.redo_stack:
                return False
            self.history.undo_stack.append(self.snapshot)
            self.snapshot = self.history.redo_stack.pop()
            return True

    # -----------------------
    # Regeneration
    # -----------------------
    async def apply_layout(self, pages: List[Dict[str, Any]], layout: Dict[str, Any]) -> Dict[str, int]:
        """Replace the whole graph with a generated layout.

        Rows are staged under a fresh flow version and the product pointer is
        switched only after every insert succeeded, so readers see either the
        old graph or the new one. History is cleared afterwards.
        """
        by_name = {p.get("name"): p for p in pages}
        version = str(uuid.uuid4())

        id_map: Dict[str, str] = {}
        page_records = []
        for layout_page in layout.get("pages") or []:
            page = by_name.get(layout_page.get("name"), {})
            position = layout_page.get("position") or {}
            record = FlowPageRecord(
                product_id=self.product_id,
                flow_version=version,
                name=layout_page["name"],
                description=page.get("description") or "",
                layout_description=page.get("layout_description") or "",
                features=_clean_features(page.get("features")),
                position_x=float(position.get("x") or 0),
                position_y=float(position.get("y") or 0),
            )
            id_map[str(layout_page.get("id"))] = record.id
            page_records.append(record)

        connection_records = []
        for connection in layout.get("connections") or []:
            source = id_map.get(str(connection.get("source")))
            target = id_map.get(str(connection.get("target")))
            if not source or not target:
                logger.warning("[FLOW][WARN] skipping connection %s -> %s with unknown page", connection.get("source"), connection.get("target"))
                continue
            connection_records.append(
                FlowConnectionRecord(product_id=self.product_id, flow_version=version, source_id=source, target_id=target)
            )

        async with self._lock:
            try:
                await self.store.insert_many(FLOW_PAGES, page_records)
                await self.store.insert_many(FLOW_CONNECTIONS, connection_records)
                await self.store.activate_flow_version(self.product_id, version)
            except StoreError:
                logger.error("[FLOW][ERROR] regeneration failed for product %s, discarding staged rows", self.product_id)
                try:
                    await self.store.delete_flow_version(self.product_id, version)
                except StoreError:
                    logger.warning("[FLOW][WARN] staged flow %s left behind", version)
                raise

            self.pending_positions.clear()
            await self._reload()

        logger.info("[FLOW] applied layout to product %s: %d pages, %d connections", self.product_id, len(page_records), len(connection_records))
        return {"pages": len(page_records), "connections": len(connection_records)}

    def view(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "nodes": [n.to_dict() for n in self.snapshot.nodes],
            "edges": [e.to_dict() for e in self.snapshot.edges],
            "can_undo": bool(self.history.undo_stack),
            "can_redo": bool(self.history.redo_stack),
            "undo_depth": len(self.history.undo_stack),
            "redo_depth": len(self.history.redo_stack),
            "pending_positions": sorted(self.pending_positions),
        }


class EditorRegistry:
    """Process-local map of product id to its loaded editor."""

    def __init__(self, store: Any):
        self.store = store
        self._editors: Dict[str, FlowGraphEditor] = {}
        # load locks, per product
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get(self, product_id: str) -> FlowGraphEditor:
        async with self._locks.setdefault(product_id, asyncio.Lock()):
            editor = self._editors.get(product_id)
            if editor is None:
                editor = await FlowGraphEditor.load(self.store, product_id)
                self._editors[product_id] = editor
            return editor

    async def reload(self, product_id: str) -> FlowGraphEditor:
        editor = await self.get(product_id)
        await editor.reload()
        return editor

    def peek(self, product_id: str) -> Optional[FlowGraphEditor]:
        return self._editors.get(product_id)

    def drop(self, product_id: str) -> None:
        self._editors.pop(product_id, None)
        self._locks.pop(product_id, None)
