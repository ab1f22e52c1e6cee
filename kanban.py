import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING

from database.database import BUGS, FEATURES, FLOW_PAGES, TASKS
from database.models import Bug, Feature, FlowPageRecord, Task
from errors import NotFoundError, ValidationError
from flow_editor import EDITABLE_FIELDS, free_position
from normalizers import VALID_PRIORITIES, VALID_STATUSES
from state import FlowNode, ItemType, Priority

logger = logging.getLogger(__name__)

COLUMNS = [
    {"id": "not_started", "title": "Not Started"},
    {"id": "in_progress", "title": "In Progress"},
    {"id": "completed", "title": "Completed"},
]
COLUMN_IDS = [c["id"] for c in COLUMNS]

COLLECTIONS = {
    ItemType.FEATURE: FEATURES,
    ItemType.PAGE: FLOW_PAGES,
    ItemType.BUG: BUGS,
    ItemType.TASK: TASKS,
}

UPDATABLE_FIELDS = {
    ItemType.FEATURE: ("name", "description", "priority", "implementation_status"),
    ItemType.PAGE: ("name", "description", "layout_description", "features", "priority", "implementation_status"),
    ItemType.BUG: ("name", "description", "priority", "status", "bug_url", "screenshot_url"),
    ItemType.TASK: ("name", "description", "priority", "status"),
}


def item_type(value: Any) -> ItemType:
    try:
        return ItemType(value)
    except ValueError:
        raise ValidationError(f"Unknown item type '{value}'.")


def status_field(kind: ItemType) -> str:
    if kind in (ItemType.FEATURE, ItemType.PAGE):
        return "implementation_status"
    return "status"


def item_status(item: Dict[str, Any]) -> str:
    return item.get(status_field(ItemType(item["type"]))) or "not_started"


def active_filters(types: Optional[Iterable[str]] = None, priorities: Optional[Iterable[str]] = None) -> int:
    return len(set(types or ())) + len(set(priorities or ()))


def filter_items(
    items: List[Dict[str, Any]],
    types: Optional[Iterable[str]] = None,
    priorities: Optional[Iterable[str]] = None,
    search: str = "",
) -> List[Dict[str, Any]]:
    """Empty type or priority sets do not filter; search matches name or description."""
    types = set(types or ())
    priorities = set(priorities or ())
    needle = (search or "").strip().lower()
    result = []
    for item in items:
        if types and item["type"] not in types:
            continue
        if priorities and item.get("priority") not in priorities:
            continue
        if needle:
            haystack = f"{item.get('name') or ''} {item.get('description') or ''}".lower()
            if needle not in haystack:
                continue
        result.append(item)
    return result


def columns(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    buckets: Dict[str, List[Dict[str, Any]]] = {c: [] for c in COLUMN_IDS}
    for item in items:
        status = item_status(item)
        # blocked and deferred work waits in the first column
        buckets.get(status, buckets["not_started"]).append(item)
    return [
        {**c, "items": sorted(buckets[c["id"]], key=lambda i: i.get("position") or 0)}
        for c in COLUMNS
    ]


class KanbanService:
    """Board over features, flow pages, bugs and tasks of a product."""

    def __init__(self, store: Any, editors: Any = None):
        self.store = store
        self.editors = editors

    async def _product(self, product_id: str) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        return product

    def _editor(self, product_id: str):
        return self.editors.peek(product_id) if self.editors is not None else None

    async def load(self, product_id: str) -> List[Dict[str, Any]]:
        product = await self._product(product_id)
        by_position = [("position", ASCENDING)]
        features, pages, bugs, tasks = await asyncio.gather(
            self.store.list_by_product(FEATURES, product_id, by_position),
            self.store.list_flow_pages(product_id, product["flow_version"]),
            self.store.list_by_product(BUGS, product_id, by_position),
            self.store.list_by_product(TASKS, product_id, by_position),
        )
        items = []
        for kind, rows in (
            (ItemType.FEATURE, features),
            (ItemType.PAGE, pages),
            (ItemType.BUG, bugs),
            (ItemType.TASK, tasks),
        ):
            items.extend({**row, "type": kind.value} for row in rows)
        return items

    async def board(
        self,
        product_id: str,
        types: Optional[List[str]] = None,
        priorities: Optional[List[str]] = None,
        search: str = "",
    ) -> Dict[str, Any]:
        for t in types or ():
            item_type(t)
        items = await self.load(product_id)
        visible = filter_items(items, types, priorities, search)
        return {
            "columns": columns(visible),
            "active_filters": active_filters(types, priorities),
            "total": len(items),
            "shown": len(visible),
        }

    def _check_values(self, kind: ItemType, fields: Dict[str, Any]) -> None:
        if "name" in fields and not str(fields["name"] or "").strip():
            raise ValidationError("Name is required.")
        if "priority" in fields and fields["priority"] not in VALID_PRIORITIES:
            raise ValidationError(f"Unknown priority '{fields['priority']}'.")
        field = status_field(kind)
        if field in fields:
            allowed = VALID_STATUSES if field == "implementation_status" else COLUMN_IDS
            if fields[field] not in allowed:
                raise ValidationError(f"Unknown status '{fields[field]}'.")

    async def add_item(self, product_id: str, kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
        kind = item_type(kind)
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        priority = data.get("priority") or Priority.NOT_PRIORITIZED.value
        self._check_values(kind, {"priority": priority})
        product = await self._product(product_id)
        description = data.get("description") or ""

        if kind == ItemType.PAGE:
            return await self._add_page(product, {**data, "name": name, "priority": priority})

        if kind == ItemType.FEATURE:
            position = await self.store.count_by_product(FEATURES, product_id)
            record = Feature(product_id=product_id, name=name, description=description, priority=priority, position=position)
        elif kind == ItemType.TASK:
            position = await self.store.count_by_product(TASKS, product_id)
            record = Task(product_id=product_id, name=name, description=description, priority=priority, position=position)
        else:
            position = await self.store.max_position(BUGS, product_id) + 1000
            record = Bug(
                product_id=product_id,
                name=name,
                description=description,
                priority=priority,
                bug_url=data.get("bug_url"),
                screenshot_url=data.get("screenshot_url"),
                position=position,
            )

        row = await self.store.insert(COLLECTIONS[kind], record)
        logger.info("[KANBAN] added %s %s to product %s", kind.value, row["id"], product_id)
        return {**row, "type": kind.value}

    async def _add_page(self, product: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        product_id = product["id"]
        editor = self._editor(product_id)
        if editor is not None:
            node = await editor.add_page(data)
            row = await self.store.update(FLOW_PAGES, node.id, {"priority": data["priority"]})
        else:
            rows = await self.store.list_flow_pages(product_id, product["flow_version"])
            x, y = free_position(FlowNode.from_row(r) for r in rows)
            row = await self.store.insert(
                FLOW_PAGES,
                FlowPageRecord(
                    product_id=product_id,
                    flow_version=product["flow_version"],
                    name=data["name"],
                    description=data.get("description") or "",
                    priority=data["priority"],
                    position_x=x,
                    position_y=y,
                ),
            )
        return {**row, "type": ItemType.PAGE.value}

    async def update_item(self, kind: str, item_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        kind = item_type(kind)
        changes = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS[kind]}
        if not changes:
            raise ValidationError("Nothing to update.")
        self._check_values(kind, changes)

        collection = COLLECTIONS[kind]
        if kind == ItemType.PAGE:
            row = await self.store.get(collection, item_id)
            if row is None:
                raise NotFoundError("Item not found.")
            editor = self._editor(row["product_id"])
            if editor is not None and editor.snapshot.node(item_id) is not None:
                # keep the open canvas and its history in step
                page_fields = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
                if page_fields:
                    await editor.update_page(item_id, page_fields)
                changes = {k: v for k, v in changes.items() if k not in EDITABLE_FIELDS}
                if not changes:
                    return {**await self.store.get(collection, item_id), "type": kind.value}

        row = await self.store.update(collection, item_id, changes)
        if row is None:
            raise NotFoundError("Item not found.")
        return {**row, "type": kind.value}

    async def move_item(self, kind: str, item_id: str, status: str, position: Optional[int] = None) -> Dict[str, Any]:
        """Drop a card into a column, optionally at a given position"""
        kind = item_type(kind)
        if status not in COLUMN_IDS:
            raise ValidationError(f"Unknown column '{status}'.")
        changes: Dict[str, Any] = {status_field(kind): status}
        # pages are placed on the flow canvas, not in a column order
        if position is not None and kind != ItemType.PAGE:
            changes["position"] = int(position)
        row = await self.store.update(COLLECTIONS[kind], item_id, changes)
        if row is None:
            raise NotFoundError("Item not found.")
        return {**row, "type": kind.value}

    async def delete_item(self, kind: str, item_id: str) -> None:
        kind = item_type(kind)
        if kind != ItemType.PAGE:
            if not await self.store.delete(COLLECTIONS[kind], item_id):
                raise NotFoundError("Item not found.")
            return

        row = await self.store.get(FLOW_PAGES, item_id)
        if row is None:
            raise NotFoundError("Item not found.")
        editor = self._editor(row["product_id"])
        if editor is not None and editor.snapshot.node(item_id) is not None:
            await editor.delete_node(item_id)
        else:
            await self.store.delete_flow_page(item_id)
