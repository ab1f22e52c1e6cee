import logging
from typing import Any, Dict, Optional

from pymongo import DESCENDING

from database.database import NOTES
from database.models import Note
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def note_title(product_name: str) -> str:
    return f"{product_name} Notes"


class NotesService:
    """One free-form note per product, created on its first save."""

    def __init__(self, store: Any):
        self.store = store

    async def _product(self, product_id: str) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        return product

    async def _latest(self, product_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.find(NOTES, {"product_id": product_id}, [("created_at", DESCENDING)])
        return rows[0] if rows else None

    async def get(self, product_id: str) -> Dict[str, Any]:
        """Return the product note; an unsaved one has ``id`` None and empty content."""
        product = await self._product(product_id)
        note = await self._latest(product_id)
        if note is not None:
            return note
        return {"id": None, "product_id": product_id, "title": note_title(product["name"]), "content": ""}

    async def save(self, product_id: str, content: str) -> Dict[str, Any]:
        product = await self._product(product_id)
        note = await self._latest(product_id)
        if note is not None:
            return await self.store.update(NOTES, note["id"], {"content": content or ""})

        row = await self.store.insert(
            NOTES, Note(product_id=product_id, title=note_title(product["name"]), content=content or "")
        )
        logger.info("[NOTES] created note %s for product %s", row["id"], product_id)
        return row

    async def append(self, product_id: str, text: str) -> Dict[str, Any]:
        """Quick note: add ``text`` as a new paragraph at the end of the product note"""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Note text is required.")
        note = await self.get(product_id)
        content = f"{note['content']}\n\n{text}" if note["content"] else text
        return await self.save(product_id, content)
