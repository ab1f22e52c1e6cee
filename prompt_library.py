import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from database.database import PRODUCT_PROMPTS, PROMPT_TEMPLATES
from database.models import ProductPrompt, PromptTemplate
from errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CATEGORIES = ("first", "system", "page", "feature", "debugging", "database", "authentication")

TEMPLATE_FIELDS = ("name", "description", "template", "category", "is_public")
PRODUCT_PROMPT_FIELDS = ("name", "description", "prompt")

REQUIRED = {
    "name": "Name is required.",
    "description": "Description is required.",
    "template": "Prompt template is required.",
    "prompt": "Prompt template is required.",
}

NEWEST_FIRST = [("created_at", DESCENDING)]


def check_prompt_fields(fields: Dict[str, Any], required: bool = False) -> None:
    """Text fields may not be blank; with ``required`` they must also be present."""
    for key, message in REQUIRED.items():
        if key in fields:
            if not str(fields[key] or "").strip():
                raise ValidationError(message)
        elif required and key in ("name", "description"):
            raise ValidationError(message)
    if "category" in fields and fields["category"] not in CATEGORIES:
        raise ValidationError(f"Unknown category '{fields['category']}'.")


def by_category(rows: List[Dict[str, Any]], category: Optional[str]) -> List[Dict[str, Any]]:
    if not category or category == "all":
        return rows
    return [r for r in rows if r.get("category") == category]


class PromptLibrary:
    """Personal and shared prompt templates, plus the prompts kept on each product.

    Templates belong to a user and can be shared with everyone through
    ``is_public``. Product prompts are copies: editing a template later
    does not change the product prompts made from it.
    """

    def __init__(self, store: Any):
        self.store = store

    async def _template(self, template_id: str) -> Dict[str, Any]:
        row = await self.store.get(PROMPT_TEMPLATES, template_id)
        if row is None:
            raise NotFoundError("Prompt not found.")
        return row

    async def _product_prompt(self, prompt_id: str) -> Dict[str, Any]:
        row = await self.store.get(PRODUCT_PROMPTS, prompt_id)
        if row is None:
            raise NotFoundError("Prompt not found.")
        return row

    async def _product(self, product_id: str) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        return product

    # -----------------------
    # Templates
    # -----------------------
    async def list_templates(self, user_id: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = await self.store.find(PROMPT_TEMPLATES, {"user_id": user_id}, NEWEST_FIRST)
        return by_category(rows, category)

    async def list_community(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = await self.store.find(PROMPT_TEMPLATES, {"is_public": True}, NEWEST_FIRST)
        return by_category(rows, category)

    async def create_template(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: data[k] for k in TEMPLATE_FIELDS if k in data}
        fields.setdefault("template", "")
        check_prompt_fields(fields, required=True)
        record = PromptTemplate(
            user_id=user_id,
            name=fields["name"].strip(),
            description=fields["description"].strip(),
            template=fields["template"],
            category=fields.get("category") or "system",
            is_public=bool(fields.get("is_public", False)),
        )
        row = await self.store.insert(PROMPT_TEMPLATES, record)
        logger.info("[PROMPTS] user %s created template %s (public=%s)", user_id, row["id"], row["is_public"])
        return row

    async def update_template(self, template_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in fields.items() if k in TEMPLATE_FIELDS}
        if not changes:
            raise ValidationError("Nothing to update.")
        check_prompt_fields(changes)
        if "is_public" in changes:
            changes["is_public"] = bool(changes["is_public"])
        row = await self.store.update(PROMPT_TEMPLATES, template_id, changes)
        if row is None:
            raise NotFoundError("Prompt not found.")
        return row

    async def set_public(self, template_id: str, is_public: bool) -> Dict[str, Any]:
        return await self.update_template(template_id, {"is_public": is_public})

    async def delete_template(self, template_id: str) -> None:
        if not await self.store.delete(PROMPT_TEMPLATES, template_id):
            raise NotFoundError("Prompt not found.")

    async def _copy_to_personal(self, user_id: str, source: Dict[str, Any], name: str, category: str) -> Dict[str, Any]:
        # copies always start private
        record = PromptTemplate(
            user_id=user_id,
            name=name,
            description=source.get("description") or "",
            template=source.get("template") or source.get("prompt") or "",
            category=category,
            is_public=False,
        )
        return await self.store.insert(PROMPT_TEMPLATES, record)

    async def duplicate_template(self, user_id: str, template_id: str) -> Dict[str, Any]:
        source = await self._template(template_id)
        return await self._copy_to_personal(user_id, source, f"{source['name']} (Copy)", source.get("category") or "system")

    async def save_to_personal(self, user_id: str, template_id: str) -> Dict[str, Any]:
        """Keep a shared template in the user's own library."""
        source = await self._template(template_id)
        existing = await self.store.find(PROMPT_TEMPLATES, {"user_id": user_id, "template": source["template"]})
        if existing:
            raise ConflictError("A similar prompt already exists in your personal library.")
        return await self._copy_to_personal(user_id, source, f"{source['name']} (Saved)", source.get("category") or "system")

    # -----------------------
    # Product prompts
    # -----------------------
    async def list_product_prompts(self, product_id: str) -> List[Dict[str, Any]]:
        await self._product(product_id)
        return await self.store.find(PRODUCT_PROMPTS, {"product_id": product_id}, NEWEST_FIRST)

    async def create_product_prompt(self, product_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: data[k] for k in PRODUCT_PROMPT_FIELDS if k in data}
        fields.setdefault("prompt", "")
        check_prompt_fields(fields, required=True)
        await self._product(product_id)
        record = ProductPrompt(
            product_id=product_id,
            name=fields["name"].strip(),
            description=fields["description"].strip(),
            prompt=fields["prompt"],
        )
        row = await self.store.insert(PRODUCT_PROMPTS, record)
        logger.info("[PROMPTS] added prompt %s to product %s", row["id"], product_id)
        return row

    async def add_template_to_product(self, product_id: str, template_id: str) -> Dict[str, Any]:
        await self._product(product_id)
        source = await self._template(template_id)
        existing = await self.store.find(PRODUCT_PROMPTS, {"product_id": product_id, "template_id": template_id})
        if existing:
            raise ConflictError("This prompt is already in the product library.")
        record = ProductPrompt(
            product_id=product_id,
            template_id=template_id,
            name=source["name"],
            description=source.get("description") or "",
            prompt=source["template"],
        )
        row = await self.store.insert(PRODUCT_PROMPTS, record)
        logger.info("[PROMPTS] copied template %s to product %s", template_id, product_id)
        return row

    async def update_product_prompt(self, prompt_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in fields.items() if k in PRODUCT_PROMPT_FIELDS}
        if not changes:
            raise ValidationError("Nothing to update.")
        check_prompt_fields(changes)
        row = await self.store.update(PRODUCT_PROMPTS, prompt_id, changes)
        if row is None:
            raise NotFoundError("Prompt not found.")
        return row

    async def delete_product_prompt(self, prompt_id: str) -> None:
        if not await self.store.delete(PRODUCT_PROMPTS, prompt_id):
            raise NotFoundError("Prompt not found.")

    async def copy_product_prompt_to_personal(self, user_id: str, prompt_id: str) -> Dict[str, Any]:
        source = await self._product_prompt(prompt_id)
        return await self._copy_to_personal(user_id, source, f"{source['name']} (Copy)", "system")
