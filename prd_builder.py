import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

from database.database import CUSTOMER_PROFILES, FEATURES, PRDS, PRODUCTS
from database.models import CustomerProfile, Feature, PRDDocument, Product
from errors import NotFoundError, StoreError, ValidationError
from normalizers import normalize_custom_sections, normalize_persona, persona_to_html, slugify, strip_html

logger = logging.getLogger(__name__)

PRD_FIELDS = ("problem", "solution", "target_audience", "tech_stack", "success_metrics")


class PRDBuilder:
    """Products, their PRD, personas and features"""

    def __init__(self, store: Any, llm: Any, cache: Any = None, editors: Any = None):
        self.store = store
        self.llm = llm
        self.cache = cache
        self.editors = editors

    async def _unique_slug(self, user_id: str, name: str) -> str:
        base = slugify(name)
        slug = base
        n = 2
        while await self.store.slug_taken(user_id, slug):
            slug = f"{base}-{n}"
            n += 1
        return slug

    async def _require_product(self, product_id: str) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        return product

    def _context(self, product: Dict[str, Any], prd: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        prd = prd or {}
        return {
            "name": product.get("name", ""),
            "description": strip_html(product.get("description", "")),
            "problem": strip_html(prd.get("problem", "")),
            "solution": strip_html(prd.get("solution", "")),
            "target_audience": strip_html(prd.get("target_audience", "")),
        }

    async def _insert_features(self, product_id: str, features: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not features:
            return []
        offset = 0
        if await self.store.count_by_product(FEATURES, product_id):
            offset = await self.store.max_position(FEATURES, product_id) + 1000
        records = [Feature(product_id=product_id, **{**f, "position": f["position"] + offset}) for f in features]
        return await self.store.insert_many(FEATURES, records)

    # -----------------------
    # Products
    # -----------------------
    async def create_product(self, user_id: str, name: str, description: str = "") -> Dict[str, Any]:
        name = (name or "").strip()
        if not user_id:
            raise ValidationError("A user id is required.")
        if not name:
            raise ValidationError("Product name is required.")

        product = Product(
            user_id=user_id,
            name=name,
            description=description or "",
            slug=await self._unique_slug(user_id, name),
        )
        product_row = await self.store.insert(PRODUCTS, product)
        prd_row = await self.store.insert(PRDS, PRDDocument(product_id=product.id))
        logger.info("[PRD] created product %s (%s)", product.id, product.slug)
        return {"product": product_row, "prd": prd_row}

    async def create_product_from_prd(self, user_id: str, name: str, prd_text: str) -> Dict[str, Any]:
        """Parse an uploaded PRD and create the product, PRD and features from it"""
        if not (name or "").strip():
            raise ValidationError("Product name is required.")
        parsed = await self.llm.parse_prd(prd_text, user_id=user_id)

        created = await self.create_product(user_id, name, parsed["product_description"])
        product_id = created["product"]["id"]
        prd = await self.store.update_prd(product_id, {
            "problem": parsed["problem"],
            "solution": parsed["solution"],
            "target_audience": parsed["target_audience"],
            "custom_sections": parsed["custom_sections"],
        })
        features = await self._insert_features(product_id, parsed["features"])
        return {"product": created["product"], "prd": prd, "features": features}

    async def list_products(self, user_id: str) -> List[Dict[str, Any]]:
        if not user_id:
            raise ValidationError("A user id is required.")
        return await self.store.list_products(user_id)

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        product = await self._require_product(product_id)
        prd = await self.store.get_prd(product_id)
        features = await self.store.list_by_product(FEATURES, product_id, [("position", ASCENDING)])
        return {"product": product, "prd": prd, "features": features}

    async def update_prd(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        await self._require_product(product_id)
        changes = {k: v for k, v in fields.items() if k in PRD_FIELDS and v is not None}
        if fields.get("custom_sections") is not None:
            changes["custom_sections"] = normalize_custom_sections(fields["custom_sections"])
        if not changes:
            raise ValidationError("Nothing to update.")
        prd = await self.store.update_prd(product_id, changes)
        if prd is None:
            raise NotFoundError("PRD not found.")
        await self.store.update(PRODUCTS, product_id, {})
        return prd

    async def delete_product(self, product_id: str) -> None:
        if not await self.store.delete_product(product_id):
            raise NotFoundError("Product not found.")
        if self.cache is not None:
            await self.cache.clear_product(product_id)
        if self.editors is not None:
            self.editors.drop(product_id)
        logger.info("[PRD] deleted product %s", product_id)

    # -----------------------
    # Personas and MVP
    # -----------------------
    async def generate_personas(self, product_id: str, refresh: bool = False) -> List[Dict[str, Any]]:
        product = await self._require_product(product_id)

        personas = None
        if not refresh and self.cache is not None:
            personas = await self.cache.get_cached_personas(product_id)
        if personas is None:
            prd = await self.store.get_prd(product_id)
            personas = await self.llm.generate_personas(self._context(product, prd), user_id=product["user_id"])
            if self.cache is not None:
                await self.cache.cache_personas(product_id, personas)

        rows = await self.store.replace_customer_profiles(
            product_id,
            [CustomerProfile(product_id=product_id, **p) for p in personas],
        )
        return [{**row, "html": persona_to_html(row)} for row in rows]

    async def generate_mvp(self, product_id: str, persona_id: str) -> Dict[str, Any]:
        """Write an MVP PRD and feature list for the chosen persona"""
        product = await self._require_product(product_id)
        profile = await self.store.get(CUSTOMER_PROFILES, persona_id)
        if profile is None or profile.get("product_id") != product_id:
            raise NotFoundError("Persona not found.")
        await self.store.select_customer_profile(product_id, persona_id)

        persona = normalize_persona(profile)
        mvp = await self.llm.generate_mvp_prd(persona, self._context(product), user_id=product["user_id"])

        try:
            features = await self._insert_features(product_id, mvp["features"])
        except StoreError:
            # the PRD is still worth saving
            logger.warning("[PRD][WARN] features for product %s were not saved", product_id)
            features = []

        prd = await self.store.update_prd(product_id, {
            "problem": mvp["problem"],
            "solution": mvp["solution"],
            "target_audience": persona_to_html(persona),
            "tech_stack": mvp["tech_stack"],
            "success_metrics": mvp["success_metrics"],
        })
        return {"prd": prd, "features": features}

    async def process_text(self, request: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.llm.process_text_action(request, user_id=user_id)
