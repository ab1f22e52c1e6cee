import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from errors import StoreError

logger = logging.getLogger(__name__)

PRODUCTS = "products"
PRDS = "prds"
CUSTOMER_PROFILES = "customer_profiles"
FEATURES = "features"
FLOW_PAGES = "flow_pages"
FLOW_CONNECTIONS = "flow_connections"
BUGS = "bugs"
TASKS = "tasks"
OPENAI_LOGS = "openai_logs"
NOTES = "notes"
PROMPT_TEMPLATES = "prompt_templates"
PRODUCT_PROMPTS = "product_prompts"

PRODUCT_COLLECTIONS = [PRDS, CUSTOMER_PROFILES, FEATURES, FLOW_PAGES, FLOW_CONNECTIONS, BUGS, TASKS, NOTES, PRODUCT_PROMPTS]

NO_ID = {"_id": 0}


class MongoDBService:
    """Typed access to the workspace collections.

    The Mongo client is created by the caller (see ``from_uri``) so the
    application controls its lifetime and tests can pass an in-memory one.
    """

    def __init__(self, client: Any, db_name: str = "prd_workspace"):
        self.client = client
        self.db = client[db_name]

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoDBService":
        return cls(AsyncIOMotorClient(uri), db_name)

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except PyMongoError as e:
            logger.error("[DB][ERROR] %s failed: %s", action, e)
            raise StoreError(f"Failed to {action}. Please try again.", original=e) from e

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.warning("[DB][WARN] ping failed: %s", e)
            return False

    # -----------------------
    # Generic row helpers
    # -----------------------
    async def insert(self, collection: str, record: BaseModel) -> Dict:
        doc = record.model_dump()
        async with self._guard(f"create {collection} row"):
            # insert_one adds _id to the dict it is given
            await self.db[collection].insert_one(dict(doc))
        return doc

    async def insert_many(self, collection: str, records: List[BaseModel]) -> List[Dict]:
        docs = [r.model_dump() for r in records]
        if not docs:
            return []
        async with self._guard(f"create {collection} rows"):
            await self.db[collection].insert_many([dict(d) for d in docs])
        return docs

    async def get(self, collection: str, row_id: str) -> Optional[Dict]:
        async with self._guard(f"load {collection} row"):
            return await self.db[collection].find_one({"id": row_id}, NO_ID)

    async def find(self, collection: str, query: Dict, sort: Optional[List[Tuple[str, int]]] = None) -> List[Dict]:
        async with self._guard(f"load {collection}"):
            cursor = self.db[collection].find(query, NO_ID)
            if sort:
                cursor = cursor.sort(sort)
            return await cursor.to_list(length=None)

    async def list_by_product(self, collection: str, product_id: str, sort: Optional[List[Tuple[str, int]]] = None) -> List[Dict]:
        return await self.find(collection, {"product_id": product_id}, sort)

    async def update(self, collection: str, row_id: str, fields: Dict) -> Optional[Dict]:
        changes = dict(fields)
        changes.pop("id", None)
        changes["updated_at"] = datetime.now(timezone.utc)
        async with self._guard(f"update {collection} row"):
            return await self.db[collection].find_one_and_update(
                {"id": row_id},
                {"$set": changes},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )

    async def delete(self, collection: str, row_id: str) -> int:
        async with self._guard(f"delete {collection} row"):
            result = await self.db[collection].delete_one({"id": row_id})
        return result.deleted_count

    async def count_by_product(self, collection: str, product_id: str) -> int:
        async with self._guard(f"count {collection}"):
            return await self.db[collection].count_documents({"product_id": product_id})

    async def max_position(self, collection: str, product_id: str) -> int:
        rows = await self.find(collection, {"product_id": product_id}, [("position", DESCENDING)])
        if not rows:
            return 0
        return int(rows[0].get("position") or 0)

    # -----------------------
    # Products and PRDs
    # -----------------------
    async def get_product(self, product_id: str) -> Optional[Dict]:
        return await self.get(PRODUCTS, product_id)

    async def list_products(self, user_id: str) -> List[Dict]:
        return await self.find(PRODUCTS, {"user_id": user_id}, [("updated_at", DESCENDING)])

    async def slug_taken(self, user_id: str, slug: str) -> bool:
        async with self._guard("check product slug"):
            return await self.db[PRODUCTS].count_documents({"user_id": user_id, "slug": slug}) > 0

    async def get_prd(self, product_id: str) -> Optional[Dict]:
        async with self._guard("load PRD"):
            return await self.db[PRDS].find_one({"product_id": product_id}, NO_ID)

    async def update_prd(self, product_id: str, fields: Dict) -> Optional[Dict]:
        prd = await self.get_prd(product_id)
        if prd is None:
            return None
        return await self.update(PRDS, prd["id"], fields)

    async def delete_product(self, product_id: str) -> int:
        async with self._guard("delete product"):
            for name in PRODUCT_COLLECTIONS:
                await self.db[name].delete_many({"product_id": product_id})
            result = await self.db[PRODUCTS].delete_one({"id": product_id})
        return result.deleted_count

    async def replace_customer_profiles(self, product_id: str, profiles: List[BaseModel]) -> List[Dict]:
        async with self._guard("replace customer profiles"):
            await self.db[CUSTOMER_PROFILES].delete_many({"product_id": product_id})
        return await self.insert_many(CUSTOMER_PROFILES, profiles)

    async def select_customer_profile(self, product_id: str, profile_id: str) -> Optional[Dict]:
        async with self._guard("select customer profile"):
            await self.db[CUSTOMER_PROFILES].update_many(
                {"product_id": product_id, "id": {"$ne": profile_id}},
                {"$set": {"is_selected": False}},
            )
        return await self.update(CUSTOMER_PROFILES, profile_id, {"is_selected": True})

    # -----------------------
    # Flow graph
    # -----------------------
    async def list_flow_pages(self, product_id: str, flow_version: str) -> List[Dict]:
        return await self.find(
            FLOW_PAGES,
            {"product_id": product_id, "flow_version": flow_version},
            [("created_at", ASCENDING)],
        )

    async def list_flow_connections(self, product_id: str, flow_version: str) -> List[Dict]:
        return await self.find(
            FLOW_CONNECTIONS,
            {"product_id": product_id, "flow_version": flow_version},
            [("created_at", ASCENDING)],
        )

    async def delete_flow_page(self, page_id: str) -> int:
        """Delete a page and the connections that reference it."""
        async with self._guard("delete flow page"):
            await self.db[FLOW_CONNECTIONS].delete_many(
                {"$or": [{"source_id": page_id}, {"target_id": page_id}]}
            )
            result = await self.db[FLOW_PAGES].delete_one({"id": page_id})
        return result.deleted_count

    async def delete_flow_version(self, product_id: str, flow_version: str) -> None:
        query = {"product_id": product_id, "flow_version": flow_version}
        async with self._guard("discard staged flow"):
            await self.db[FLOW_CONNECTIONS].delete_many(query)
            await self.db[FLOW_PAGES].delete_many(query)

    async def activate_flow_version(self, product_id: str, flow_version: str) -> None:
        """Point the product at a staged flow and drop every other version."""
        async with self._guard("activate flow"):
            await self.db[PRODUCTS].update_one(
                {"id": product_id},
                {"$set": {"flow_version": flow_version, "updated_at": datetime.now(timezone.utc)}},
            )
        stale = {"product_id": product_id, "flow_version": {"$ne": flow_version}}
        try:
            async with self._guard("clean up old flow"):
                await self.db[FLOW_CONNECTIONS].delete_many(stale)
                await self.db[FLOW_PAGES].delete_many(stale)
        except StoreError:
            # the active pointer already moved; leftovers are invisible to readers
            logger.warning("[DB][WARN] stale flow rows left for product %s", product_id)

    # -----------------------
    # Audit log
    # -----------------------
    async def insert_openai_log(self, log: BaseModel) -> Dict:
        return await self.insert(OPENAI_LOGS, log)
