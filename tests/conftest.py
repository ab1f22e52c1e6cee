from typing import Any, Iterable, Tuple

import fakeredis
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from mongomock_motor import AsyncMongoMockClient

from database.database import FLOW_CONNECTIONS, FLOW_PAGES, PRDS, PRODUCTS, MongoDBService
from database.models import FlowConnectionRecord, FlowPageRecord, PRDDocument, Product
from database.redis import RedisService
from llm import LLMInterface
from normalizers import slugify


class FailingChatModel(FakeListChatModel):
    """Chat model that raises ``error`` on every call."""

    error: Any = None

    def _call(self, *args: Any, **kwargs: Any) -> str:
        raise self.error


@pytest.fixture
def store() -> MongoDBService:
    return MongoDBService(AsyncMongoMockClient(), "test_workspace")


@pytest.fixture
def cache() -> RedisService:
    return RedisService(fakeredis.FakeAsyncRedis(decode_responses=True))


@pytest.fixture
def failing_model():
    def _make(error: BaseException) -> FailingChatModel:
        return FailingChatModel(responses=["unused"], error=error)

    return _make


@pytest.fixture
def make_llm(store):
    """Build an LLMInterface whose models answer from canned responses."""

    def _make(responses: Iterable[str] = ("{}",), fast_responses: Iterable[str] = ("ok",), model: Any = None) -> LLMInterface:
        return LLMInterface(
            model=model or FakeListChatModel(responses=list(responses)),
            fast_model=FakeListChatModel(responses=list(fast_responses)),
            store=store,
        )

    return _make


@pytest.fixture
def seed(store):
    """Insert a product with flow pages ``(name, x, y)`` and connections ``(source, target)``.

    Returns the product id and a map of page names (and ``"A->B"`` keys) to row ids.
    """

    async def _seed(
        pages: Iterable[Tuple[str, float, float]] = (),
        connections: Iterable[Tuple[str, str]] = (),
        user_id: str = "u1",
        name: str = "Flowboard",
    ):
        product = Product(user_id=user_id, name=name, slug=slugify(name), description="Flow editor for product managers")
        await store.insert(PRODUCTS, product)
        await store.insert(PRDS, PRDDocument(product_id=product.id, problem="<p>Specs drift from designs</p>"))

        ids = {}
        for page_name, x, y in pages:
            record = FlowPageRecord(
                product_id=product.id,
                flow_version=product.flow_version,
                name=page_name,
                description=f"{page_name} page",
                position_x=x,
                position_y=y,
            )
            await store.insert(FLOW_PAGES, record)
            ids[page_name] = record.id
        for source, target in connections:
            record = FlowConnectionRecord(
                product_id=product.id,
                flow_version=product.flow_version,
                source_id=ids[source],
                target_id=ids[target],
            )
            await store.insert(FLOW_CONNECTIONS, record)
            ids[f"{source}->{target}"] = record.id
        return product.id, ids

    return _seed
