import uuid
import logging
from typing import Any, Dict, List, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.types import Command
from pymongo import ASCENDING

from database.database import FEATURES
from errors import NotFoundError, ValidationError, WorkspaceError
from graph import create_flow_generation_graph
from graph_nodes import FlowGenerationNodes, pick_pages
from llm import normalize_pages
from normalizers import strip_html
from prompts import FLOW_PATTERNS
from state import FlowGenerationState

logger = logging.getLogger(__name__)

SOURCES = ("generate", "current", "pages")


class FlowBuilder:
    """Runs the AI flow generation workflow, one checkpointed thread per run."""

    def __init__(self, store: Any, llm: Any, editors: Any, cache: Any = None, checkpointer: BaseCheckpointSaver | None = None):
        self.store = store
        self.editors = editors
        self.cache = cache
        self.workflow = create_flow_generation_graph(FlowGenerationNodes(llm, editors))
        self.checkpointer = checkpointer or InMemorySaver()
        self.app = self.workflow.compile(checkpointer=self.checkpointer)

    @staticmethod
    def _config(run_id: str) -> RunnableConfig:
        return {"configurable": {"thread_id": run_id}}

    async def _product_context(self, product_id: str) -> Dict[str, str]:
        product = await self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("Product not found.")
        prd = await self.store.get_prd(product_id) or {}
        return {
            "name": product.get("name", ""),
            "description": strip_html(product.get("description", "")),
            "problem": strip_html(prd.get("problem", "")),
            "solution": strip_html(prd.get("solution", "")),
            "target_audience": strip_html(prd.get("target_audience", "")),
        }

    async def _starting_pages(self, product_id: str, source: str, pages: Optional[List[Dict[str, Any]]], use_cache: bool) -> List[Dict[str, Any]]:
        if source == "current":
            editor = await self.editors.get(product_id)
            current = normalize_pages([n.to_dict() for n in editor.snapshot.nodes])
            if not current:
                raise ValidationError("There are no pages on this flow yet.")
            return current
        if source == "pages":
            given = normalize_pages(pages)
            if not given:
                raise ValidationError("Provide at least one page with a name.")
            return given
        if use_cache and self.cache is not None:
            cached = await self.cache.get_cached_flow_suggestion(product_id)
            if cached:
                logger.info("[FLOW] using cached suggestion for product %s", product_id)
                return cached
        return []

    async def start_run(
        self,
        product_id: str,
        source: str = "generate",
        pages: Optional[List[Dict[str, Any]]] = None,
        pattern: str = "auto",
        use_cache: bool = False,
    ) -> Dict[str, Any]:
        """Start a generation run and stop at the page selection step"""
        if source not in SOURCES:
            raise ValidationError(f"Unknown flow source '{source}'.")
        if pattern not in FLOW_PATTERNS:
            raise ValidationError(f"Unknown flow pattern '{pattern}'.")

        context = await self._product_context(product_id)
        features = await self.store.list_by_product(FEATURES, product_id, [("position", ASCENDING)])
        suggested = await self._starting_pages(product_id, source, pages, use_cache)

        run_id = str(uuid.uuid4())
        initial_state = FlowGenerationState(
            run_id=run_id,
            product_id=product_id,
            source=source,
            flow_pattern=pattern,
            product_context=context,
            features=[{"name": f["name"], "description": f.get("description", "")} for f in features],
            suggested_pages=suggested,
            selected_pages=[],
            additional_requirements="",
            refinement=None,
            final_pages=[],
            layout={},
            applied={},
            current_stage="generate",
            checkpoint_reason="",
        )
        try:
            result = await self.app.ainvoke(initial_state, config=self._config(run_id))
        except WorkspaceError as e:
            # the input is checkpointed, so resume_run can retry the failed step
            logger.warning("[FLOW][WARN] run %s stopped before page selection: %s", run_id, e.message)
            e.details["run_id"] = run_id
            raise

        if source == "generate" and not suggested and self.cache is not None:
            await self.cache.cache_flow_suggestion(product_id, result.get("suggested_pages", []))
        logger.info("[FLOW] started run %s for product %s", run_id, product_id)
        return await self.get_run(run_id)

    async def get_run(self, run_id: str) -> Dict[str, Any]:
        snapshot = await self.app.aget_state(self._config(run_id))
        if not snapshot.values:
            raise NotFoundError("Flow generation run not found.")
        values = snapshot.values
        waiting = [i.value for task in snapshot.tasks for i in task.interrupts]
        return {
            "run_id": run_id,
            "product_id": values.get("product_id"),
            "stage": values.get("current_stage"),
            "flow_pattern": values.get("flow_pattern"),
            "waiting_for": waiting[0] if waiting else None,
            "suggested_pages": values.get("suggested_pages", []),
            "selected_pages": values.get("selected_pages", []),
            "refinement": values.get("refinement"),
            "final_pages": values.get("final_pages", []),
            "layout": values.get("layout", {}),
            "applied": values.get("applied", {}),
            "done": not snapshot.next,
        }

    def _resume_value(self, stage: str, values: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        if stage == "select":
            selection = payload.get("selected_pages")
            if selection is None:
                selection = [p["name"] for p in values.get("suggested_pages", [])]
            if not pick_pages(values.get("suggested_pages", []), selection):
                raise ValidationError("Select at least one page.")
            return {
                "selected_pages": selection,
                "additional_requirements": payload.get("additional_requirements") or "",
            }
        if stage == "review_refinement":
            return {"accept": bool(payload.get("accept", True))}
        raise ValidationError("This run is not waiting for input.")

    async def resume_run(self, run_id: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Answer the pending question of a run, or retry the step that failed"""
        config = self._config(run_id)
        snapshot = await self.app.aget_state(config)
        if not snapshot.values:
            raise NotFoundError("Flow generation run not found.")
        if not snapshot.next:
            raise ValidationError("This flow generation run has already finished.")

        if any(task.interrupts for task in snapshot.tasks):
            resume = self._resume_value(snapshot.values.get("current_stage"), snapshot.values, payload or {})
            await self.app.ainvoke(Command(resume=resume), config=config)
        else:
            logger.info("[FLOW] retrying run %s at %s", run_id, snapshot.next)
            await self.app.ainvoke(None, config=config)
        return await self.get_run(run_id)
