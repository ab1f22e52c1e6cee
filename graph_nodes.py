import logging
from typing import Any, Dict, List

from langgraph.types import interrupt

from state import FlowGenerationState

logger = logging.getLogger(__name__)


def pick_pages(suggested: List[Dict[str, Any]], selection: List[Any]) -> List[Dict[str, Any]]:
    """Resolve a selection given as page names or page dicts against the proposals."""
    by_name = {p["name"]: p for p in suggested}
    picked = []
    for item in selection or []:
        if isinstance(item, dict):
            name = item.get("name")
            picked.append({**by_name.get(name, {}), **item})
        elif item in by_name:
            picked.append(by_name[item])
    return picked


class FlowGenerationNodes:
    """Nodes of the flow generation workflow, bound to the services they call."""

    def __init__(self, llm: Any, editors: Any):
        self.llm = llm
        self.editors = editors

    async def flow_generator(self, state: FlowGenerationState) -> Dict[str, Any]:
        pages = state.get("suggested_pages")
        if pages:
            logger.info("[FLOW] run %s starts from %d given pages", state["run_id"], len(pages))
        else:
            pages = await self.llm.generate_user_flow(state.get("product_context", {}), state.get("features", []))
            logger.info("[FLOW] run %s generated %d pages", state["run_id"], len(pages))
        return {
            "suggested_pages": pages,
            "current_stage": "select",
            "checkpoint_reason": "Select the pages to keep and add optional requirements",
        }

    async def page_selection(self, state: FlowGenerationState) -> Dict[str, Any]:
        value = interrupt({
            "stage": "select",
            "message": state.get("checkpoint_reason", ""),
            "pages": state.get("suggested_pages", []),
        })
        selected = pick_pages(state.get("suggested_pages", []), value.get("selected_pages"))
        requirements = (value.get("additional_requirements") or "").strip()
        update: Dict[str, Any] = {
            "selected_pages": selected,
            "additional_requirements": requirements,
            "final_pages": selected,
        }
        update["current_stage"] = "refine" if requirements else "layout"
        return update

    async def flow_refiner(self, state: FlowGenerationState) -> Dict[str, Any]:
        refinement = await self.llm.refine_user_flow(
            state.get("product_context", {}),
            state.get("features", []),
            state["selected_pages"],
            state["additional_requirements"],
        )
        return {
            "refinement": refinement,
            "current_stage": "review_refinement",
            "checkpoint_reason": "Review the suggested changes",
        }

    async def refinement_review(self, state: FlowGenerationState) -> Dict[str, Any]:
        refinement = state.get("refinement") or {}
        value = interrupt({
            "stage": "review_refinement",
            "message": state.get("checkpoint_reason", ""),
            "pages": refinement.get("pages", []),
            "changes": refinement.get("changes", {}),
        })
        if value.get("accept", True):
            final_pages = refinement.get("pages") or state["selected_pages"]
        else:
            final_pages = state["selected_pages"]
        return {"final_pages": final_pages, "current_stage": "layout"}

    async def layout_generator(self, state: FlowGenerationState) -> Dict[str, Any]:
        layout = await self.llm.generate_flow_layout(state["final_pages"], state.get("flow_pattern", "auto"))
        return {"layout": layout}

    async def layout_applier(self, state: FlowGenerationState) -> Dict[str, Any]:
        editor = await self.editors.get(state["product_id"])
        counts = await editor.apply_layout(state["final_pages"], state["layout"])
        return {"applied": counts, "current_stage": "applied", "checkpoint_reason": ""}
