from state import FlowGenerationState


def route_after_selection(state: FlowGenerationState) -> str:
    """Refine only when the user asked for changes"""
    if (state.get("additional_requirements") or "").strip():
        return "flow_refiner"
    return "layout_generator"
