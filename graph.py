from langgraph.graph import StateGraph, START, END
from state import FlowGenerationState
from graph_nodes import FlowGenerationNodes
from graph_router import route_after_selection


def create_flow_generation_graph(nodes: FlowGenerationNodes):
    """Create the flow generation graph with human-in-the-loop selection and review"""

    workflow = StateGraph(FlowGenerationState)

    workflow.add_node("flow_generator", nodes.flow_generator)
    workflow.add_node("page_selection", nodes.page_selection)
    workflow.add_node("flow_refiner", nodes.flow_refiner)
    workflow.add_node("refinement_review", nodes.refinement_review)
    workflow.add_node("layout_generator", nodes.layout_generator)
    workflow.add_node("layout_applier", nodes.layout_applier)

    workflow.add_edge(START, "flow_generator")

    # Always wait for the user to pick pages
    workflow.add_edge("flow_generator", "page_selection")

    # From page_selection: refine when requirements were given, else lay out directly
    workflow.add_conditional_edges("page_selection", route_after_selection, ["flow_refiner", "layout_generator"])

    # From flow_refiner: wait for the user to accept or revert
    workflow.add_edge("flow_refiner", "refinement_review")
    workflow.add_edge("refinement_review", "layout_generator")

    workflow.add_edge("layout_generator", "layout_applier")
    workflow.add_edge("layout_applier", END)

    return workflow
