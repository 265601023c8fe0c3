"""Graph builder — constructs the LangGraph field pipeline topology.

Topology:

    START → aggregate ─┬─ "continue" → classify ─┬─ "continue" → match → END
                       └─ "failed"   → END       └─ "failed"   → END

Dispatching is deliberately outside the graph: the coordinator runs it
only after the graph completes, outside the cycle deadline.

The graph is compiled once per coordinator and invoked for every field.
"""

from __future__ import annotations

from langgraph.graph import END, START, StateGraph

from pasture_risk.graph.nodes import Node, match, route_after_stage
from pasture_risk.graph.state import FieldPipelineState


def build_field_graph(aggregate_node: Node, classify_node: Node, match_node: Node = match):
    """Construct and compile the per-field analysis graph.

    Args:
        aggregate_node: Node from ``make_aggregate_node``.
        classify_node: Node from ``make_classify_node``.
        match_node: Matching node (override for testing).

    Returns:
        A compiled LangGraph application.
    """
    graph = StateGraph(FieldPipelineState)

    # ── Register nodes ───────────────────────────────────────────────────
    graph.add_node("aggregate", aggregate_node)
    graph.add_node("classify", classify_node)
    graph.add_node("match", match_node)

    # ── Edges ────────────────────────────────────────────────────────────
    graph.add_edge(START, "aggregate")
    graph.add_conditional_edges(
        "aggregate",
        route_after_stage,
        {"continue": "classify", "failed": END},
    )
    graph.add_conditional_edges(
        "classify",
        route_after_stage,
        {"continue": "match", "failed": END},
    )
    graph.add_edge("match", END)

    return graph.compile()
