from conductor.graph.model import Feature, Graph, GraphExecution, Layer, load_graph, parse_graph
from conductor.graph.validator import ValidationIssue, ensure_valid, errors_only, validate
from conductor.graph.visualize import execution_waves, render_graph

__all__ = [
    "Feature",
    "Graph",
    "GraphExecution",
    "Layer",
    "ValidationIssue",
    "ensure_valid",
    "errors_only",
    "execution_waves",
    "load_graph",
    "parse_graph",
    "render_graph",
    "validate",
]
