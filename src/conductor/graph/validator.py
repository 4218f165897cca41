from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

from conductor.errors import GraphValidationError
from conductor.graph.model import Graph

Severity = Literal["error", "warning"]

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(slots=True)
class ValidationIssue:
    code: str
    message: str
    ids: list[str] = field(default_factory=list)
    severity: Severity = "error"

    def __str__(self) -> str:
        return f"{self.severity}: {self.message}"


def _required_fields(graph: Graph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    def missing(name: str, context: str, ids: list[str] | None = None) -> None:
        issues.append(
            ValidationIssue(
                "missing_field",
                f"missing required field {name!r} in {context}",
                ids or [],
            )
        )

    if not graph.schema_version:
        missing("schema_version", "root")
    if not graph.name:
        missing("name", "dag")
    if not graph.layers:
        missing("layers", "root (at least one layer required)")
    for index, layer in enumerate(graph.layers):
        if not layer.id:
            missing("id", f"layer at index {index}")
        if not layer.features:
            missing("features", f"layer {layer.id!r}", [layer.id])
        for position, feature in enumerate(layer.features):
            if not feature.id:
                missing("id", f"feature at layer {layer.id!r} index {position}", [layer.id])
            elif not feature.description:
                missing("description", f"feature {feature.id!r}", [feature.id])
    return issues


def _uniqueness(graph: Graph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    seen_layers: set[str] = set()
    for layer in graph.layers:
        if layer.id and layer.id in seen_layers:
            issues.append(
                ValidationIssue("duplicate_layer", f"duplicate layer ID {layer.id!r}", [layer.id])
            )
        seen_layers.add(layer.id)

    first_layer: dict[str, str] = {}
    for layer in graph.layers:
        for feature in layer.features:
            if not feature.id:
                continue
            if feature.id in first_layer:
                issues.append(
                    ValidationIssue(
                        "duplicate_feature",
                        f"duplicate feature ID {feature.id!r} (first defined in layer "
                        f"{first_layer[feature.id]!r}, duplicate in layer {layer.id!r})",
                        [feature.id],
                    )
                )
                continue
            first_layer[feature.id] = layer.id
    return issues


def _references(graph: Graph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    layer_ids = [layer.id for layer in graph.layers]
    known_layers = set(layer_ids)
    for layer in graph.layers:
        for dep in layer.depends_on:
            if dep not in known_layers:
                issues.append(
                    ValidationIssue(
                        "unknown_layer",
                        f"layer {layer.id!r} depends on non-existent layer {dep!r}; "
                        f"valid layers: [{', '.join(layer_ids)}]",
                        [layer.id, dep],
                    )
                )

    known_features = set(graph.feature_ids())
    for feature in graph.features():
        for dep in feature.depends_on:
            if dep not in known_features:
                issues.append(
                    ValidationIssue(
                        "unknown_feature",
                        f"feature {feature.id!r} depends on non-existent feature {dep!r}",
                        [feature.id, dep],
                    )
                )
    return issues


def find_cycles(order: Iterable[str], edges: dict[str, list[str]]) -> list[list[str]]:
    """Three-colour depth-first search over ``edges`` visiting roots in ``order``.

    Each returned path starts and ends with the same node, e.g. ``[a, b, a]``.
    Edges to nodes missing from ``edges`` are ignored.
    """
    colour: dict[str, int] = {node: _UNVISITED for node in edges}
    cycles: list[list[str]] = []

    for root in order:
        if colour.get(root, _DONE) != _UNVISITED:
            continue
        path: list[str] = [root]
        colour[root] = _IN_PROGRESS
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, next_index = stack[-1]
            targets = edges.get(node, [])
            if next_index >= len(targets):
                stack.pop()
                path.pop()
                colour[node] = _DONE
                continue
            stack[-1] = (node, next_index + 1)
            target = targets[next_index]
            state = colour.get(target)
            if state is None or state == _DONE:
                continue
            if state == _IN_PROGRESS:
                start = path.index(target)
                cycles.append([*path[start:], target])
                continue
            colour[target] = _IN_PROGRESS
            path.append(target)
            stack.append((target, 0))
    return cycles


def _cycles(graph: Graph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    feature_edges: dict[str, list[str]] = {}
    for feature in graph.features():
        feature_edges.setdefault(feature.id, list(feature.depends_on))
    for cycle in find_cycles(graph.feature_ids(), feature_edges):
        issues.append(
            ValidationIssue(
                "feature_cycle",
                f"cycle detected in feature dependencies: {' -> '.join(cycle)}",
                cycle[:-1],
            )
        )

    layer_edges: dict[str, list[str]] = {}
    for layer in graph.layers:
        layer_edges.setdefault(layer.id, list(layer.depends_on))
    for cycle in find_cycles([layer.id for layer in graph.layers], layer_edges):
        issues.append(
            ValidationIssue(
                "layer_cycle",
                f"cycle detected in layer dependencies: {' -> '.join(cycle)}",
                cycle[:-1],
            )
        )
    return issues


def _layer_closure(graph: Graph) -> dict[str, set[str]]:
    direct = {layer.id: list(layer.depends_on) for layer in graph.layers}
    closure: dict[str, set[str]] = {}
    for layer_id in direct:
        seen: set[str] = set()
        pending = list(direct[layer_id])
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(direct.get(current, []))
        closure[layer_id] = seen
    return closure


def _layer_consistency(graph: Graph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    closure = _layer_closure(graph)
    owner: dict[str, str] = {}
    for layer in graph.layers:
        for feature in layer.features:
            owner.setdefault(feature.id, layer.id)

    for layer in graph.layers:
        for feature in layer.features:
            for dep in feature.depends_on:
                dep_layer = owner.get(dep)
                if dep_layer is None or dep_layer == layer.id:
                    continue
                if dep_layer not in closure.get(layer.id, set()):
                    issues.append(
                        ValidationIssue(
                            "layer_inconsistency",
                            f"feature {feature.id!r} in layer {layer.id!r} depends on "
                            f"{dep!r} in layer {dep_layer!r}, which layer {layer.id!r} "
                            "does not depend on",
                            [feature.id, dep],
                            severity="warning",
                        )
                    )
    return issues


def validate(graph: Graph) -> list[ValidationIssue]:
    """Run every structural check and return all issues found, errors first."""
    issues: list[ValidationIssue] = []
    issues.extend(_required_fields(graph))
    issues.extend(_uniqueness(graph))
    issues.extend(_references(graph))
    issues.extend(_cycles(graph))
    issues.extend(_layer_consistency(graph))
    issues.sort(key=lambda issue: 0 if issue.severity == "error" else 1)
    return issues


def errors_only(issues: Iterable[ValidationIssue]) -> list[ValidationIssue]:
    return [issue for issue in issues if issue.severity == "error"]


def ensure_valid(graph: Graph) -> list[ValidationIssue]:
    """Raise :class:`GraphValidationError` on any error; return the warnings otherwise."""
    issues = validate(graph)
    if errors_only(issues):
        raise GraphValidationError(issues)
    return issues
