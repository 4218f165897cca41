from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from conductor.errors import GraphParseError


@dataclass(slots=True)
class Feature:
    id: str
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    timeout: str = ""


@dataclass(slots=True)
class Layer:
    id: str
    name: str = ""
    depends_on: list[str] = field(default_factory=list)
    features: list[Feature] = field(default_factory=list)


@dataclass(slots=True)
class GraphExecution:
    """Optional per-graph execution settings; ``None`` means "not set here"."""

    max_parallel: int | None = None
    timeout: str | None = None
    base_branch: str | None = None
    on_conflict: str | None = None
    max_retries: int | None = None

    def overrides(self) -> dict[str, Any]:
        return {
            "max_parallel": self.max_parallel,
            "timeout": self.timeout,
            "base_branch": self.base_branch,
            "on_conflict": self.on_conflict,
            "max_retries": self.max_retries,
        }


@dataclass(slots=True)
class Graph:
    name: str
    layers: list[Layer] = field(default_factory=list)
    schema_version: str = ""
    execution: GraphExecution = field(default_factory=GraphExecution)

    def features(self) -> list[Feature]:
        """All features in declaration order: layer order, then order within the layer."""
        return [feature for layer in self.layers for feature in layer.features]

    def feature_ids(self) -> list[str]:
        return [feature.id for feature in self.features()]

    def feature(self, feature_id: str) -> Feature:
        for feature in self.features():
            if feature.id == feature_id:
                return feature
        raise KeyError(feature_id)

    def layer_of(self, feature_id: str) -> Layer | None:
        for layer in self.layers:
            if any(feature.id == feature_id for feature in layer.features):
                return layer
        return None

    def dependents(self) -> dict[str, list[str]]:
        """Reverse adjacency: feature ID -> IDs of features that depend on it."""
        reverse: dict[str, list[str]] = {feature_id: [] for feature_id in self.feature_ids()}
        for feature in self.features():
            for dep in feature.depends_on:
                reverse.setdefault(dep, []).append(feature.id)
        return reverse

    def transitive_dependents(self, feature_id: str) -> list[str]:
        reverse = self.dependents()
        seen: set[str] = set()
        ordered: list[str] = []
        queue = deque(reverse.get(feature_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            ordered.append(current)
            queue.extend(reverse.get(current, []))
        return ordered


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_id_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str | int | float):
        return [_as_str(value)]
    if not isinstance(value, list):
        raise GraphParseError(f"{where}: depends_on must be a list of IDs")
    return [_as_str(item) for item in value]


def _as_mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise GraphParseError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _optional_int(value: Any, where: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise GraphParseError(f"{where}: expected an integer, got {value!r}")
    return value


def _parse_feature(raw: Any, where: str) -> Feature:
    data = _as_mapping(raw, where)
    return Feature(
        id=_as_str(data.get("id")),
        description=_as_str(data.get("description")),
        depends_on=_as_id_list(data.get("depends_on"), where),
        timeout=_as_str(data.get("timeout")),
    )


def _parse_layer(raw: Any, index: int) -> Layer:
    where = f"layers[{index}]"
    data = _as_mapping(raw, where)
    raw_features = data.get("features") or []
    if not isinstance(raw_features, list):
        raise GraphParseError(f"{where}: features must be a list")
    return Layer(
        id=_as_str(data.get("id")),
        name=_as_str(data.get("name")),
        depends_on=_as_id_list(data.get("depends_on"), where),
        features=[
            _parse_feature(item, f"{where}.features[{position}]")
            for position, item in enumerate(raw_features)
        ],
    )


def _parse_execution(raw: Any) -> GraphExecution:
    data = _as_mapping(raw, "execution")
    return GraphExecution(
        max_parallel=_optional_int(data.get("max_parallel"), "execution.max_parallel"),
        timeout=_as_str(data["timeout"]) if data.get("timeout") is not None else None,
        base_branch=_as_str(data["base_branch"]) if data.get("base_branch") else None,
        on_conflict=_as_str(data["on_conflict"]) if data.get("on_conflict") else None,
        max_retries=_optional_int(data.get("max_retries"), "execution.max_retries"),
    )


def parse_graph(raw: str) -> Graph:
    """Parse a YAML dependency graph document into a :class:`Graph`.

    Only structural problems are reported here; semantic checks live in
    :func:`conductor.graph.validator.validate`.
    """
    try:
        document = yaml.safe_load(raw)
    except yaml.MarkedYAMLError as exc:
        mark = exc.problem_mark
        raise GraphParseError(
            f"Invalid YAML: {exc.problem or exc}",
            line=mark.line + 1 if mark is not None else None,
            column=mark.column + 1 if mark is not None else None,
        ) from exc
    except yaml.YAMLError as exc:
        raise GraphParseError(f"Invalid YAML: {exc}") from exc

    if document is None:
        raise GraphParseError("Graph document is empty")
    data = _as_mapping(document, "document")
    meta = _as_mapping(data.get("dag"), "dag")
    raw_layers = data.get("layers") or []
    if not isinstance(raw_layers, list):
        raise GraphParseError("layers must be a list")

    return Graph(
        name=_as_str(meta.get("name")),
        schema_version=_as_str(data.get("schema_version")),
        layers=[_parse_layer(item, index) for index, item in enumerate(raw_layers)],
        execution=_parse_execution(data.get("execution")),
    )


def load_graph(path: Path) -> Graph:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise GraphParseError(f"Cannot read graph file {path}: {exc}") from exc
    return parse_graph(raw)
