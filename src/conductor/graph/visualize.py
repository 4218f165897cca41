from __future__ import annotations

from conductor.graph.model import Graph


def execution_waves(graph: Graph) -> list[list[str]]:
    """Group features into the waves an unbounded scheduler would dispatch.

    Each wave holds the features whose dependencies all sit in earlier waves,
    in declaration order. Features that can never become ready (cycles or
    unknown dependencies) are left out.
    """
    remaining = graph.features()
    known = set(graph.feature_ids())
    placed: set[str] = set()
    waves: list[list[str]] = []
    while remaining:
        wave = [
            feature.id
            for feature in remaining
            if all(dep in placed for dep in feature.depends_on if dep in known)
            and all(dep in known for dep in feature.depends_on)
        ]
        if not wave:
            break
        waves.append(wave)
        placed.update(wave)
        remaining = [feature for feature in remaining if feature.id not in placed]
    return waves


def render_graph(graph: Graph) -> str:
    lines = [f"DAG: {graph.name or '(unnamed)'}"]
    if graph.schema_version:
        lines.append(f"Schema: {graph.schema_version}")
    lines.append("")
    for layer in graph.layers:
        title = f"[{layer.id}]"
        if layer.name:
            title += f" {layer.name}"
        if layer.depends_on:
            title += f" (after {', '.join(layer.depends_on)})"
        lines.append(title)
        for index, feature in enumerate(layer.features):
            branch = "└──" if index == len(layer.features) - 1 else "├──"
            entry = f"  {branch} {feature.id}"
            if feature.depends_on:
                entry += f" <- {', '.join(feature.depends_on)}"
            if feature.timeout:
                entry += f" [timeout {feature.timeout}]"
            lines.append(entry)
        lines.append("")

    waves = execution_waves(graph)
    if waves:
        lines.append("Execution waves:")
        for number, wave in enumerate(waves, start=1):
            lines.append(f"  {number}. {', '.join(wave)}")
    return "\n".join(lines).rstrip() + "\n"
