"""
Cross-document dependency analysis.

Builds a directed graph over a collection (edge A -> B when A lists B in
related_documents) and reports cycles. Cycles are advisory: two features
may legitimately need each other's context, so nothing here raises or
blocks progress.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.pm.documents import document_sort_key
from storyloop.pm.models import Document

logger = logging.getLogger(__name__)


@dataclass
class DependencyCycle:
    """A reference cycle, in discovery order. The last node links back to the first."""
    paths: list[Path]
    features: list[str]

    def describe(self) -> str:
        return " -> ".join(self.features + self.features[:1])


@dataclass
class DependencyReport:
    cycles: list[DependencyCycle] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)


def build_graph(documents: list[Document]) -> tuple[dict[Path, list[Path]], list[str]]:
    """Adjacency lists keyed by resolved document path, plus reference warnings.

    Edges keep declaration order. References to files outside the
    collection produce a warning and no edge.
    """
    by_path = {d.path.resolve(): d for d in documents}
    graph: dict[Path, list[Path]] = {}
    warnings = []

    for document in sorted(documents, key=document_sort_key):
        node = document.path.resolve()
        edges = graph.setdefault(node, [])
        for ref in document.related_documents:
            target = document.resolve_reference(ref)
            if target not in by_path:
                warnings.append(f"{document.feature}: related document '{ref}' not found in collection")
                continue
            if target not in edges:
                edges.append(target)

    return graph, warnings


def _canonical(cycle: list[Path]) -> tuple[Path, ...]:
    """Rotation-independent key so the same cycle found twice is reported once."""
    start = min(range(len(cycle)), key=lambda i: str(cycle[i]))
    return tuple(cycle[start:] + cycle[:start])


def find_cycles(graph: dict[Path, list[Path]]) -> list[list[Path]]:
    """Every elementary cycle in the graph.

    Each node in graph order is taken as a root in turn. The search from a
    root only enters nodes that come after it, so every cycle is found once,
    starting from its earliest node.
    """
    order = {node: i for i, node in enumerate(graph)}
    seen: set[tuple[Path, ...]] = set()
    cycles = []

    def visit(root: Path, node: Path, path: list[Path], on_path: set[Path]) -> None:
        for target in graph.get(node, []):
            if target == root:
                key = _canonical(path)
                if key not in seen:
                    seen.add(key)
                    cycles.append(list(path))
            elif target not in on_path and order.get(target, -1) > order[root]:
                path.append(target)
                on_path.add(target)
                visit(root, target, path, on_path)
                path.pop()
                on_path.discard(target)

    for root in graph:
        visit(root, root, [root], {root})
    return cycles


def analyze(documents: list[Document]) -> DependencyReport:
    """Detect reference cycles across a collection.

    Returns every distinct cycle with one human-readable warning each,
    plus warnings for dangling references and duplicate identities.
    """
    report = DependencyReport()

    owners: dict[str, Path] = {}
    for document in sorted(documents, key=document_sort_key):
        if document.feature in owners:
            report.warnings.append(
                f"duplicate document identity '{document.feature}' in "
                f"{owners[document.feature].name} and {document.path.name}"
            )
        else:
            owners[document.feature] = document.path

    graph, ref_warnings = build_graph(documents)
    report.warnings.extend(ref_warnings)

    features = {d.path.resolve(): d.feature for d in documents}
    for cycle in find_cycles(graph):
        dep = DependencyCycle(paths=cycle, features=[features[p] for p in cycle])
        report.cycles.append(dep)
        report.warnings.append(f"dependency cycle: {dep.describe()}")

    for warning in report.warnings:
        logger.warning(f"[DEPS] {warning}")
    return report
