"""
Plan builder: orders changes into batches that respect `depends_on`.

Validation (all before any provider call):
  - duplicate (target, kind, identity)    -> DuplicateResource
  - depends_on naming an undeclared ref   -> UnknownDependency
  - present resource needing absent one   -> DependencyConflict
  - cycle                                 -> CyclicDependency (one offending edge)

Ordering is a layered topological sort (Kahn): each batch holds every node whose
prerequisites all sit in earlier batches, sorted by (kind, identity, target).

Deletions run in reverse: when a dependant and its prerequisite are both marked
absent, the dependant is removed first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import CyclicDependency, DependencyConflict, DuplicateResource, UnknownDependency
from .resources import Change, ChangeKind, Resource, ResourceRef

Edge = Tuple[ResourceRef, ResourceRef]


def _sorted(refs: Iterable[ResourceRef]) -> List[ResourceRef]:
    return sorted(refs, key=lambda r: r.sort_key)


@dataclass(frozen=True)
class DependencyGraph:
    """Validated graph. `edges` maps prerequisite -> dependants, in execution order."""

    resources: Mapping[ResourceRef, Resource]
    edges: Mapping[ResourceRef, FrozenSet[ResourceRef]]


@dataclass(frozen=True)
class Batch:
    """Changes with no dependency edges between them."""

    index: int
    changes: Tuple[Change, ...]

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def refs(self) -> List[ResourceRef]:
        return [c.ref for c in self.changes]


@dataclass(frozen=True)
class Plan:
    batches: Tuple[Batch, ...]
    prerequisites: Mapping[ResourceRef, FrozenSet[ResourceRef]] = field(default_factory=dict)
    fetch_failures: Mapping[ResourceRef, Any] = field(default_factory=dict)

    @property
    def changes(self) -> List[Change]:
        return [c for b in self.batches for c in b.changes]

    @property
    def pending(self) -> List[Change]:
        """Changes that would touch the system (everything but NOOP)."""
        return [c for c in self.changes if not c.is_noop]

    @property
    def has_changes(self) -> bool:
        return bool(self.pending)

    @property
    def has_unknown(self) -> bool:
        return any(c.kind is ChangeKind.UNKNOWN for c in self.changes)

    def batch_index(self, ref: ResourceRef) -> int:
        for b in self.batches:
            if ref in b.refs:
                return b.index
        raise KeyError(str(ref))

    def summary(self) -> Dict[str, int]:
        counts = {k.value: 0 for k in ChangeKind}
        for c in self.changes:
            counts[c.kind.value] += 1
        counts["batches"] = len(self.batches)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "batches": [
                {
                    "index": b.index,
                    "changes": [
                        {**c.to_dict(), "after": [str(p) for p in _sorted(self.prerequisites.get(c.ref, ()))]}
                        for c in b.changes
                    ],
                }
                for b in self.batches
            ],
        }


class PlanBuilder:
    """Owns plan construction. Never returns a partial plan."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.log = logger or logging.getLogger("fs.planner")

    def validate(self, resources: Iterable[Resource]) -> DependencyGraph:
        nodes: Dict[ResourceRef, Resource] = {}
        for res in resources:
            if res.ref in nodes:
                raise DuplicateResource(res.ref)
            nodes[res.ref] = res

        edges: Dict[ResourceRef, Set[ResourceRef]] = {ref: set() for ref in nodes}
        for ref in _sorted(nodes):
            res = nodes[ref]
            for dep in _sorted(res.depends_on):
                if dep == ref:
                    raise CyclicDependency((dep, ref))
                prereq = nodes.get(dep)
                if prereq is None:
                    raise UnknownDependency(ref, dep)
                if prereq.absent and not res.absent:
                    raise DependencyConflict(ref, dep)
                if prereq.absent and res.absent:
                    edges[ref].add(dep)  # remove the dependant first
                else:
                    edges[dep].add(ref)

        graph = DependencyGraph(
            resources=nodes,
            edges={k: frozenset(v) for k, v in edges.items()},
        )
        # surfaces cycles now, before anything is fetched
        self._layers(graph)
        return graph

    def build(
        self,
        graph: DependencyGraph,
        changes: Mapping[ResourceRef, Change],
        fetch_failures: Optional[Mapping[ResourceRef, Any]] = None,
    ) -> Plan:
        missing = [str(r) for r in _sorted(graph.resources) if r not in changes]
        if missing:
            raise ValueError(f"No change computed for: {', '.join(missing)}")

        batches = tuple(
            Batch(index=i, changes=tuple(changes[ref] for ref in layer))
            for i, layer in enumerate(self._layers(graph))
        )
        prereqs: Dict[ResourceRef, FrozenSet[ResourceRef]] = {ref: frozenset() for ref in graph.resources}
        for p, deps in graph.edges.items():
            for d in deps:
                prereqs[d] = prereqs[d] | {p}

        plan = Plan(batches=batches, prerequisites=prereqs, fetch_failures=dict(fetch_failures or {}))
        self.log.info(
            "Plan built: %d resource(s) in %d batch(es), %d pending change(s)",
            len(graph.resources), len(batches), len(plan.pending),
        )
        return plan

    # ---------------- internals ----------------

    @staticmethod
    def _layers(graph: DependencyGraph) -> List[List[ResourceRef]]:
        indegree: Dict[ResourceRef, int] = {ref: 0 for ref in graph.resources}
        for deps in graph.edges.values():
            for d in deps:
                indegree[d] += 1

        layers: List[List[ResourceRef]] = []
        ready = _sorted(r for r, n in indegree.items() if n == 0)
        done = 0
        while ready:
            layers.append(ready)
            done += len(ready)
            nxt: List[ResourceRef] = []
            for ref in ready:
                for d in graph.edges.get(ref, ()):
                    indegree[d] -= 1
                    if indegree[d] == 0:
                        nxt.append(d)
            ready = _sorted(nxt)

        if done != len(indegree):
            remaining = {r for r, n in indegree.items() if n > 0}
            raise CyclicDependency(PlanBuilder._cycle_edge(graph, remaining))
        return layers

    @staticmethod
    def _cycle_edge(graph: DependencyGraph, remaining: Set[ResourceRef]) -> Edge:
        """Walk backwards through unresolved predecessors until a node repeats."""
        preds: Dict[ResourceRef, List[ResourceRef]] = {r: [] for r in remaining}
        for p, deps in graph.edges.items():
            if p not in remaining:
                continue
            for d in deps:
                if d in remaining:
                    preds[d].append(p)

        cur = _sorted(remaining)[0]
        seen = {cur}
        while True:
            pred = _sorted(preds[cur])[0]
            if pred in seen:
                return (pred, cur)
            seen.add(pred)
            cur = pred
