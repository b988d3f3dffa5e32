"""
Reconciler: orchestrates validate → fetch → diff → plan → execute → report.

The only entry point the CLI needs. Components are wired explicitly from the
configuration object; nothing is read from global state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional

from .differ import check_desired, diff
from .document import DesiredStateDocument
from .errors import SchemaError
from .executor import CancelToken, Executor, FetchFailure, TransitionObserver
from .planner import Plan, PlanBuilder
from .report import ReconciliationReport
from .resources import Change, ChangeKind, ResourceRef
from .schema import AttributeSchema

if TYPE_CHECKING:  # pragma: no cover
    from ..providers.registry import ProviderRegistry
    from .config import AppConfig


class Reconciler:
    def __init__(
        self,
        registry: "ProviderRegistry",
        schema: Optional[AttributeSchema] = None,
        config: Optional["AppConfig"] = None,
        logger: Optional[logging.LoggerAdapter] = None,
        *,
        concurrency: Optional[int] = None,
        on_transition: Optional[TransitionObserver] = None,
    ) -> None:
        self.registry = registry
        self.schema = schema or AttributeSchema()
        registry.use_schema(self.schema)
        self.config = config
        self.log = logger or logging.getLogger("fs.reconciler")
        if concurrency is None:
            concurrency = config.app.concurrency if config is not None else 4
        self.builder = PlanBuilder(logger=self.log)
        self.executor = Executor(registry, concurrency=concurrency, logger=self.log, on_transition=on_transition)

    @property
    def run_id(self) -> str:
        return self.config.run_id if self.config is not None else "adhoc"

    def plan(self, document: DesiredStateDocument, cancel: Optional[CancelToken] = None) -> Plan:
        """Validate, observe and diff every resource, then order the changes.

        A live value the schema cannot normalize only fails its own resource:
        the change is UNKNOWN and its dependants are blocked.

        Raises:
            ValidationError: duplicates, unknown dependencies, cycles,
                unregistered kinds, attributes a provider cannot store or a
                declared value the schema cannot normalize. Raised before any
                fetch.
        """
        graph = self.builder.validate(document.resources)
        self.registry.ensure_registered(document.kinds)
        self.registry.check_resources(graph.resources.values())
        for resource in graph.resources.values():
            check_desired(resource, self.schema)
        self.log.info("Document %s: %d resource(s) validated", document.source or "<memory>", len(document))

        observed, failures = self.executor.observe(graph.resources, cancel)

        changes: Dict[ResourceRef, Change] = {}
        for ref, resource in graph.resources.items():
            if ref in failures:
                f = failures[ref]
                changes[ref] = Change(ref=ref, kind=ChangeKind.UNKNOWN, reason=f"Fetch failed: {f.message}")
                continue
            try:
                changes[ref] = diff(resource, observed[ref], self.schema)
            except SchemaError as exc:
                self.log.warning("%s: observed value rejected: %s", ref, exc)
                failures[ref] = FetchFailure("SchemaError", f"Observed value rejected: {exc}", 1)
                changes[ref] = Change(ref=ref, kind=ChangeKind.UNKNOWN, reason=f"Observed value rejected: {exc}")

        return self.builder.build(graph, changes, fetch_failures=failures)

    def apply(self, document: DesiredStateDocument, cancel: Optional[CancelToken] = None) -> ReconciliationReport:
        cancel = cancel or CancelToken()
        plan = self.plan(document, cancel)
        run = self.executor.execute(plan, cancel)
        report = ReconciliationReport.from_run(self.run_id, run, plan)
        c = report.counts
        self.log.info(
            "Run %s: applied=%d failed=%d unchanged=%d skipped=%d (exit %d)",
            report.status.value, c["applied"], c["failed"], c["unchanged"], c["skipped"], report.exit_code(),
        )
        return report
