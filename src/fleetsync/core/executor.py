"""
Executor: runs a Plan against the state providers.

Per change:  pending -> applying -> (retrying -> applying)* -> applied | failed
             pending -> skipped (no change / upstream failure / cancelled)

- Batches run strictly one after another; changes inside a batch run on a
  thread pool, each provider kind capped by its own counting semaphore.
- A failed change never aborts its siblings. Changes depending on a failed (or
  upstream-skipped) change are skipped with UpstreamFailure and never applied.
- Every Fetch/Apply call runs under a per-call timeout; a timeout is a
  retryable ProviderUnavailable.
- Cancellation: attempts in flight finish, their pending retries are dropped,
  nothing new starts; the run is ABORTED.

The executor never writes to a system itself; side effects only happen inside
provider.apply().
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import CallTimeout, ProviderError
from .resources import Change, ChangeKind, ObservedState, ResourceKind, ResourceRef

if TYPE_CHECKING:  # pragma: no cover
    from ..providers.registry import ProviderRegistry
    from .planner import Plan

TransitionObserver = Callable[[ResourceRef, "ChangeState"], None]


class Outcome(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class SkipReason(str, Enum):
    NO_CHANGE = "NoChange"
    UPSTREAM_FAILURE = "UpstreamFailure"
    CANCELLED = "Cancelled"

    def __str__(self) -> str:
        return self.value


class ChangeState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    RETRYING = "retrying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff (attempt 1 is the first call)."""

    max_attempts: int = 3
    backoff_base_sec: float = 0.5
    max_backoff_sec: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, attempt: int) -> float:
        return min(self.max_backoff_sec, self.backoff_base_sec * (2 ** (attempt - 1)))


NO_RETRY = RetryPolicy(max_attempts=1, backoff_base_sec=0.0, max_backoff_sec=0.0)


class CancelToken:
    """Cooperative cancellation signal shared by the reconciler and executor."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout`; returns True early if cancelled."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ExecutionResult:
    """Final record for one change. Built once by the executor, never mutated."""

    change: Change
    outcome: Outcome
    attempts: int = 0
    error: str = ""
    error_type: str = ""
    skip_reason: Optional[SkipReason] = None
    duration_sec: float = 0.0

    @property
    def ref(self) -> ResourceRef:
        return self.change.ref

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.change.to_dict(),
            "outcome": self.outcome.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "attempts": self.attempts,
            "error_type": self.error_type or None,
            "error": self.error or None,
            "duration_sec": round(self.duration_sec, 3),
        }


@dataclass
class ExecutionRun:
    status: RunStatus
    results: List[ExecutionResult]
    started_at: datetime
    finished_at: datetime


@dataclass(frozen=True)
class Attempted:
    """Outcome of a retried provider call."""

    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    abandoned: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.abandoned


@dataclass(frozen=True)
class FetchFailure:
    """Why observed state for a resource could not be obtained."""

    error_type: str
    message: str
    attempts: int


def call_with_timeout(
    fn: Callable[[], Any],
    timeout_sec: Optional[float],
    *,
    on_exit: Optional[Callable[[], None]] = None,
) -> Any:
    """
    Run `fn` and wait at most `timeout_sec`. On timeout the call is abandoned on
    a daemon thread (providers are idempotent, a late finish is harmless) and
    CallTimeout is raised.

    `on_exit` runs once `fn` has really returned, which for an abandoned call
    is later than the CallTimeout.
    """
    if not timeout_sec or timeout_sec <= 0:
        try:
            return fn()
        finally:
            if on_exit:
                on_exit()

    box: Dict[str, Any] = {}

    def runner() -> None:
        try:
            box["value"] = fn()
        except Exception as exc:  # re-raised in the caller thread
            box["error"] = exc
        finally:
            if on_exit:
                on_exit()

    t = threading.Thread(target=runner, name="fs-call", daemon=True)
    try:
        t.start()
    except RuntimeError:
        if on_exit:
            on_exit()
        raise
    t.join(timeout_sec)
    if t.is_alive():
        raise CallTimeout(f"call exceeded {timeout_sec:.1f}s")
    if "error" in box:
        raise box["error"]
    return box.get("value")


def run_with_retry(
    fn: Callable[[], Any],
    *,
    policy: RetryPolicy,
    timeout_sec: Optional[float],
    slot: threading.Semaphore,
    cancel: CancelToken,
    log: Any,
    what: str,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Attempted:
    """
    Call `fn` until it succeeds, fails permanently, or attempts run out.

    The provider slot is held for each attempt only, not across backoff sleeps.
    An attempt keeps its slot until the provider call really returns, so a call
    abandoned after a timeout still counts against the kind's concurrency.
    Unexpected (non-provider) exceptions are never retried.
    """
    attempts = 0
    while True:
        attempts += 1
        slot.acquire()
        if attempts == 1 and cancel.cancelled:
            # waited for a slot and the run was cancelled meanwhile: never started
            slot.release()
            return Attempted(attempts=0, abandoned=True)
        try:
            value = call_with_timeout(fn, timeout_sec, on_exit=slot.release)
            return Attempted(value=value, attempts=attempts)
        except ProviderError as exc:
            err: BaseException = exc
            retryable = exc.retryable
        except Exception as exc:
            log.exception("%s raised unexpectedly: %s", what, exc)
            return Attempted(error=exc, attempts=attempts)

        if not retryable or attempts >= policy.max_attempts:
            return Attempted(error=err, attempts=attempts)

        delay = policy.delay(attempts)
        log.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s", what, attempts, policy.max_attempts, delay, err)
        if on_retry:
            on_retry(attempts, err)
        if cancel.wait(delay):
            log.warning("%s: retries abandoned after cancellation", what)
            return Attempted(error=err, attempts=attempts, abandoned=True)


class Executor:
    """Applies plans; also performs the bounded, retried fetches used to build them."""

    def __init__(
        self,
        registry: "ProviderRegistry",
        *,
        concurrency: int = 4,
        logger: Optional[logging.LoggerAdapter] = None,
        on_transition: Optional[TransitionObserver] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.registry = registry
        self.concurrency = concurrency
        self.log = logger or logging.getLogger("fs.executor")
        self._observer = on_transition
        self._slots: Dict[ResourceKind, threading.BoundedSemaphore] = {}
        self._slots_lock = threading.Lock()

    # ---------------- public API ----------------

    def observe(
        self,
        refs: Iterable[ResourceRef],
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[Dict[ResourceRef, ObservedState], Dict[ResourceRef, FetchFailure]]:
        """Fetch observed state for every ref (concurrently, per-kind limits apply)."""
        cancel = cancel or CancelToken()
        refs = list(refs)
        observed: Dict[ResourceRef, ObservedState] = {}
        failures: Dict[ResourceRef, FetchFailure] = {}
        if not refs:
            return observed, failures

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="fs-fetch") as pool:
            futures = {ref: pool.submit(self._fetch_one, ref, cancel) for ref in refs}
            for ref, fut in futures.items():
                res = fut.result()
                if isinstance(res, FetchFailure):
                    failures[ref] = res
                else:
                    observed[ref] = res
        self.log.info("Observed %d resource(s), %d fetch failure(s)", len(observed), len(failures))
        return observed, failures

    def execute(self, plan: "Plan", cancel: Optional[CancelToken] = None) -> ExecutionRun:
        cancel = cancel or CancelToken()
        started = datetime.now(timezone.utc)
        results: Dict[ResourceRef, ExecutionResult] = {}

        for change in plan.changes:
            self._transition(change.ref, ChangeState.PENDING)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="fs-exec") as pool:
            for batch in plan.batches:
                runnable: List[Change] = []
                for change in batch:
                    early = self._settle_without_apply(change, plan, results, cancel)
                    if early is not None:
                        self._finish(results, early)
                    else:
                        runnable.append(change)

                if runnable:
                    self.log.info("Batch %d: applying %d change(s)", batch.index, len(runnable))
                futures = [pool.submit(self._apply_one, change, cancel) for change in runnable]
                # barrier: batch N+1 starts only when every change here is terminal
                for fut in futures:
                    self._finish(results, fut.result())

        status = RunStatus.ABORTED if cancel.cancelled else RunStatus.COMPLETED
        ordered = [results[c.ref] for c in plan.changes]
        finished = datetime.now(timezone.utc)
        self.log.info("Execution %s: %d result(s)", status.value, len(ordered))
        return ExecutionRun(status=status, results=ordered, started_at=started, finished_at=finished)

    # ---------------- internals ----------------

    def _slot(self, kind: ResourceKind) -> threading.BoundedSemaphore:
        with self._slots_lock:
            if kind not in self._slots:
                limit = max(1, int(self.registry.for_kind(kind).policy.concurrency))
                self._slots[kind] = threading.BoundedSemaphore(limit)
            return self._slots[kind]

    def _transition(self, ref: ResourceRef, state: ChangeState) -> None:
        self.log.debug("%s -> %s", ref, state.value)
        if self._observer:
            self._observer(ref, state)

    def _finish(self, results: Dict[ResourceRef, ExecutionResult], res: ExecutionResult) -> None:
        results[res.ref] = res
        if res.outcome is Outcome.APPLIED:
            self._transition(res.ref, ChangeState.APPLIED)
        elif res.outcome is Outcome.FAILED:
            self._transition(res.ref, ChangeState.FAILED)
            self.log.error("%s failed after %d attempt(s): %s", res.ref, res.attempts, res.error)
        else:
            self._transition(res.ref, ChangeState.SKIPPED)
            if res.skip_reason is not SkipReason.NO_CHANGE:
                self.log.warning("%s skipped (%s) %s", res.ref, res.skip_reason, res.error)

    @staticmethod
    def _blocking(res: Optional[ExecutionResult]) -> bool:
        if res is None:
            return False
        if res.outcome is Outcome.FAILED:
            return True
        return res.outcome is Outcome.SKIPPED and res.skip_reason in (
            SkipReason.UPSTREAM_FAILURE,
            SkipReason.CANCELLED,
        )

    def _settle_without_apply(
        self,
        change: Change,
        plan: "Plan",
        results: Mapping[ResourceRef, ExecutionResult],
        cancel: CancelToken,
    ) -> Optional[ExecutionResult]:
        """Return a final result for changes that must not reach provider.apply()."""
        if cancel.cancelled:
            return ExecutionResult(change, Outcome.SKIPPED, skip_reason=SkipReason.CANCELLED)

        blocked = sorted(
            (p for p in plan.prerequisites.get(change.ref, ()) if self._blocking(results.get(p))),
            key=lambda r: r.sort_key,
        )
        if blocked:
            return ExecutionResult(
                change,
                Outcome.SKIPPED,
                skip_reason=SkipReason.UPSTREAM_FAILURE,
                error="blocked by " + ", ".join(str(b) for b in blocked),
            )

        if change.kind is ChangeKind.UNKNOWN:
            failure = plan.fetch_failures.get(change.ref)
            return ExecutionResult(
                change,
                Outcome.FAILED,
                attempts=failure.attempts if failure else 0,
                error=failure.message if failure else change.reason,
                error_type=failure.error_type if failure else "",
            )

        if change.is_noop:
            return ExecutionResult(change, Outcome.SKIPPED, skip_reason=SkipReason.NO_CHANGE)
        return None

    def _fetch_one(self, ref: ResourceRef, cancel: CancelToken) -> Any:
        if cancel.cancelled:
            return FetchFailure("Cancelled", "fetch not started: run cancelled", 0)
        provider = self.registry.for_kind(ref.kind)
        policy = provider.policy
        att = run_with_retry(
            lambda: provider.fetch(ref),
            policy=policy.retry,
            timeout_sec=policy.call_timeout_sec,
            slot=self._slot(ref.kind),
            cancel=cancel,
            log=self.log,
            what=f"fetch {ref}",
        )
        if att.abandoned and not att.attempts:
            return FetchFailure("Cancelled", "fetch not started: run cancelled", 0)
        if att.ok:
            return att.value
        return FetchFailure(type(att.error).__name__, str(att.error), att.attempts)

    def _apply_one(self, change: Change, cancel: CancelToken) -> ExecutionResult:
        ref = change.ref
        # queued behind the pool: a cancel before we start means we never start
        if cancel.cancelled:
            return ExecutionResult(change, Outcome.SKIPPED, skip_reason=SkipReason.CANCELLED)

        provider = self.registry.for_kind(ref.kind)
        policy = provider.policy
        t0 = time.monotonic()
        self.log.info("Applying %s %s (%s)", change.kind.value, ref, change.reason)

        def attempt() -> None:
            self._transition(ref, ChangeState.APPLYING)
            provider.apply(change)

        def on_retry(_attempt: int, _err: BaseException) -> None:
            self._transition(ref, ChangeState.RETRYING)

        att = run_with_retry(
            attempt,
            policy=policy.retry,
            timeout_sec=policy.call_timeout_sec,
            slot=self._slot(ref.kind),
            cancel=cancel,
            log=self.log,
            what=f"apply {ref}",
            on_retry=on_retry,
        )
        elapsed = time.monotonic() - t0
        if att.abandoned and not att.attempts:
            return ExecutionResult(change, Outcome.SKIPPED, skip_reason=SkipReason.CANCELLED)
        if att.ok:
            return ExecutionResult(change, Outcome.APPLIED, attempts=att.attempts, duration_sec=elapsed)
        return ExecutionResult(
            change,
            Outcome.FAILED,
            attempts=att.attempts,
            error=str(att.error),
            error_type=type(att.error).__name__,
            duration_sec=elapsed,
        )
