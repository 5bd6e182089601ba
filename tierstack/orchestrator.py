"""
Dependency-ordered deployment and teardown of a topology.

Deploys run wave by wave: every stack whose upstream stacks are available
is started, up to ``max_parallel`` at a time. The first failure stops the
run from starting anything new; stacks already in flight finish and
completed stacks stay in place. Teardown is serial and strictly reverse.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from tierstack.errors import ConfigurationError, PipelineError, TopologyError
from tierstack.handles import AVAILABLE, Handle
from tierstack.ledger import Ledger
from tierstack.providers.base import Provider
from tierstack.stacks.base import STATUS_OUTPUT, TopologyStack, blueprint_fingerprint
from tierstack.topology import Topology

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stack outcomes
DEPLOYED = "deployed"
UNCHANGED = "unchanged"
FAILED = "failed"
SKIPPED = "skipped"
DESTROYED = "destroyed"

# Plan actions
CREATE = "create"
UPDATE = "update"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors."""

    max_attempts: int = 4
    initial_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("at least one attempt is required", field="retry.max_attempts")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays cannot be negative", field="retry")

    def delay(self, attempt: int) -> float:
        """Delay before the attempt that follows failed attempt number ``attempt`` (1-based)."""
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


@dataclass
class StackResult:
    node: str
    stack_name: str
    outcome: str
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class DeploymentReport:
    action: str
    results: Dict[str, StackResult] = field(default_factory=dict)
    handles: Dict[str, Handle] = field(default_factory=dict)

    def add(self, result: StackResult) -> None:
        self.results[result.node] = result

    def _with_outcome(self, *outcomes: str) -> List[str]:
        return [r.stack_name for r in self.results.values() if r.outcome in outcomes]

    @property
    def succeeded(self) -> List[str]:
        return self._with_outcome(DEPLOYED, DESTROYED)

    @property
    def unchanged(self) -> List[str]:
        return self._with_outcome(UNCHANGED)

    @property
    def failed(self) -> List[str]:
        return self._with_outcome(FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_outcome(SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def to_dict(self) -> Dict:
        return {
            "action": self.action,
            "succeeded": self.succeeded,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "stacks": {
                node: {
                    "stack": r.stack_name,
                    "outcome": r.outcome,
                    "attempts": r.attempts,
                    "error": r.error,
                }
                for node, r in self.results.items()
            },
        }


class Orchestrator:
    def __init__(
        self,
        provider: Provider,
        ledger: Optional[Ledger] = None,
        retry: Optional[RetryPolicy] = None,
        max_parallel: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.ledger = ledger if ledger is not None else Ledger()
        self.retry = retry or RetryPolicy()
        self.max_parallel = max(1, max_parallel)
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(self, topology: Topology) -> DeploymentReport:
        report = DeploymentReport(action="deploy")
        sorter = topology.sorter()
        failure: Optional[TopologyError] = None
        running: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="tierstack") as pool:
            while running or (failure is None and sorter.is_active()):
                if failure is None:
                    for node in sorted(sorter.get_ready()):
                        stack_name = topology.stack_name(node)
                        try:
                            stack = topology.build(node, report.handles)
                        except TopologyError as exc:
                            failure = self._attributed(exc, stack_name)
                            report.add(StackResult(node, stack_name, FAILED, error=str(failure)))
                            logger.error("Stack rejected", extra={"stack": stack_name, "error": str(failure)})
                            break
                        logger.info("Starting stack", extra={"stack": stack_name})
                        running[pool.submit(self._deploy_stack, stack)] = node

                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    node = running.pop(future)
                    stack_name = topology.stack_name(node)
                    try:
                        handle, outcome, attempts = future.result()
                    except TopologyError as exc:
                        error = self._attributed(exc, stack_name)
                        failure = failure or error
                        report.add(StackResult(node, stack_name, FAILED, error=str(error)))
                        logger.error("Stack failed", extra={"stack": stack_name, "error": str(error)})
                        continue
                    report.handles[node] = handle
                    report.add(StackResult(node, stack_name, outcome, attempts=attempts))
                    sorter.done(node)

        for node in topology.deploy_order():
            if node not in report.results:
                report.add(StackResult(node, topology.stack_name(node), SKIPPED))

        if failure is not None:
            raise PipelineError(report, failure)
        logger.info(
            "Deployment complete",
            extra={"deployed": len(report.succeeded), "unchanged": len(report.unchanged)},
        )
        return report

    def _deploy_stack(self, stack: TopologyStack) -> Tuple[Handle, str, int]:
        stack_name = stack.stack_name
        blueprint, _ = self._with_retries(stack_name, lambda: stack.blueprint(self.provider))
        fingerprint = blueprint_fingerprint(blueprint)

        entry = self.ledger.get(stack_name)
        if entry is not None and entry.fingerprint == fingerprint:
            status, _ = self._with_retries(stack_name, lambda: self.provider.status(stack_name))
            if status == AVAILABLE:
                handle = stack.to_handle(blueprint, {**entry.outputs, STATUS_OUTPUT: status})
                logger.info("Stack unchanged", extra={"stack": stack_name})
                return handle, UNCHANGED, 0

        (outputs, handle), attempts = self._with_retries(
            stack_name, lambda: stack.realize(self.provider, blueprint)
        )
        self.ledger.record(stack_name, fingerprint, outputs, handle.status)
        logger.info("Stack available", extra={"stack": stack_name, "attempt": attempts, "status": handle.status})
        return handle, DEPLOYED, attempts

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def destroy(self, topology: Topology) -> DeploymentReport:
        report = DeploymentReport(action="destroy")
        order = topology.teardown_order()
        for index, node in enumerate(order):
            stack_name = topology.stack_name(node)
            logger.info("Destroying stack", extra={"stack": stack_name})
            try:
                _, attempts = self._with_retries(stack_name, lambda: self.provider.destroy(stack_name))
            except TopologyError as exc:
                error = self._attributed(exc, stack_name)
                report.add(StackResult(node, stack_name, FAILED, error=str(error)))
                for rest in order[index + 1:]:
                    report.add(StackResult(rest, topology.stack_name(rest), SKIPPED))
                logger.error("Teardown stopped", extra={"stack": stack_name, "error": str(error)})
                raise PipelineError(report, error) from exc
            self.ledger.remove(stack_name)
            report.add(StackResult(node, stack_name, DESTROYED, attempts=attempts))
        return report

    # ------------------------------------------------------------------
    # Plan and recorded state
    # ------------------------------------------------------------------

    def plan(self, topology: Topology) -> Dict[str, str]:
        """What a deploy would do to each stack, without changing anything."""
        actions: Dict[str, str] = {}
        handles: Dict[str, Handle] = {}
        for node in topology.deploy_order():
            stack_name = topology.stack_name(node)
            entry = self.ledger.get(stack_name)
            if any(upstream not in handles for upstream in topology.nodes[node].upstream):
                # Inputs only exist once the upstream stacks have been provisioned
                actions[node] = UPDATE if entry else CREATE
                continue
            stack = topology.build(node, handles)
            blueprint = stack.blueprint(self.provider)
            if entry is None:
                actions[node] = CREATE
                continue
            if entry.fingerprint == blueprint_fingerprint(blueprint) and self.provider.status(stack_name) == AVAILABLE:
                actions[node] = UNCHANGED
            else:
                actions[node] = UPDATE
            handles[node] = stack.to_handle(blueprint, {**entry.outputs, STATUS_OUTPUT: entry.status})
        return actions

    def recorded_handles(self, topology: Topology) -> Dict[str, Handle]:
        """Handles rebuilt from the ledger, for every stack whose inputs are recorded too."""
        handles: Dict[str, Handle] = {}
        for node in topology.deploy_order():
            entry = self.ledger.get(topology.stack_name(node))
            if entry is None or any(u not in handles for u in topology.nodes[node].upstream):
                continue
            stack = topology.build(node, handles)
            blueprint = stack.blueprint(self.provider)
            handles[node] = stack.to_handle(blueprint, {**entry.outputs, STATUS_OUTPUT: entry.status})
        return handles

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _with_retries(self, stack_name: str, operation: Callable[[], T]) -> Tuple[T, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation(), attempt
            except TopologyError as exc:
                if not exc.retryable or attempt >= self.retry.max_attempts:
                    raise
                delay = self.retry.delay(attempt)
                logger.warning(
                    "Transient provider error, retrying",
                    extra={"stack": stack_name, "attempt": attempt, "delay": delay, "error": str(exc)},
                )
                self.sleep(delay)

    @staticmethod
    def _attributed(error: TopologyError, stack_name: str) -> TopologyError:
        return error.for_stack(stack_name)
