"""Idempotent reconciliation of a resource graph against the control plane.

For each node, in topological order:
1. Probe the current state (fresh read, nothing is cached across runs)
2. Absent   -> create                      (CREATED)
3. Degraded -> recreate or patch the node  (RECREATED / UPDATED)
4. Satisfied                               (SKIPPED)

Execution is strictly sequential. The first failure aborts the run
(fail-fast): the failing node is recorded as FAILED, later nodes are never
visited and nothing already created is rolled back. Re-running the whole
deployment is the retry mechanism; satisfied nodes are skipped.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import AzureError

from .client import ABSENT, ControlPlaneClient
from .dependency import ResourceGraph
from .errors import ProvisioningError, translate_azure_error
from .nodes import NodeOutcome, Outcome, ResourceNode, RunContext
from .polling import PollPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeResult:
    """Outcome of a single node."""

    node_id: str
    outcome: Outcome
    detail: str = ""
    error: ProvisioningError | None = None
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    """Aggregate result of one reconciliation run."""

    results: list[NodeResult] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    total_nodes: int = 0

    @property
    def counts(self) -> dict[str, int]:
        tally = {outcome.value: 0 for outcome in Outcome}
        for result in self.results:
            tally[result.outcome.value] += 1
        return tally

    @property
    def created(self) -> int:
        return self.counts[Outcome.CREATED.value]

    @property
    def skipped(self) -> int:
        return self.counts[Outcome.SKIPPED.value]

    @property
    def changed(self) -> int:
        """Nodes that caused a control-plane mutation."""
        counts = self.counts
        return (
            counts[Outcome.CREATED.value]
            + counts[Outcome.UPDATED.value]
            + counts[Outcome.RECREATED.value]
        )

    @property
    def failed_result(self) -> NodeResult | None:
        for result in self.results:
            if result.outcome == Outcome.FAILED:
                return result
        return None

    @property
    def failed_node(self) -> str | None:
        failed = self.failed_result
        return failed.node_id if failed else None

    @property
    def error(self) -> ProvisioningError | None:
        failed = self.failed_result
        return failed.error if failed else None

    @property
    def success(self) -> bool:
        return self.failed_result is None

    @property
    def not_visited(self) -> int:
        return self.total_nodes - len(self.results)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def outcome_of(self, node_id: str) -> Outcome | None:
        for result in self.results:
            if result.node_id == node_id:
                return result.outcome
        return None


class Reconciler:
    """Drives a ResourceGraph to its desired state through a ControlPlaneClient.

    The reconciler holds no state between runs; each call to run() builds a
    fresh RunContext.
    """

    def __init__(
        self,
        *,
        principal_poll: PollPolicy | None = None,
        provider_poll: PollPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize reconciler.

        Args:
            principal_poll: Timing for waiting on identity principals.
            provider_poll: Timing for waiting on provider registration.
            sleep: Blocking sleep used while polling.
            clock: Monotonic clock used while polling.
        """
        self._principal_poll = principal_poll or PollPolicy()
        self._provider_poll = provider_poll or PollPolicy()
        self._sleep = sleep
        self._clock = clock

    def run(self, graph: ResourceGraph, client: ControlPlaneClient) -> RunResult:
        """Reconcile every node of ``graph`` in dependency order.

        Args:
            graph: Resource graph to converge.
            client: Control-plane client used for every read and write.

        Returns:
            RunResult with one NodeResult per visited node.

        Raises:
            DependencyError: If the graph is not a valid DAG (nothing is visited).
        """
        order = graph.topological_order()
        result = RunResult(total_nodes=len(order))
        context = RunContext(
            principal_poll=self._principal_poll,
            provider_poll=self._provider_poll,
            sleep=self._sleep,
            clock=self._clock,
        )

        logger.info("Starting reconciliation", extra={"nodes": len(order)})

        for position, node in enumerate(order):
            node_result = self._visit(node, position, client, context)
            result.results.append(node_result)
            if node_result.outcome == Outcome.FAILED:
                break

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _visit(
        self,
        node: ResourceNode,
        position: int,
        client: ControlPlaneClient,
        context: RunContext,
    ) -> NodeResult:
        started = self._clock()
        extra: dict[str, Any] = {
            "node": node.id,
            "kind": node.kind.value,
            "resource_name": node.name,
            "position": position,
        }

        try:
            try:
                state = node.probe(client, context)
                logger.debug(
                    "Probed resource", extra={**extra, "present": state is not ABSENT}
                )
                outcome = node.reconcile(client, state, context)
            except AzureError as e:
                raise translate_azure_error(e) from e
        except ProvisioningError as e:
            logger.error(
                "Node failed, aborting run",
                extra={**extra, "error": str(e), "error_type": type(e).__name__},
            )
            return NodeResult(
                node_id=node.id,
                outcome=Outcome.FAILED,
                detail=str(e),
                error=e,
                duration_seconds=self._clock() - started,
            )

        self._record_state(node, outcome, context)
        logger.info(
            "Node reconciled",
            extra={**extra, "outcome": outcome.outcome.value, "detail": outcome.detail},
        )
        return NodeResult(
            node_id=node.id,
            outcome=outcome.outcome,
            detail=outcome.detail,
            duration_seconds=self._clock() - started,
        )

    @staticmethod
    def _record_state(node: ResourceNode, outcome: NodeOutcome, context: RunContext) -> None:
        if outcome.state is not None:
            context.states[node.id] = outcome.state

    def _log_result(self, result: RunResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            # "created" is reserved on LogRecord
            **{f"{outcome}_count": count for outcome, count in result.counts.items()},
            "total_nodes": result.total_nodes,
            "not_visited": result.not_visited,
            "duration_seconds": result.duration_seconds,
        }
        if result.success:
            logger.info("Reconciliation complete", extra=extra)
        else:
            extra["failed_node"] = result.failed_node
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
