"""Outcome reporting.

The reconciler returns a RunResult; reporters turn it into something a
human or a log pipeline consumes. Reporters never influence the run.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from .nodes import Outcome
from .reconciler import RunResult

logger = logging.getLogger(__name__)

OUTCOME_MARKERS: dict[Outcome, str] = {
    Outcome.CREATED: "+",
    Outcome.UPDATED: "~",
    Outcome.RECREATED: "!",
    Outcome.SKIPPED: "=",
    Outcome.FAILED: "x",
}


@runtime_checkable
class OutcomeReporter(Protocol):
    """Receives the aggregate result of a run."""

    def report(self, result: RunResult) -> None:
        ...


class LoggingReporter:
    """Reports each node outcome and the totals as structured log records."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def report(self, result: RunResult) -> None:
        for node_result in result.results:
            level = logging.ERROR if node_result.outcome == Outcome.FAILED else logging.INFO
            self._log.log(
                level,
                "Node outcome",
                extra={
                    "node": node_result.node_id,
                    "outcome": node_result.outcome.value,
                    "detail": node_result.detail,
                },
            )
        self._log.info(
            "Deployment summary",
            extra={
                **{f"{outcome}_count": count for outcome, count in result.counts.items()},
                "not_visited": result.not_visited,
                "failed_node": result.failed_node,
                "success": result.success,
            },
        )


def render_summary(result: RunResult) -> str:
    """Plain-text summary suitable for a terminal."""
    lines = []
    width = max((len(r.node_id) for r in result.results), default=0)
    for node_result in result.results:
        marker = OUTCOME_MARKERS[node_result.outcome]
        line = f"  {marker} {node_result.node_id.ljust(width)}  {node_result.outcome.value}"
        if node_result.detail and node_result.outcome != Outcome.SKIPPED:
            line += f" ({node_result.detail})"
        lines.append(line)

    counts = result.counts
    lines.append("")
    lines.append(
        "created={created} updated={updated} recreated={recreated} "
        "skipped={skipped} failed={failed}".format(**counts)
    )
    if result.success:
        lines.append(f"Deployment converged in {result.duration_seconds:.1f}s")
    else:
        lines.append(
            f"Deployment failed at '{result.failed_node}': {result.error}. "
            f"{result.not_visited} node(s) not visited; re-run to resume."
        )
    return "\n".join(lines)
