"""Deployment entry points shared by the CLI.

Exit codes:
    0  deployment converged
    1  configuration, spec or control-plane failure (re-run after fixing)
    2  authentication failure (log in or grant permissions, then re-run)
"""

from __future__ import annotations

import importlib
import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import AzureError

from .client import ControlPlaneClient
from .config import Config, LogFormat
from .dependency import DependencyError
from .errors import AuthError, ControlPlaneError, translate_azure_error
from .reconciler import Reconciler, RunResult
from .reporting import LoggingReporter, OutcomeReporter
from .spec_loader import SpecLoadError, load_spec
from .topology import build_graph

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AUTH = 2

# Attributes present on every LogRecord; anything else came from ``extra``
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: LogFormat = LogFormat.JSON, level: str = "INFO") -> None:
    """Configure root logging on stderr, keeping stdout for command output."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_client_factory(path: str) -> Callable[[], ControlPlaneClient]:
    """Resolve a ``package.module:factory`` import path.

    Raises:
        ImportError: If the module cannot be imported.
        AttributeError: If the factory does not exist.
        TypeError: If the attribute is not callable.
    """
    module_name, _, attr = path.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise TypeError(f"{path} is not callable")
    return factory


def deploy(
    config: Config,
    client: ControlPlaneClient,
    *,
    reporter: OutcomeReporter | None = None,
    reconciler: Reconciler | None = None,
) -> tuple[int, RunResult | None]:
    """Load the deployment file, check the login and reconcile the graph.

    Returns:
        Tuple of (exit code, run result). The result is None when the run
        never started (bad spec, bad graph, not logged in).
    """
    logger = logging.getLogger(__name__)

    try:
        spec = load_spec(config.spec_path)
        graph = build_graph(spec)
    except SpecLoadError as e:
        logger.error("Deployment spec is invalid", extra={"error": str(e)})
        return EXIT_FAILED, None
    except DependencyError as e:
        logger.error("Resource graph is invalid", extra={"error": str(e)})
        return EXIT_FAILED, None

    try:
        try:
            principal = client.whoami()
        except AzureError as e:
            raise translate_azure_error(e) from e
    except AuthError as e:
        logger.critical(
            "Not authenticated against the control plane; log in and re-run",
            extra={"error": str(e)},
        )
        return EXIT_AUTH, None
    except ControlPlaneError as e:
        logger.error("Login check failed", extra={"error": str(e)})
        return EXIT_FAILED, None

    logger.info(
        "Starting deployment",
        extra={
            "app": spec.app.name,
            "resource_group": spec.resource_group,
            "location": spec.location,
            "principal": principal.name or principal.principal_id,
            "nodes": len(graph),
        },
    )

    reconciler = reconciler or Reconciler(
        principal_poll=config.principal_poll,
        provider_poll=config.provider_poll,
    )
    result = reconciler.run(graph, client)
    (reporter or LoggingReporter()).report(result)

    if result.success:
        return EXIT_OK, result
    if isinstance(result.error, AuthError):
        return EXIT_AUTH, result
    return EXIT_FAILED, result
