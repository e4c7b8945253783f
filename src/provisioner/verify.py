"""Post-deploy smoke checks run inside the deployed container.

Commands are executed through a VerificationProbe supplied by the caller.
Instead of sleeping a fixed time for the new revision to come up, the mount
check is polled with backoff until the probe's deadline.
"""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .client import VerificationProbe
from .errors import DependencyTimeout
from .models import DeploymentSpec
from .polling import PollPolicy, wait_until

logger = logging.getLogger(__name__)

WRITE_PROBE_FILENAME = ".provisioner-write-check"


@dataclass(frozen=True)
class CheckResult:
    """Result of a single smoke check."""

    name: str
    passed: bool
    detail: str = ""


@dataclass
class VerificationReport:
    """All smoke check results for one app."""

    app_name: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]


def verify_deployment(
    probe: VerificationProbe,
    spec: DeploymentSpec,
    *,
    policy: PollPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> VerificationReport:
    """Check the Azure Files mount and env vars inside the running app.

    Args:
        probe: Executes commands in the app container.
        spec: Deployment description (mount path and env vars).
        policy: How long to wait for the mount to appear.
        sleep: Blocking sleep used while polling.
        clock: Monotonic clock used while polling.

    Returns:
        VerificationReport; never raises for failed checks.
    """
    app = spec.app
    report = VerificationReport(app_name=app.name)
    mount = shlex.quote(app.mount_path)

    def mount_ready() -> bool | None:
        return True if probe.exec(app.name, f"test -d {mount}").ok else None

    try:
        wait_until(
            mount_ready, what=f"mount {app.mount_path} in {app.name}",
            policy=policy, sleep=sleep, clock=clock,
        )
        report.checks.append(CheckResult("mount-present", True, app.mount_path))
    except DependencyTimeout as e:
        report.checks.append(CheckResult("mount-present", False, str(e)))
        logger.error("Mount not available", extra={"app": app.name, "mount_path": app.mount_path})
        return report

    probe_file = shlex.quote(f"{app.mount_path}/{WRITE_PROBE_FILENAME}")
    written = probe.exec(app.name, f"touch {probe_file} && rm -f {probe_file}")
    report.checks.append(
        CheckResult("mount-writable", written.ok, written.stderr.strip() or app.mount_path)
    )

    for name, expected in app.env_values().items():
        result = probe.exec(app.name, f"printenv {name}")
        actual = result.stdout.strip()
        report.checks.append(
            CheckResult(
                f"env:{name}",
                result.ok and actual == expected,
                f"expected {expected}, got {actual or '<unset>'}",
            )
        )

    logger.info(
        "Verification finished",
        extra={
            "app": app.name,
            "passed": report.passed,
            "failed_checks": [check.name for check in report.failures],
        },
    )
    return report
