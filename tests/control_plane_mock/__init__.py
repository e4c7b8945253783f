"""In-memory control plane for integration testing.

This package provides a mock implementation of the ControlPlaneClient
protocol that enables reconciliation tests without cloud connectivity.

Key Features:
- In-memory resource state keyed by (kind, name)
- Call log for ordering and idempotence assertions
- Error injection for fail-fast scenarios
- Eventually consistent identity principals and provider registration
- Degraded resource seeding

Usage:
    from control_plane_mock import MockControlPlaneClient

    client = MockControlPlaneClient()
    result = Reconciler(sleep=lambda _: None).run(graph, client)

    assert client.count_calls("create") == len(graph)
"""

from .client import Call, MockControlPlaneClient
from .probe import MockProbe
from .state import MockControlPlaneState, MockResource

__all__ = [
    "Call",
    "MockControlPlaneClient",
    "MockControlPlaneState",
    "MockProbe",
    "MockResource",
]
