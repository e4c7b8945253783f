"""Zero-argument factories for loading the mocks by import path.

The CLI resolves ``module:factory`` strings; these give it something to
resolve during tests. SHARED_STATE persists between invocations so a
second ``deploy`` sees the first one's resources.
"""

from __future__ import annotations

from .client import MockControlPlaneClient
from .probe import MockProbe
from .state import MockControlPlaneState

SHARED_STATE = MockControlPlaneState()

NOT_CALLABLE = "factories are functions"


def reset() -> None:
    global SHARED_STATE
    SHARED_STATE = MockControlPlaneState()


def make_client() -> MockControlPlaneClient:
    return MockControlPlaneClient(SHARED_STATE)


def make_logged_out_client() -> MockControlPlaneClient:
    return MockControlPlaneClient(SHARED_STATE, logged_in=False)


def make_probe() -> MockProbe:
    return MockProbe(
        env={"NOTES_DIR": "/mnt/notes/notes", "CACHE_DIR": "/mnt/notes/cache/tmp"},
        mounts={"/mnt/notes"},
    )


def make_broken_probe() -> MockProbe:
    return MockProbe(mounts={"/mnt/notes"}, read_only=True)
