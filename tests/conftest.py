"""Pytest configuration and fixtures."""

import copy
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for control_plane_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

SAMPLE_DEPLOYMENT: dict[str, Any] = {
    "location": "West Europe",
    "resourceGroup": "rg-notes",
    "tags": {"env": "test"},
    "registry": {"name": "acrnotes01"},
    "storage": {"accountName": "stnotes01", "fileShare": "notes-data", "shareQuotaGb": 50},
    "network": {
        "name": "vnet-notes",
        "addressPrefix": "10.20.0.0/16",
        "containerAppsSubnet": {"name": "snet-aca", "addressPrefix": "10.20.0.0/23"},
        "privateEndpointSubnet": {"name": "snet-pe", "addressPrefix": "10.20.2.0/24"},
    },
    "environment": {"name": "cae-notes"},
    "app": {
        "name": "notes-api",
        "sourceImage": "mcr.microsoft.com/azuredocs/containerapps-helloworld:latest",
        "targetImage": "notes-api:v1",
        "targetPort": 8080,
        "mountPath": "/mnt/notes",
        "envPaths": {"NOTES_DIR": "notes", "CACHE_DIR": "cache/tmp"},
    },
}


@pytest.fixture
def deployment_data() -> dict[str, Any]:
    """Raw deployment document; safe to mutate per test."""
    return copy.deepcopy(SAMPLE_DEPLOYMENT)


@pytest.fixture
def deployment_spec(deployment_data: dict[str, Any]):
    from provisioner.models import DeploymentSpec

    return DeploymentSpec.model_validate(deployment_data)


@pytest.fixture
def instant_clock():
    """Fake monotonic clock advanced only by the paired sleep function."""

    class FakeClock:
        def __init__(self) -> None:
            self.now = 0.0
            self.sleeps: list[float] = []

        def __call__(self) -> float:
            return self.now

        def sleep(self, seconds: float) -> None:
            self.sleeps.append(seconds)
            self.now += seconds

    return FakeClock()
