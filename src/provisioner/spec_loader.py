"""Deployment file loading with validation.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary so a bad file never reaches the reconciler.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when deployment file loading or validation fails."""

    pass


def parse_spec(raw_data: Any, source: str = "<memory>") -> DeploymentSpec:
    """Validate an already-parsed YAML document.

    Supports both a flat document and a Kubernetes-style wrapper
    (apiVersion / kind / metadata / spec).

    Raises:
        SpecLoadError: If the document is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Deployment file must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_spec(spec_path: Path) -> DeploymentSpec:
    """Load and validate a deployment description from YAML.

    Args:
        spec_path: Path to the deployment YAML file.

    Returns:
        Validated DeploymentSpec.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Deployment file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat deployment file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Deployment file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: "
            f"{spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read deployment file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, str(spec_path))
    logger.info(
        "Loaded deployment spec",
        extra={"path": str(spec_path), "app": spec.app.name, "resource_group": spec.resource_group},
    )
    return spec
