"""Pydantic models for the deployment description with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Derived names used by the graph builder (login server, DNS zone, ...)
"""

from __future__ import annotations

import ipaddress
import re
from pathlib import PurePosixPath
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

REGISTRY_NAME_PATTERN = r"^[a-z0-9]{5,50}$"
STORAGE_ACCOUNT_NAME_PATTERN = r"^[a-z0-9]{3,24}$"
FILE_SHARE_NAME_PATTERN = r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){2,62}$"
ENV_VAR_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"
MEMORY_PATTERN = r"^\d+(\.\d+)?Gi$"

MIN_SUBNET_PREFIX_ACA = 23  # Consumption-only environments need at least a /23
MAX_SHARE_QUOTA_GB = 102400
MAX_REPLICAS = 300


def _network(value: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    return ipaddress.ip_network(value, strict=True)


def _validate_cidr(value: str) -> str:
    if "/" not in value:
        raise ValueError("addressPrefix must be in CIDR notation (e.g., 10.0.0.0/24)")
    try:
        _network(value)
    except ValueError as e:
        raise ValueError(f"invalid CIDR prefix {value}: {e}") from e
    return value


class RegistryConfig(BaseModel):
    """Private container registry."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    sku: str = "Basic"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(REGISTRY_NAME_PATTERN, v):
            raise ValueError("registry name must be 5-50 lowercase letters or digits")
        return v

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid_skus = {"Basic", "Standard", "Premium"}
        if v not in valid_skus:
            raise ValueError(f"sku must be one of {valid_skus}")
        return v

    @property
    def login_server(self) -> str:
        return f"{self.name}.azurecr.io"


class StorageConfig(BaseModel):
    """Storage account and the Azure Files share mounted into the app."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    account_name: str = Field(alias="accountName")
    sku: str = "Standard_LRS"
    file_share: str = Field(alias="fileShare")
    share_quota_gb: Annotated[int, Field(ge=1, le=MAX_SHARE_QUOTA_GB, alias="shareQuotaGb")] = 100

    @field_validator("account_name")
    @classmethod
    def validate_account_name(cls, v: str) -> str:
        if not re.match(STORAGE_ACCOUNT_NAME_PATTERN, v):
            raise ValueError("storage account name must be 3-24 lowercase letters or digits")
        return v

    @field_validator("file_share")
    @classmethod
    def validate_file_share(cls, v: str) -> str:
        if not re.match(FILE_SHARE_NAME_PATTERN, v):
            raise ValueError(
                "file share name must be 3-63 lowercase letters, digits or single hyphens"
            )
        return v


class SubnetConfig(BaseModel):
    """Virtual network subnet configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    prefix: str = Field(alias="addressPrefix")

    @field_validator("prefix")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class NetworkConfig(BaseModel):
    """VNet with the Container Apps subnet and the private endpoint subnet."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=2, max_length=64)]
    address_prefix: str = Field(alias="addressPrefix")
    container_apps_subnet: SubnetConfig = Field(alias="containerAppsSubnet")
    private_endpoint_subnet: SubnetConfig = Field(alias="privateEndpointSubnet")

    @field_validator("address_prefix")
    @classmethod
    def validate_address_prefix(cls, v: str) -> str:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def validate_subnets(self) -> NetworkConfig:
        vnet = _network(self.address_prefix)
        aca = _network(self.container_apps_subnet.prefix)
        pe = _network(self.private_endpoint_subnet.prefix)

        for subnet in (self.container_apps_subnet, self.private_endpoint_subnet):
            net = _network(subnet.prefix)
            if net.version != vnet.version or not net.subnet_of(vnet):  # type: ignore[arg-type]
                raise ValueError(
                    f"subnet {subnet.name} ({subnet.prefix}) is outside {self.address_prefix}"
                )
        if aca.overlaps(pe):  # type: ignore[arg-type]
            raise ValueError("containerAppsSubnet and privateEndpointSubnet overlap")
        if aca.prefixlen > MIN_SUBNET_PREFIX_ACA:
            raise ValueError(
                f"containerAppsSubnet must be /{MIN_SUBNET_PREFIX_ACA} or larger"
            )
        if self.container_apps_subnet.name == self.private_endpoint_subnet.name:
            raise ValueError("subnet names must be distinct")
        return self


class EnvironmentConfig(BaseModel):
    """Container Apps managed environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=2, max_length=60)]
    storage_name: Annotated[str, Field(min_length=1, max_length=32, alias="storageName")] = (
        "azurefiles"
    )


class AppConfig(BaseModel):
    """The container app, its images and its Azure Files mount."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=2, max_length=32)]
    source_image: str = Field(alias="sourceImage")
    target_image: str = Field(alias="targetImage")
    target_port: Annotated[int, Field(ge=1, le=65535, alias="targetPort")] = 80
    external_ingress: bool = Field(True, alias="externalIngress")
    cpu: Annotated[float, Field(gt=0, le=4)] = 0.5
    memory: str = "1.0Gi"
    min_replicas: Annotated[int, Field(ge=0, le=MAX_REPLICAS, alias="minReplicas")] = 1
    max_replicas: Annotated[int, Field(ge=1, le=MAX_REPLICAS, alias="maxReplicas")] = 1
    volume_name: Annotated[str, Field(min_length=1, alias="volumeName")] = "azure-files"
    mount_path: str = Field("/mnt/data", alias="mountPath")
    env_paths: dict[str, str] = Field(default_factory=dict, alias="envPaths")

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        if not re.match(MEMORY_PATTERN, v):
            raise ValueError("memory must look like 1.0Gi")
        return v

    @field_validator("mount_path")
    @classmethod
    def validate_mount_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("mountPath must be absolute")
        return v.rstrip("/") or "/"

    @field_validator("env_paths")
    @classmethod
    def validate_env_paths(cls, v: dict[str, str]) -> dict[str, str]:
        for name, path in v.items():
            if not re.match(ENV_VAR_NAME_PATTERN, name):
                raise ValueError(f"invalid environment variable name: {name}")
            pure = PurePosixPath(path)
            if pure.is_absolute() or ".." in pure.parts:
                raise ValueError(f"envPaths.{name} must be relative to the mount: {path}")
        return v

    @model_validator(mode="after")
    def validate_replicas(self) -> AppConfig:
        if self.min_replicas > self.max_replicas:
            raise ValueError("minReplicas must not exceed maxReplicas")
        return self

    def env_values(self) -> dict[str, str]:
        """Environment variables resolved to absolute paths inside the mount."""
        values: dict[str, str] = {}
        for name, relative in self.env_paths.items():
            resolved = PurePosixPath(self.mount_path) / relative
            values[name] = str(resolved)
        return values


class DeploymentSpec(BaseModel):
    """Complete description of one Container App deployment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    location: str
    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    tags: dict[str, str] = Field(default_factory=dict)
    registry: RegistryConfig
    storage: StorageConfig
    network: NetworkConfig
    environment: EnvironmentConfig
    app: AppConfig

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        normalized = v.replace(" ", "").lower()
        if not re.match(r"^[a-z]{2,}[a-z0-9]*$", normalized):
            raise ValueError(f"location must be a valid Azure region: {v}")
        return normalized

    @property
    def target_repository(self) -> str:
        """Target image as repository:tag without the registry server."""
        prefix = f"{self.registry.login_server}/"
        image = self.app.target_image
        return image[len(prefix) :] if image.startswith(prefix) else image

    @property
    def target_image_ref(self) -> str:
        """Fully qualified private image reference."""
        return f"{self.registry.login_server}/{self.target_repository}"

    @property
    def private_dns_zone(self) -> str:
        return "privatelink.file.core.windows.net"
