from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,30}$")


class ConfigError(ValueError):
    pass


class ServiceSpec(BaseModel):
    base_port: int = Field(..., ge=1, le=65535, description="Port for offset 0; the allocated port is base + offset")
    image: str | None = Field(None, description="Docker image (name:tag) to run")
    build: str | None = Field(None, description="Build context, relative to the workspace root")
    dockerfile: str | None = Field(None, description="Dockerfile path inside the build context")
    internal_port: int | None = Field(None, ge=1, le=65535, description="Container port; defaults to base_port")
    env: dict[str, str] = Field(default_factory=dict)
    command: list[str] | None = None
    routed: bool = Field(True, description="Publish a vhost for this service (false for non-HTTP ports)")

    @model_validator(mode="after")
    def _image_or_build(self) -> "ServiceSpec":
        if bool(self.image) == bool(self.build):
            raise ValueError("exactly one of 'image' or 'build' must be set")
        return self

    @property
    def container_port(self) -> int:
        return self.internal_port or self.base_port


class WorkspaceConfig(BaseModel):
    services: dict[str, ServiceSpec] = Field(..., min_length=1)
    dependency_files: list[str] = Field(default_factory=list, description="Files whose content triggers a rebuild")

    @field_validator("services")
    @classmethod
    def _service_names(cls, v: dict[str, ServiceSpec]) -> dict[str, ServiceSpec]:
        for name in v:
            if not SERVICE_NAME_RE.match(name):
                raise ValueError(
                    f"Invalid service name {name!r}. Use lowercase letters/numbers and hyphen, starting with a letter."
                )
        return v

    def base_ports(self) -> dict[str, int]:
        return {name: spec.base_port for name, spec in self.services.items()}


def load_workspace_config(workspace: str | Path, filename: str | None = None) -> WorkspaceConfig:
    path = Path(workspace) / (filename or settings.config_filename)
    if not path.is_file():
        raise ConfigError(f"No {path.name} found in {path.parent}")
    try:
        return WorkspaceConfig.model_validate_json(path.read_text())
    except ValidationError as e:
        raise ConfigError(f"Invalid {path}: {e}") from e


# --- API payloads ---


class ServiceEndpoint(BaseModel):
    service: str
    port: int
    hostname: str | None = None
    url: str | None = None
    running: bool | None = None
    reachable: bool | None = None
    detail: str | None = None


class EnvironmentReport(BaseModel):
    project: str
    workspace: str | None = None
    offset: int | None = None
    host_address: str | None = None
    network: str
    rebuilt: bool = False
    services: list[ServiceEndpoint] = Field(default_factory=list)


class RouteBlock(BaseModel):
    project: str
    hostnames: dict[str, str] = Field(default_factory=dict, description="service -> hostname")
    ports: dict[str, int] = Field(default_factory=dict, description="service -> upstream port")
