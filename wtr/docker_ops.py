from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .db import log_event
from .settings import settings


LABEL_PROJECT = "wtr.project"
LABEL_SERVICE = "wtr.service"
LABEL_PORT = "wtr.port"
LABEL_SHARED = "wtr.shared"

_BIND_ERRORS = ("port is already allocated", "address already in use", "bind for")


class RuntimeUnavailable(RuntimeError):
    pass


class PortBindError(RuntimeError):
    def __init__(self, project: str, service: str, port: int, detail: str = "") -> None:
        self.project = project
        self.service = service
        self.port = port
        self.remedy = (
            "Another process grabbed the port after allocation. Run `wtr start` again to re-allocate, "
            "or widen the offset range with WTR_PORT_MODULUS."
        )
        super().__init__(f"Port {port} for service '{service}' is already in use. {self.remedy} ({detail})")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    service: str | None = None
    status: str | None = None
    port: int | None = None


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def _require_client() -> docker.DockerClient:
    try:
        c = _client()
        c.ping()
        return c
    except DockerException as e:
        raise RuntimeUnavailable(
            "Docker is not available. Start Docker Desktop / docker daemon and try again."
        ) from e


def _ref(container: Any) -> ContainerRef:
    labels = container.labels or {}
    port = labels.get(LABEL_PORT)
    return ContainerRef(
        id=container.id,
        name=container.name,
        service=labels.get(LABEL_SERVICE),
        status=container.status,
        port=int(port) if port else None,
    )


def container_name(project: str, service: str) -> str:
    return f"wtr-{project}-{service}"


def image_tag(project: str, service: str) -> str:
    return f"wtr-{project}-{service}:latest"


def ensure_network(name: str | None = None) -> bool:
    """Create the shared bridge network if missing. Returns True when created."""
    name = name or settings.shared_network
    c = _require_client()
    try:
        c.networks.get(name)
        return False
    except NotFound:
        c.networks.create(name, driver="bridge", labels={LABEL_SHARED: "true"})
        log_event("INFO", f"Created docker network '{name}'.")
        return True


def remove_network(name: str | None = None) -> bool:
    name = name or settings.shared_network
    c = _require_client()
    try:
        c.networks.get(name).remove()
        return True
    except NotFound:
        return False


def ensure_volume(name: str) -> None:
    c = _require_client()
    try:
        c.volumes.get(name)
    except NotFound:
        c.volumes.create(name, labels={LABEL_SHARED: "true"})


def remove_volume(name: str) -> bool:
    c = _require_client()
    try:
        c.volumes.get(name).remove(force=True)
        return True
    except NotFound:
        return False


def ensure_container(name: str, image: str, **run_kwargs: Any) -> str:
    """Make sure a long-lived container exists and runs.

    Returns "created", "started" (existed but was stopped) or "running". An
    existing container is never recreated, whatever its configuration.
    """
    c = _require_client()
    try:
        cont = c.containers.get(name)
    except NotFound:
        c.containers.run(image, name=name, detach=True, restart_policy={"Name": "unless-stopped"}, **run_kwargs)
        log_event("INFO", f"Started shared container {name} from image {image}")
        return "created"
    if cont.status != "running":
        cont.start()
        log_event("INFO", f"Restarted shared container {name}")
        return "started"
    return "running"


def remove_named_container(name: str) -> bool:
    c = _require_client()
    try:
        c.containers.get(name).remove(force=True)
        return True
    except NotFound:
        return False


def exec_in_container(name: str, cmd: list[str]) -> tuple[int, str]:
    c = _require_client()
    try:
        cont = c.containers.get(name)
    except NotFound as e:
        raise RuntimeUnavailable(f"Container '{name}' does not exist; run `wtr infra up` first.") from e
    result = cont.exec_run(cmd, demux=False)
    output = result.output.decode("utf-8", "replace") if result.output else ""
    return result.exit_code, output


def build_image(project: str, service: str, context: str, dockerfile: str | None = None, nocache: bool = False) -> str:
    tag = image_tag(project, service)
    c = _require_client()
    kwargs: dict[str, Any] = {"path": context, "tag": tag, "rm": True, "nocache": nocache}
    if dockerfile:
        kwargs["dockerfile"] = dockerfile
    c.images.build(**kwargs)
    log_event("INFO", f"Built image {tag}{' (no cache)' if nocache else ''}", project=project, service=service)
    return tag


def image_exists(tag: str) -> bool:
    c = _require_client()
    try:
        c.images.get(tag)
        return True
    except ImageNotFound:
        return False


def run_service_container(
    project: str,
    service: str,
    image: str,
    host_port: int,
    internal_port: int,
    env: dict[str, str] | None = None,
    command: list[str] | None = None,
    network: str | None = None,
    gateway_alias: str | None = None,
) -> ContainerRef:
    """Create and start one isolated service container bound to `host_port`.

    Containers are labeled with project/service/port so later invocations can find
    them without any stored registry.
    """
    c = _require_client()
    name = container_name(project, service)
    labels = {LABEL_PROJECT: project, LABEL_SERVICE: service, LABEL_PORT: str(host_port)}
    try:
        container = c.containers.run(
            image,
            command=command,
            detach=True,
            name=name,
            environment=env or {},
            network=network or settings.shared_network,
            labels=labels,
            ports={f"{int(internal_port)}/tcp": int(host_port)},
            # Wildcard names for 127.0.0.1 must reach the host, not this container.
            extra_hosts={gateway_alias or settings.gateway_alias: "host-gateway"},
        )
    except APIError as e:
        msg = str(e).lower()
        if any(marker in msg for marker in _BIND_ERRORS):
            # docker leaves the created-but-unstarted container behind
            remove_named_container(name)
            log_event("ERROR", f"Port {host_port} already bound", project=project, service=service)
            raise PortBindError(project, service, host_port, detail=str(e)) from e
        raise

    log_event("INFO", f"Started container {name} on port {host_port}", project=project, service=service)
    return ContainerRef(id=container.id, name=name, service=service, status="running", port=host_port)


def list_project_containers(project: str) -> list[ContainerRef]:
    c = _require_client()
    containers = c.containers.list(all=True, filters={"label": [f"{LABEL_PROJECT}={project}"]})
    return [_ref(x) for x in containers]


def remove_container(container_id: str, volumes: bool = False) -> None:
    c = _require_client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=True, v=volumes)
    except NotFound:
        return


def remove_project_containers(project: str, volumes: bool = False) -> list[str]:
    """Stop and remove every container of `project`; `volumes` also drops anonymous volumes."""
    removed = []
    for ref in list_project_containers(project):
        remove_container(ref.id, volumes=volumes)
        removed.append(ref.name)
    if removed:
        log_event("INFO", f"Removed containers: {', '.join(removed)}", project=project)
    return removed
