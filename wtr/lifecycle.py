from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from . import db, docker_ops, fingerprint, infra
from .docker_ops import ContainerRef
from .health import check_endpoint
from .hostnames import (
    detect_host_address,
    environment_values,
    project_identity,
    service_hostnames,
    service_url,
    write_env_file,
)
from .models import EnvironmentReport, ServiceEndpoint, ServiceSpec, WorkspaceConfig, load_workspace_config
from .ports import Allocation, allocate, bound_tcp_ports, candidate_ports
from .proxy import (
    NginxController,
    RouteStore,
    check_records,
    default_controller,
    install_routes,
    remove_routes,
    vhost_records,
)
from .settings import settings


PortSnapshot = Callable[[Iterable[int]], set[int]]


@dataclass
class Environment:
    workspace: str
    project: str
    host_address: str
    allocation: Allocation
    hostnames: dict[str, str]
    network: str
    rebuilt: bool = False
    containers: list[ContainerRef] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    def report(self, proxy_port: int | None = None) -> EnvironmentReport:
        services = []
        for service, port in self.allocation.ports.items():
            host = self.hostnames.get(service)
            services.append(
                ServiceEndpoint(
                    service=service,
                    port=port,
                    hostname=host,
                    url=service_url(host, proxy_port) if host else None,
                )
            )
        return EnvironmentReport(
            project=self.project,
            workspace=self.workspace,
            offset=self.allocation.offset,
            host_address=self.host_address,
            network=self.network,
            rebuilt=self.rebuilt,
            services=services,
        )


class LifecycleManager:
    """Starts, stops and reports isolated per-workspace environments.

    Collaborators are injectable: `containers` is anything exposing the
    docker_ops container functions, `ensure_infra` brings up shared services,
    `port_snapshot` returns the bound TCP ports.
    """

    def __init__(
        self,
        containers: Any = docker_ops,
        ensure_infra: Callable[[], Any] = infra.ensure_shared_infra,
        routes: RouteStore | None = None,
        proxy: NginxController | None = None,
        port_snapshot: PortSnapshot = bound_tcp_ports,
        host_address: str | None = None,
        modulus: int | None = None,
        wildcard_suffix: str | None = None,
        proxy_port: int | None = None,
        network: str | None = None,
    ) -> None:
        self.containers = containers
        self.ensure_infra = ensure_infra
        self.routes = routes or RouteStore()
        self._proxy = proxy
        self.port_snapshot = port_snapshot
        self.host_address = host_address
        self.modulus = settings.port_modulus if modulus is None else modulus
        self.wildcard_suffix = wildcard_suffix or settings.wildcard_suffix
        self.proxy_port = settings.proxy_port if proxy_port is None else proxy_port
        self.network = network or settings.shared_network

    @property
    def proxy(self) -> NginxController:
        if self._proxy is None:
            self._proxy = default_controller()
        return self._proxy

    # --- start ---

    def allocate(self, workspace: str, config: WorkspaceConfig) -> Allocation:
        project = project_identity(workspace)
        base = config.base_ports()
        bound = set(self.port_snapshot(candidate_ports(base, self.modulus)))
        # Ports held by this environment's own containers are not collisions.
        own = {ref.port for ref in self.containers.list_project_containers(project) if ref.port}
        return allocate(workspace, base, bound - own, self.modulus)

    def plan(self, workspace: str | Path, config: WorkspaceConfig) -> Environment:
        """Ports, hostnames and environment values, without starting anything."""
        path = os.path.abspath(workspace)
        project = project_identity(path)
        allocation = self.allocate(path, config)
        host = detect_host_address(self.host_address)
        routed = [name for name, spec in config.services.items() if spec.routed]
        hostnames = service_hostnames(project, routed, host, self.wildcard_suffix)
        # Overlong labels must fail here, before any container starts.
        check_records(vhost_records(project, hostnames, allocation.ports))

        env = environment_values(project, allocation.ports, hostnames, network=self.network, proxy_port=self.proxy_port)
        env.update(infra.shared_env())
        return Environment(
            workspace=path,
            project=project,
            host_address=host,
            allocation=allocation,
            hostnames=hostnames,
            network=self.network,
            env=env,
        )

    def preview(self, workspace: str | Path, config: WorkspaceConfig) -> dict[str, str]:
        return self.plan(workspace, config).env

    def start(self, workspace: str | Path, config: WorkspaceConfig | None = None, rebuild: bool = False) -> Environment:
        path = os.path.abspath(workspace)
        config = config or load_workspace_config(path)

        self.ensure_infra()

        environment = self.plan(path, config)
        project = environment.project
        if environment.allocation.exhausted:
            db.log_event("WARN", "Starting with an exhausted allocation; ports may fail to bind", project=project)

        digest = fingerprint.dependency_fingerprint(path, config.dependency_files)
        if not rebuild and not settings.skip_fingerprint:
            rebuild = fingerprint.needs_rebuild(project, digest)
            if rebuild:
                db.log_event("INFO", "Dependency descriptors changed; rebuilding", project=project)

        write_env_file(Path(path) / settings.env_filename, environment.env)

        environment.containers = self._start_services(
            path, project, config, environment.allocation, environment.env, rebuild
        )
        environment.rebuilt = rebuild
        if rebuild:
            fingerprint.record(project, path, digest)

        install_routes(
            project,
            environment.hostnames,
            environment.allocation.ports,
            store=self.routes,
            controller=self.proxy,
            listen_port=self.proxy_port,
        )
        db.log_event("INFO", f"Environment started at offset {environment.allocation.offset}", project=project)
        return environment

    def _start_services(
        self,
        workspace: str,
        project: str,
        config: WorkspaceConfig,
        allocation: Allocation,
        env: dict[str, str],
        rebuild: bool,
    ) -> list[ContainerRef]:
        if rebuild:
            # Full rebuild drops anonymous volumes too (node_modules, venvs, caches).
            self.containers.remove_project_containers(project, volumes=True)
            existing: dict[str, ContainerRef] = {}
        else:
            existing = {ref.service: ref for ref in self.containers.list_project_containers(project) if ref.service}

        for service, ref in existing.items():
            if service not in config.services:
                self.containers.remove_container(ref.id)

        started = []
        for service, spec in config.services.items():
            port = allocation.ports[service]
            ref = existing.get(service)
            if ref and ref.status == "running" and ref.port == port:
                started.append(ref)
                continue
            if ref:
                self.containers.remove_container(ref.id)
            image = self._image(workspace, project, service, spec, rebuild)
            started.append(
                self.containers.run_service_container(
                    project,
                    service,
                    image,
                    port,
                    spec.container_port,
                    env={**env, **spec.env},
                    command=spec.command,
                    network=self.network,
                )
            )
        return started

    def _image(self, workspace: str, project: str, service: str, spec: ServiceSpec, rebuild: bool) -> str:
        if spec.image:
            return spec.image
        tag = docker_ops.image_tag(project, service)
        if rebuild or not self.containers.image_exists(tag):
            context = os.path.join(workspace, spec.build)
            tag = self.containers.build_image(project, service, context, dockerfile=spec.dockerfile, nocache=rebuild)
        return tag

    # --- stop ---

    def stop(self, workspace: str | Path) -> list[str]:
        project = project_identity(os.path.abspath(workspace))
        return self.stop_project(project)

    def stop_project(self, project: str) -> list[str]:
        removed = self.containers.remove_project_containers(project, volumes=False)
        remove_routes(project, store=self.routes, controller=self.proxy)
        db.log_event("INFO", "Environment stopped", project=project)
        return removed

    # --- reporting ---

    def status(self, project: str, probe: bool = True) -> EnvironmentReport | None:
        block = self.routes.block(project)
        refs = {ref.service: ref for ref in self.containers.list_project_containers(project) if ref.service}
        if block is None and not refs:
            return None

        fp = db.get_fingerprint(project)
        services = []
        names = list(block.ports) if block else []
        names += [s for s in refs if s not in names]
        for service in names:
            ref = refs.get(service)
            host = block.hostnames.get(service) if block else None
            port = block.ports.get(service) if block and service in block.ports else (ref.port if ref else None)
            ep = ServiceEndpoint(
                service=service,
                port=port or 0,
                hostname=host,
                url=service_url(host, self.proxy_port) if host else None,
                running=bool(ref and ref.status == "running"),
            )
            if probe and ep.url:
                ok, msg, _ = check_endpoint(ep.url, timeout_s=settings.probe_timeout_s)
                ep.reachable = ok
                ep.detail = msg
            services.append(ep)

        return EnvironmentReport(
            project=project,
            workspace=fp.workspace if fp else None,
            network=self.network,
            services=services,
        )

    def list_environments(self) -> list[EnvironmentReport]:
        out = []
        for project in self.routes.identities():
            report = self.status(project, probe=False)
            if report is not None:
                out.append(report)
        return out
