import dataclasses
import json
import os
import sys

import pytest

# Ensure project root is importable (so `import wtr` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from wtr import db  # noqa: E402
from wtr.docker_ops import ContainerRef, PortBindError, container_name  # noqa: E402
from wtr.lifecycle import LifecycleManager  # noqa: E402
from wtr.proxy import RouteStore  # noqa: E402


@pytest.fixture(autouse=True)
def state_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite state file."""
    path = tmp_path / "state" / "wtr.db"
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(path)))
    return path


class FakeContainers:
    """In-memory stand-in for the docker_ops container functions."""

    def __init__(self):
        self.running = {}  # id -> (project, ContainerRef, env)
        self.images = set()
        self.builds = []
        self.runs = []
        self.volume_removals = []
        self.fail_port = None

    def list_project_containers(self, project):
        return [ref for p, ref, _ in self.running.values() if p == project]

    def run_service_container(self, project, service, image, host_port, internal_port, env=None, command=None,
                              network=None, gateway_alias=None):
        if host_port == self.fail_port:
            raise PortBindError(project, service, host_port, "simulated")
        name = container_name(project, service)
        ref = ContainerRef(id=f"id-{name}", name=name, service=service, status="running", port=host_port)
        self.running[ref.id] = (project, ref, dict(env or {}))
        self.runs.append((project, service, image, host_port, internal_port, network))
        return ref

    def remove_container(self, container_id, volumes=False):
        self.running.pop(container_id, None)

    def remove_project_containers(self, project, volumes=False):
        removed = []
        for cid, (p, ref, _) in list(self.running.items()):
            if p == project:
                del self.running[cid]
                removed.append(ref.name)
        if volumes:
            self.volume_removals.append(project)
        return removed

    def image_exists(self, tag):
        return tag in self.images

    def build_image(self, project, service, context, dockerfile=None, nocache=False):
        tag = f"wtr-{project}-{service}:latest"
        self.builds.append((project, service, context, nocache))
        self.images.add(tag)
        return tag

    def env_of(self, project, service):
        for p, ref, env in self.running.values():
            if p == project and ref.service == service:
                return env
        return None

    def bound_ports(self):
        return {ref.port for _, ref, _ in self.running.values()}


class FakeNginx:
    def __init__(self):
        self.ok = True
        self.output = "nginx: configuration file /etc/nginx/nginx.conf test is successful"
        self.validations = 0
        self.reloads = 0

    def validate(self):
        self.validations += 1
        return self.ok, self.output

    def reload(self):
        self.reloads += 1


@pytest.fixture
def containers():
    return FakeContainers()


@pytest.fixture
def nginx():
    return FakeNginx()


@pytest.fixture
def route_store(tmp_path):
    return RouteStore(tmp_path / "nginx")


@pytest.fixture
def manager(containers, nginx, route_store):
    infra_calls = []
    m = LifecycleManager(
        containers=containers,
        ensure_infra=lambda: infra_calls.append(1),
        routes=route_store,
        proxy=nginx,
        port_snapshot=lambda candidates: containers.bound_ports(),
        host_address="10.0.0.5",
        modulus=100,
        wildcard_suffix="nip.io",
        proxy_port=80,
        network="wtr-test",
    )
    m.infra_calls = infra_calls
    return m


@pytest.fixture
def make_workspace(tmp_path):
    def _make(rel, services=None, dependency_files=None, files=None):
        path = tmp_path / rel
        path.mkdir(parents=True)
        config = {
            "services": services
            or {
                "frontend": {"base_port": 3000, "image": "node:20-alpine"},
                "api": {"base_port": 8000, "image": "python:3.12-slim"},
            },
            "dependency_files": dependency_files or [],
        }
        (path / "wtr.json").write_text(json.dumps(config))
        for name, content in (files or {}).items():
            (path / name).write_text(content)
        return path

    return _make
