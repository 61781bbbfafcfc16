from types import SimpleNamespace

import pytest
from docker.errors import APIError, NotFound

from wtr import docker_ops, infra
from wtr.docker_ops import PortBindError


class _Containers:
    def __init__(self):
        self.by_name = {}
        self.run_calls = []

    def get(self, name):
        if name not in self.by_name:
            raise NotFound(f"No such container: {name}")
        return self.by_name[name]

    def run(self, image, **kwargs):
        self.run_calls.append((image, kwargs))
        if kwargs.get("ports") and 3007 in kwargs["ports"].values():
            self.by_name[kwargs["name"]] = SimpleNamespace(remove=lambda force=True, v=False: self.by_name.pop(kwargs["name"]))
            raise APIError("driver failed programming external connectivity: Bind for 0.0.0.0:3007 failed: port is already allocated")
        c = SimpleNamespace(id=f"id-{kwargs['name']}", name=kwargs["name"], status="running", start=lambda: None)
        self.by_name[kwargs["name"]] = c
        return c


class _Collection:
    def __init__(self):
        self.items = set()
        self.created = []

    def get(self, name):
        if name not in self.items:
            raise NotFound(name)
        return SimpleNamespace(remove=lambda **kw: self.items.discard(name))

    def create(self, name, **kwargs):
        self.items.add(name)
        self.created.append(name)


class FakeClient:
    def __init__(self):
        self.containers = _Containers()
        self.networks = _Collection()
        self.volumes = _Collection()

    def ping(self):
        return True


@pytest.fixture
def client(monkeypatch):
    c = FakeClient()
    monkeypatch.setattr(docker_ops, "_client", lambda: c)
    return c


def test_run_service_container_labels_ports_and_gateway(client):
    ref = docker_ops.run_service_container(
        "w-proj-main", "api", "api:dev", 8042, 8000, env={"A": "1"}, network="wtr-shared",
        gateway_alias="host.docker.internal",
    )
    assert ref.name == "wtr-w-proj-main-api"
    assert ref.port == 8042
    image, kwargs = client.containers.run_calls[0]
    assert image == "api:dev"
    assert kwargs["ports"] == {"8000/tcp": 8042}
    assert kwargs["labels"] == {"wtr.project": "w-proj-main", "wtr.service": "api", "wtr.port": "8042"}
    assert kwargs["extra_hosts"] == {"host.docker.internal": "host-gateway"}
    assert kwargs["network"] == "wtr-shared"


def test_port_conflict_becomes_port_bind_error(client):
    with pytest.raises(PortBindError) as exc:
        docker_ops.run_service_container("w-proj-main", "web", "web:dev", 3007, 80)
    assert exc.value.port == 3007
    assert "wtr start" in exc.value.remedy
    assert "wtr-w-proj-main-web" not in client.containers.by_name


def test_ensure_container_never_recreates(client):
    assert docker_ops.ensure_container("wtr-redis", "redis:7-alpine") == "created"
    assert docker_ops.ensure_container("wtr-redis", "redis:7-alpine") == "running"
    client.containers.by_name["wtr-redis"].status = "exited"
    assert docker_ops.ensure_container("wtr-redis", "redis:7-alpine") == "started"
    assert len(client.containers.run_calls) == 1


def test_ensure_network_creates_once(client):
    assert docker_ops.ensure_network("wtr-shared") is True
    assert docker_ops.ensure_network("wtr-shared") is False
    assert client.networks.created == ["wtr-shared"]


def test_exec_in_missing_container_is_runtime_unavailable(client):
    with pytest.raises(docker_ops.RuntimeUnavailable):
        docker_ops.exec_in_container("wtr-proxy", ["nginx", "-t"])


def test_shared_infra_bring_up_is_idempotent(client, tmp_path, monkeypatch):
    import dataclasses

    s = dataclasses.replace(infra.settings, proxy_conf_dir=str(tmp_path / "nginx"), shared_network="wtr-shared")
    monkeypatch.setattr(infra, "settings", s)

    first = infra.ensure_shared_infra()
    assert first["wtr-shared"] == "created"
    assert first["wtr-postgres"] == "created"
    assert first["wtr-redis"] == "created"

    second = infra.ensure_shared_infra()
    assert set(second.values()) <= {"present", "running"}
    assert client.volumes.created == ["wtr-postgres-data", "wtr-redis-data"]

    pg_kwargs = next(kw for image, kw in client.containers.run_calls if kw["name"] == "wtr-postgres")
    assert pg_kwargs["network"] == "wtr-shared"
    assert pg_kwargs["volumes"] == {"wtr-postgres-data": {"bind": "/var/lib/postgresql/data", "mode": "rw"}}


def test_docker_proxy_mode_adds_host_network_nginx(client, tmp_path, monkeypatch):
    import dataclasses

    s = dataclasses.replace(infra.settings, proxy_mode="docker", proxy_container="wtr-proxy",
                            proxy_conf_dir=str(tmp_path / "nginx"))
    monkeypatch.setattr(infra, "settings", s)
    infra.ensure_shared_infra()
    proxy_kwargs = next(kw for image, kw in client.containers.run_calls if kw["name"] == "wtr-proxy")
    assert proxy_kwargs["network_mode"] == "host"
    assert "network" not in proxy_kwargs
    assert proxy_kwargs["volumes"] == {str(tmp_path / "nginx"): {"bind": "/etc/nginx/conf.d", "mode": "ro"}}
