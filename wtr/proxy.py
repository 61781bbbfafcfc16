"""nginx routing rules, one file per project identity.

The rule store is a directory included by nginx (``include <dir>/*.conf``). Each
project owns exactly one file, ``<identity>.conf``, which is replaced or removed as
a unit; other projects' files are never read or rewritten. Installing is
write → ``nginx -t`` → reload, and a failed test puts the previous file back
before anything is reloaded, so live routing never sees a broken block.
"""
from __future__ import annotations

import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from . import db, docker_ops
from .models import RouteBlock
from .settings import settings


UPSTREAM_HOST = "127.0.0.1"

HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*$"
)
_SERVICE_MARK_RE = re.compile(r"^# service: (\S+)$")
_SERVER_NAME_RE = re.compile(r"^\s*server_name\s+(\S+);$")
_PROXY_PASS_RE = re.compile(r"^\s*proxy_pass\s+http://[^:]+:(\d+);$")


class ProxyConfigError(RuntimeError):
    def __init__(self, message: str, identity: str, service: str | None = None, output: str = "") -> None:
        super().__init__(message)
        self.identity = identity
        self.service = service
        self.output = output


class ProxyReloadError(RuntimeError):
    pass


@dataclass(frozen=True)
class VhostRecord:
    project: str
    service: str
    hostname: str
    port: int


def vhost_records(identity: str, hostnames: Mapping[str, str], ports: Mapping[str, int]) -> list[VhostRecord]:
    """One record per service that has both a hostname and a port."""
    return [
        VhostRecord(project=identity, service=s, hostname=h, port=int(ports[s]))
        for s, h in hostnames.items()
        if s in ports
    ]


def check_records(records: list[VhostRecord]) -> None:
    seen: dict[str, str] = {}
    for r in records:
        if not HOSTNAME_RE.match(r.hostname):
            raise ProxyConfigError(f"Invalid hostname {r.hostname!r} for service '{r.service}'", r.project, r.service)
        if not 1 <= r.port <= 65535:
            raise ProxyConfigError(f"Invalid upstream port {r.port} for service '{r.service}'", r.project, r.service)
        if r.hostname in seen:
            raise ProxyConfigError(
                f"Hostname {r.hostname} used by both '{seen[r.hostname]}' and '{r.service}'", r.project, r.service
            )
        seen[r.hostname] = r.service


def render_block(identity: str, records: list[VhostRecord], listen_port: int | None = None) -> str:
    listen = settings.proxy_port if listen_port is None else int(listen_port)
    lines = [f"# wtr project: {identity}", "# managed by wtr; replaced on every start, removed on stop", ""]
    for r in records:
        lines += [
            f"# service: {r.service}",
            "server {",
            f"    listen {listen};",
            f"    server_name {r.hostname};",
            "",
            "    location / {",
            f"        proxy_pass http://{UPSTREAM_HOST}:{r.port};",
            "        proxy_http_version 1.1;",
            "        proxy_set_header Host $host;",
            "        proxy_set_header Upgrade $http_upgrade;",
            "        proxy_set_header Connection $http_connection;",
            "        proxy_set_header X-Real-IP $remote_addr;",
            "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "        proxy_set_header X-Forwarded-Proto $scheme;",
            "        proxy_read_timeout 3600s;",
            "    }",
            "}",
            "",
        ]
    return "\n".join(lines)


def parse_block(identity: str, content: str) -> RouteBlock:
    block = RouteBlock(project=identity)
    service: str | None = None
    for line in content.splitlines():
        m = _SERVICE_MARK_RE.match(line)
        if m:
            service = m.group(1)
            continue
        if service is None:
            continue
        m = _SERVER_NAME_RE.match(line)
        if m:
            block.hostnames[service] = m.group(1)
            continue
        m = _PROXY_PASS_RE.match(line)
        if m:
            block.ports[service] = int(m.group(1))
    return block


def service_at_line(content: str, lineno: int) -> str | None:
    """The service whose server block contains 1-based line `lineno`."""
    service = None
    for i, line in enumerate(content.splitlines(), start=1):
        if i > lineno:
            break
        m = _SERVICE_MARK_RE.match(line)
        if m:
            service = m.group(1)
    return service


class RouteStore:
    """Directory of ``<identity>.conf`` files with replace-by-key semantics."""

    def __init__(self, conf_dir: str | Path | None = None) -> None:
        self.conf_dir = Path(os.path.expanduser(str(conf_dir or settings.proxy_conf_dir)))

    def path(self, identity: str) -> Path:
        return self.conf_dir / f"{identity}.conf"

    def get(self, identity: str) -> str | None:
        p = self.path(identity)
        return p.read_text() if p.is_file() else None

    def put(self, identity: str, content: str) -> None:
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.conf_dir, prefix=f".{identity}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path(identity))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, identity: str) -> bool:
        p = self.path(identity)
        if not p.exists():
            return False
        p.unlink()
        return True

    def identities(self) -> list[str]:
        if not self.conf_dir.is_dir():
            return []
        return sorted(p.stem for p in self.conf_dir.glob("*.conf"))

    def block(self, identity: str) -> RouteBlock | None:
        content = self.get(identity)
        return parse_block(identity, content) if content is not None else None


class NginxController(Protocol):
    def validate(self) -> tuple[bool, str]: ...

    def reload(self) -> None: ...


class LocalNginx:
    """nginx running on the host, driven through its binary."""

    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or settings.nginx_bin

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([self.binary, *args], capture_output=True, text=True)

    def validate(self) -> tuple[bool, str]:
        r = self._run("-t")
        return r.returncode == 0, (r.stderr or "") + (r.stdout or "")

    def reload(self) -> None:
        r = self._run("-s", "reload")
        if r.returncode != 0:
            raise ProxyReloadError(f"nginx reload failed: {r.stderr.strip()}")


class DockerNginx:
    """nginx running in the shared proxy container on the host network."""

    def __init__(self, container: str | None = None) -> None:
        self.container = container or settings.proxy_container

    def validate(self) -> tuple[bool, str]:
        code, output = docker_ops.exec_in_container(self.container, ["nginx", "-t"])
        return code == 0, output

    def reload(self) -> None:
        code, output = docker_ops.exec_in_container(self.container, ["nginx", "-s", "reload"])
        if code != 0:
            raise ProxyReloadError(f"nginx reload failed in {self.container}: {output.strip()}")


def default_controller() -> NginxController:
    if settings.proxy_mode == "local":
        return LocalNginx()
    return DockerNginx()


def _offending_service(identity: str, content: str, output: str) -> str | None:
    m = re.search(rf"(?:^|[/\s]){re.escape(identity)}\.conf:(\d+)", output)
    if not m:
        return None
    return service_at_line(content, int(m.group(1)))


def _restore(store: RouteStore, identity: str, previous: str | None) -> None:
    if previous is None:
        store.delete(identity)
    else:
        store.put(identity, previous)


def install_routes(
    identity: str,
    hostnames: Mapping[str, str],
    ports: Mapping[str, int],
    store: RouteStore | None = None,
    controller: NginxController | None = None,
    listen_port: int | None = None,
) -> list[VhostRecord]:
    """Replace the identity's block, validate, and reload only if nginx accepts it."""
    store = store or RouteStore()
    controller = controller or default_controller()

    records = vhost_records(identity, hostnames, ports)
    if not records:
        remove_routes(identity, store=store, controller=controller)
        return []
    check_records(records)

    content = render_block(identity, records, listen_port)
    previous = store.get(identity)
    store.put(identity, content)

    try:
        ok, output = controller.validate()
    except BaseException:
        _restore(store, identity, previous)
        raise
    if not ok:
        _restore(store, identity, previous)
        service = _offending_service(identity, content, output)
        where = f" (service '{service}')" if service else ""
        db.log_event("ERROR", f"Routing rejected by nginx{where}; previous routes kept", project=identity, service=service)
        raise ProxyConfigError(f"nginx rejected routes for {identity}{where}: {output.strip()}", identity, service, output)

    controller.reload()
    db.log_event("INFO", f"Published {len(records)} route(s)", project=identity)
    return records


def remove_routes(
    identity: str,
    store: RouteStore | None = None,
    controller: NginxController | None = None,
) -> bool:
    store = store or RouteStore()
    if not store.delete(identity):
        return False
    (controller or default_controller()).reload()
    db.log_event("INFO", "Removed routes", project=identity)
    return True
