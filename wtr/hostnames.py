from __future__ import annotations

import os
import platform
import re
import socket
from pathlib import Path
from typing import Iterable, Mapping

from .settings import settings


_DISALLOWED_RE = re.compile(r"[^a-z0-9-]")

# Inside these layers, ports published by docker are reachable on the host's
# localhost, so wildcard names point at 127.0.0.1.
LOCAL_ALIAS = "127.0.0.1"

# Only used to pick the interface of the default route; no packet is sent.
_ROUTE_PROBE = ("192.0.2.1", 80)


def sanitize_identity(raw: str) -> str:
    """Lowercase, turn path separators into hyphens, drop everything outside [a-z0-9-].

    >>> sanitize_identity("Feature/XYZ_1")
    'feature-xyz1'
    """
    s = raw.lower().replace("/", "-").replace("\\", "-")
    return _DISALLOWED_RE.sub("", s)


def project_identity(workspace: str | Path) -> str:
    p = Path(os.path.abspath(workspace))
    parent = p.parent.name
    raw = f"{parent}/{p.name}" if parent else p.name
    return sanitize_identity(raw)


def detect_virtualization() -> str | None:
    """Name of a layer that maps host networking onto localhost, if we are in one."""
    if os.getenv("WSL_DISTRO_NAME") or os.getenv("WSL_INTEROP"):
        return "wsl"
    try:
        with open("/proc/sys/kernel/osrelease") as f:
            if "microsoft" in f.read().lower():
                return "wsl"
    except OSError:
        pass
    if platform.system() == "Darwin":
        # Docker Desktop / OrbStack / colima all run containers in a VM.
        return "macos-vm"
    return None


def default_route_address() -> str:
    """IPv4 address of the interface carrying the default route.

    Connecting a UDP socket only performs the route lookup. With several routes
    the kernel's choice for the default one wins; without any route we fall back
    to loopback.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(_ROUTE_PROBE)
            return s.getsockname()[0]
    except OSError:
        return LOCAL_ALIAS


def detect_host_address(override: str | None = None) -> str:
    explicit = override or settings.host_address
    if explicit:
        return explicit
    if detect_virtualization():
        return LOCAL_ALIAS
    return default_route_address()


def service_hostname(identity: str, service: str, host_address: str, suffix: str | None = None) -> str:
    return f"{identity}-{service}.{host_address}.{suffix or settings.wildcard_suffix}"


def service_hostnames(
    identity: str,
    services: Iterable[str],
    host_address: str,
    suffix: str | None = None,
) -> dict[str, str]:
    return {s: service_hostname(identity, s, host_address, suffix) for s in services}


def service_url(hostname: str, proxy_port: int | None = None) -> str:
    port = settings.proxy_port if proxy_port is None else proxy_port
    return f"http://{hostname}" if port == 80 else f"http://{hostname}:{port}"


def _env_key(service: str) -> str:
    return service.upper().replace("-", "_")


def environment_values(
    identity: str,
    ports: Mapping[str, int],
    hostnames: Mapping[str, str],
    network: str | None = None,
    gateway_alias: str | None = None,
    proxy_port: int | None = None,
) -> dict[str, str]:
    """Values handed to every container of the environment (and written to the env file)."""
    out: dict[str, str] = {
        "WTR_PROJECT": identity,
        "WTR_NETWORK": network or settings.shared_network,
        "WTR_GATEWAY_ALIAS": gateway_alias or settings.gateway_alias,
    }
    for service, port in ports.items():
        key = _env_key(service)
        out[f"WTR_{key}_PORT"] = str(port)
        host = hostnames.get(service)
        if host:
            out[f"WTR_{key}_HOST"] = host
            out[f"WTR_{key}_URL"] = service_url(host, proxy_port)
    return out


def write_env_file(path: str | Path, values: Mapping[str, str]) -> Path:
    p = Path(path)
    p.write_text("".join(f"{k}={v}\n" for k, v in values.items()))
    return p
