"""Port allocation for workspaces.

Each workspace gets one offset that is added to every service's base port. The
offset is chosen like a slot in an open-addressing hash table: the workspace path
hashes to a preferred slot, and a linear probe walks forward until a slot is found
where *all* of the workspace's ports are free in the given snapshot.

Nothing is persisted. Two workspaces allocating at the same moment can see the same
snapshot and pick the same offset; the loser finds out when its container fails to
bind and simply runs the allocation again.
"""
from __future__ import annotations

import hashlib
import socket
from dataclasses import dataclass
from typing import Iterable, Mapping

import psutil

from . import db
from .settings import settings


MAX_PORT = 65535


@dataclass(frozen=True)
class Allocation:
    offset: int
    preferred: int
    ports: dict[str, int]
    exhausted: bool = False


def preferred_offset(workspace: str, modulus: int) -> int:
    """Stable hash of the full workspace path, reduced to [0, modulus)."""
    if modulus <= 0:
        raise ValueError("modulus must be positive")
    digest = hashlib.sha256(workspace.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % modulus


def ports_for_offset(base_ports: Mapping[str, int], offset: int) -> dict[str, int]:
    return {service: int(base) + offset for service, base in base_ports.items()}


def offset_is_free(base_ports: Mapping[str, int], offset: int, bound: set[int] | frozenset[int]) -> bool:
    # Joint check: a single busy or out-of-range port disqualifies the offset for every service.
    return all(
        int(base) + offset <= MAX_PORT and int(base) + offset not in bound for base in base_ports.values()
    )


def allocate(
    workspace: str,
    base_ports: Mapping[str, int],
    bound: Iterable[int],
    modulus: int | None = None,
) -> Allocation:
    """Pick the offset for `workspace` given a snapshot of bound TCP ports.

    Returns the first offset (probing linearly from the hashed preference) where
    every base+offset port is absent from `bound`. When all offsets are taken the
    preferred one is returned with ``exhausted=True``; the bind failure surfaces
    later, at container start.
    """
    m = settings.port_modulus if modulus is None else int(modulus)
    snapshot = frozenset(bound)
    p = preferred_offset(workspace, m)

    for i in range(m):
        o = (p + i) % m
        if offset_is_free(base_ports, o, snapshot):
            return Allocation(offset=o, preferred=p, ports=ports_for_offset(base_ports, o))

    db.log_event(
        "WARN",
        f"No free port offset in [0, {m}) for {workspace}; falling back to preferred offset {p}. "
        "Ports may already be bound; widen WTR_PORT_MODULUS if this persists.",
    )
    return Allocation(offset=p, preferred=p, ports=ports_for_offset(base_ports, p), exhausted=True)


def candidate_ports(base_ports: Mapping[str, int], modulus: int) -> set[int]:
    return {int(base) + o for base in base_ports.values() for o in range(modulus)}


def _port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("0.0.0.0", port))
        except OSError:
            return True
    return False


def bound_tcp_ports(candidates: Iterable[int] | None = None) -> set[int]:
    """Snapshot of TCP ports currently listening on this host.

    Uses the kernel socket table via psutil. Some platforms (macOS without root)
    refuse that query; then each of `candidates` is bind-probed instead.
    """
    try:
        return {
            c.laddr.port
            for c in psutil.net_connections(kind="tcp")
            if c.status == psutil.CONN_LISTEN and c.laddr
        }
    except psutil.AccessDenied:
        if candidates is None:
            raise
        return {p for p in candidates if _port_in_use(p)}
