"""Shared infrastructure used by every environment on the host.

A bridge network, a postgres and a redis container (each with a named volume), and,
in docker proxy mode, the nginx container that serves all vhosts. Bring-up creates
what is missing and leaves everything else alone. Teardown is a separate, explicit
operation because other environments may still depend on it.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from . import docker_ops
from .db import log_event
from .settings import settings


POSTGRES_HOST = "wtr-postgres"
REDIS_HOST = "wtr-redis"


@dataclass(frozen=True)
class SharedService:
    name: str
    image: str
    volume: str | None = None
    mount: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    run_kwargs: dict[str, Any] = field(default_factory=dict)


def shared_services() -> list[SharedService]:
    out = [
        SharedService(
            name=POSTGRES_HOST,
            image=settings.postgres_image,
            volume="wtr-postgres-data",
            mount="/var/lib/postgresql/data",
            env={"POSTGRES_PASSWORD": settings.postgres_password},
        ),
        SharedService(
            name=REDIS_HOST,
            image=settings.redis_image,
            volume="wtr-redis-data",
            mount="/data",
        ),
    ]
    if settings.proxy_mode == "docker":
        conf_dir = os.path.abspath(os.path.expanduser(settings.proxy_conf_dir))
        out.append(
            SharedService(
                name=settings.proxy_container,
                image=settings.proxy_image,
                run_kwargs={
                    # Upstreams are 127.0.0.1:<port>, i.e. the host's published ports.
                    "network_mode": "host",
                    "volumes": {conf_dir: {"bind": "/etc/nginx/conf.d", "mode": "ro"}},
                },
            )
        )
    return out


def shared_env() -> dict[str, str]:
    """Connection hints for isolated services on the shared network."""
    return {
        "WTR_POSTGRES_HOST": POSTGRES_HOST,
        "WTR_POSTGRES_PORT": "5432",
        "WTR_REDIS_HOST": REDIS_HOST,
        "WTR_REDIS_PORT": "6379",
    }


def ensure_shared_infra() -> dict[str, str]:
    """Create the network and shared containers if absent. Returns name -> state."""
    states: dict[str, str] = {}
    states[settings.shared_network] = "created" if docker_ops.ensure_network(settings.shared_network) else "present"
    os.makedirs(os.path.expanduser(settings.proxy_conf_dir), exist_ok=True)

    for svc in shared_services():
        kwargs: dict[str, Any] = dict(svc.run_kwargs)
        if svc.volume:
            docker_ops.ensure_volume(svc.volume)
            kwargs["volumes"] = {svc.volume: {"bind": svc.mount, "mode": "rw"}}
        if "network_mode" not in kwargs:
            kwargs["network"] = settings.shared_network
        if svc.env:
            kwargs["environment"] = svc.env
        kwargs.setdefault("labels", {docker_ops.LABEL_SHARED: "true"})
        states[svc.name] = docker_ops.ensure_container(svc.name, svc.image, **kwargs)
    return states


def teardown_shared_infra(remove_volumes: bool = False) -> list[str]:
    removed = []
    for svc in shared_services():
        if docker_ops.remove_named_container(svc.name):
            removed.append(svc.name)
        if remove_volumes and svc.volume and docker_ops.remove_volume(svc.volume):
            removed.append(svc.volume)
    if docker_ops.remove_network(settings.shared_network):
        removed.append(settings.shared_network)
    if removed:
        log_event("INFO", f"Shared infrastructure removed: {', '.join(removed)}")
    return removed
