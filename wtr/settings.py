from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


_STATE_DIR = os.getenv("WTR_STATE_DIR", str(Path.home() / ".config" / "wtr"))


@dataclass(frozen=True)
class Settings:
    # State
    state_dir: str = _STATE_DIR
    db_path: str = os.getenv("WTR_DB_PATH", os.path.join(_STATE_DIR, "wtr.db"))

    # Allocation / naming
    port_modulus: int = _env_int("WTR_PORT_MODULUS", 100)
    wildcard_suffix: str = os.getenv("WTR_WILDCARD_SUFFIX", "nip.io")
    host_address: str | None = os.getenv("WTR_HOST_ADDRESS")
    gateway_alias: str = os.getenv("WTR_GATEWAY_ALIAS", "host.docker.internal")

    # Workspace files
    config_filename: str = os.getenv("WTR_CONFIG_FILENAME", "wtr.json")
    env_filename: str = os.getenv("WTR_ENV_FILENAME", ".wtr.env")

    # Shared infrastructure
    shared_network: str = os.getenv("WTR_SHARED_NETWORK", "wtr-shared")
    postgres_image: str = os.getenv("WTR_POSTGRES_IMAGE", "postgres:16-alpine")
    postgres_password: str = os.getenv("WTR_POSTGRES_PASSWORD", "postgres")
    redis_image: str = os.getenv("WTR_REDIS_IMAGE", "redis:7-alpine")

    # Reverse proxy
    # docker: nginx runs in the shared `proxy_container`; local: nginx on the host.
    proxy_mode: str = os.getenv("WTR_PROXY_MODE", "docker")
    proxy_port: int = _env_int("WTR_PROXY_PORT", 80)
    proxy_conf_dir: str = os.getenv("WTR_PROXY_CONF_DIR", os.path.join(_STATE_DIR, "nginx"))
    proxy_container: str = os.getenv("WTR_PROXY_CONTAINER", "wtr-proxy")
    proxy_image: str = os.getenv("WTR_PROXY_IMAGE", "nginx:1.27-alpine")
    nginx_bin: str = os.getenv("WTR_NGINX_BIN", "nginx")

    # Status API
    api_host: str = os.getenv("WTR_API_HOST", "127.0.0.1")
    api_port: int = _env_int("WTR_API_PORT", 7070)
    probe_timeout_s: int = _env_int("WTR_PROBE_TIMEOUT_S", 2)

    # Build behaviour
    # Skip the dependency fingerprint check and always start normally.
    skip_fingerprint: bool = _env_bool("WTR_SKIP_FINGERPRINT", False)


settings = Settings()
