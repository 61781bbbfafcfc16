from __future__ import annotations

import argparse
import json
import os
import sys

from . import db, infra
from .docker_ops import PortBindError, RuntimeUnavailable
from .hostnames import project_identity
from .lifecycle import LifecycleManager
from .models import ConfigError, load_workspace_config
from .proxy import ProxyConfigError, ProxyReloadError
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _error(message: str, **extra) -> int:
    _print({"error": message, **extra})
    return 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run isolated dev environments per worktree behind one reverse proxy")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_infra = sub.add_parser("infra", help="Shared infrastructure (network, postgres, redis, proxy)")
    s_infra.add_argument("action", choices=["up", "down"])
    s_infra.add_argument("--volumes", action="store_true", help="With 'down': also delete data volumes")

    s_start = sub.add_parser("start", help="Allocate ports, start services and publish routes")
    s_start.add_argument("workspace", nargs="?", default=".")
    s_start.add_argument("--rebuild", action="store_true", help="Force a full rebuild")

    s_stop = sub.add_parser("stop", help="Stop services and remove routes")
    s_stop.add_argument("workspace", nargs="?", default=".")

    s_status = sub.add_parser("status", help="Show one environment, probing its hostnames")
    s_status.add_argument("workspace", nargs="?", default=".")
    s_status.add_argument("--no-probe", action="store_true")

    sub.add_parser("ls", help="List environments with published routes")

    s_env = sub.add_parser("env", help="Print the values an environment would receive (no side effects)")
    s_env.add_argument("workspace", nargs="?", default=".")

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--project")

    s_serve = sub.add_parser("serve", help="Run the read-only status API")
    s_serve.add_argument("--host", default=settings.api_host)
    s_serve.add_argument("--port", type=int, default=settings.api_port)

    args = p.parse_args(argv)

    try:
        return _dispatch(args)
    except ConfigError as e:
        return _error(str(e))
    except PortBindError as e:
        return _error(str(e), service=e.service, port=e.port, remedy=e.remedy)
    except ProxyConfigError as e:
        return _error(str(e), project=e.identity, service=e.service)
    except (ProxyReloadError, RuntimeUnavailable) as e:
        return _error(str(e))


def _dispatch(args: argparse.Namespace) -> int:
    if args.cmd == "infra":
        if args.action == "up":
            _print(infra.ensure_shared_infra())
        else:
            _print({"removed": infra.teardown_shared_infra(remove_volumes=args.volumes)})
        return 0

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("wtr.api:app", host=args.host, port=args.port)
        return 0

    if args.cmd == "events":
        _print(db.latest_events(limit=args.limit, project=args.project))
        return 0

    manager = LifecycleManager()

    if args.cmd == "start":
        env = manager.start(args.workspace, rebuild=args.rebuild)
        _print(env.report(manager.proxy_port).model_dump())
        return 0

    if args.cmd == "stop":
        _print({"removed": manager.stop(args.workspace)})
        return 0

    if args.cmd == "status":
        project = project_identity(os.path.abspath(args.workspace))
        report = manager.status(project, probe=not args.no_probe)
        if report is None:
            return _error(f"No environment for {project}")
        _print(report.model_dump())
        return 0 if all(s.reachable is not False for s in report.services) else 1

    if args.cmd == "ls":
        _print([r.model_dump() for r in manager.list_environments()])
        return 0

    if args.cmd == "env":
        path = os.path.abspath(args.workspace)
        config = load_workspace_config(path)
        _print(manager.preview(path, config))
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
