from __future__ import annotations

from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query

from . import __version__, db
from .lifecycle import LifecycleManager
from .models import EnvironmentReport

app = FastAPI(title="Worktree Router", version=__version__)


def get_manager() -> LifecycleManager:
    return LifecycleManager()


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/environments", response_model=list[EnvironmentReport])
def environments(manager: LifecycleManager = Depends(get_manager)) -> list[EnvironmentReport]:
    return manager.list_environments()


@app.get("/environments/{project}", response_model=EnvironmentReport)
def environment(
    project: str,
    probe: bool = Query(False, description="Request each hostname through the proxy"),
    manager: LifecycleManager = Depends(get_manager),
) -> EnvironmentReport:
    report = manager.status(project, probe=probe)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No environment '{project}'")
    return report


@app.get("/events")
def events(limit: int = Query(50, ge=1, le=1000), project: str | None = None) -> list[dict[str, Any]]:
    return db.latest_events(limit=limit, project=project)
