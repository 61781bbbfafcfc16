from __future__ import annotations

import os

import httpx
from fastapi import FastAPI, HTTPException

from wtr.loopback import loopback_client

PROJECT = os.getenv("WTR_PROJECT", "dev")
WEB_URL = os.getenv("WTR_WEB_URL", "http://localhost:3000")

app = FastAPI(title=f"Example API ({PROJECT})")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "project": PROJECT}


@app.get("/web")
def call_web() -> dict[str, str | int]:
    # WEB_URL is a wildcard hostname; from inside this container 127.0.0.1 would be
    # the container itself, so the client goes through the host gateway instead.
    with loopback_client(timeout=5.0) as client:
        try:
            r = client.get(WEB_URL)
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
    return {"url": WEB_URL, "status": r.status_code}
