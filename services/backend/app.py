from __future__ import annotations

import os
import socket
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("APP_VERSION", "dev")

APP_STATE = {
    "ready": False,
    # Lets the content route fail while /health stays green.
    "fail_root": os.getenv("BACKEND_FAIL_ROOT", "0").strip().lower() in {"1", "true", "yes", "on"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    APP_STATE["ready"] = True
    yield
    APP_STATE["ready"] = False


app = FastAPI(title="Backend service", lifespan=lifespan)


@app.get("/")
def read_root() -> dict[str, str]:
    if APP_STATE["fail_root"]:
        raise HTTPException(status_code=500, detail="Content route failure")
    return {
        "message": "Hello from ECS Fargate!",
        "version": VERSION,
        "host": os.getenv("HOSTNAME", socket.gethostname()),
    }


@app.get("/health")
def health_check() -> dict[str, str]:
    # Liveness only: no dependency checks.
    if not APP_STATE["ready"]:
        raise HTTPException(status_code=503, detail="Starting")
    return {"status": "healthy"}
