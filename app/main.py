from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import directory, notifications, projects, tasks
from app.infra.db import check_db_ready
from app.infra.log import RequestLoggingMiddleware, configure_logging
from app.infra.realtime import check_redis_ready

configure_logging()

app = FastAPI(
    title="dept-task-tracker",
    description="Departmental task tracker: hierarchical access control and task lifecycle engine.",
    version="0.1.0",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(directory.router, prefix="/api/directory", tags=["directory"])
app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
