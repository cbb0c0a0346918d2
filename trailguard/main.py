from __future__ import annotations

from fastapi import FastAPI, HTTPException

from trailguard.api.routers import agency, auth, guide, permit, safety
from trailguard.infra.audit import AuditMiddleware
from trailguard.infra.db import check_db_ready
from trailguard.infra.log import configure_logging
from trailguard.infra.ratelimit import RateLimitMiddleware
from trailguard.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="trailguard",
    description="Guide credentials, travel permits and expedition safety tracking.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)
app.add_middleware(RateLimitMiddleware)

app.include_router(auth.router, prefix="/api/v1/auth", tags=["auth"])
app.include_router(guide.router, prefix="/api/v1/guides", tags=["guides"])
app.include_router(agency.router, prefix="/api/v1/agencies", tags=["agencies"])
app.include_router(permit.public_router, prefix="/api/v1/permits", tags=["permits-public"])
app.include_router(permit.router, prefix="/api/v1/permits", tags=["permits"])
app.include_router(safety.router, prefix="/api/v1/safety", tags=["safety"])


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
