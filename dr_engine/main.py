from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from dr_engine.api.backups import router as backups_router
from dr_engine.api.dr import router as dr_router
from dr_engine.api.failover import router as failover_router
from dr_engine.api.recovery_tests import router as recovery_tests_router
from dr_engine.api.topology import router as topology_router
from dr_engine.config import settings
from dr_engine.db import SessionLocal
from dr_engine.errors import register_error_handlers
from dr_engine.logging import configure_logging
from dr_engine.metrics import REQUEST_COUNT

app = FastAPI(title="DR Engine API")

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    REQUEST_COUNT.labels(method=request.method, path=path, status=str(response.status_code)).inc()
    return response


app.include_router(dr_router)
app.include_router(backups_router)
app.include_router(topology_router)
app.include_router(failover_router)
app.include_router(recovery_tests_router)


@app.get("/health")
def health_check():
    checks = {"db": False, "broker": False}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["db"] = True
    except Exception:
        pass
    finally:
        if db is not None:
            db.close()

    if settings.testing:
        checks.pop("broker")
    else:
        try:
            import redis as redis_lib

            r = redis_lib.from_url(settings.celery_broker_url, socket_timeout=2)
            r.ping()
            checks["broker"] = True
        except Exception:
            pass

    all_ok = all(checks.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "checks": checks,
    }


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
