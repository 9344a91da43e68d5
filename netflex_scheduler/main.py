import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import callback as callback_api
from .errors import SchedulerError
from .metrics import metrics_response, request_latency_seconds

app = FastAPI(title="Netflex Scheduler Bridge")

app.include_router(callback_api.router)


@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError):
    return JSONResponse(
        {"uuid": exc.job_id or "unknown", "success": False, "error": exc.message},
        status_code=exc.status_code,
    )


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()
