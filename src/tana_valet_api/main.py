from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from tana_valet_common.observability import TRACE_ID_HEADER, TraceContextMiddleware, current_trace_id, setup_loguru
from tana_valet_api.api.payment_routes import router as payment_router
from tana_valet_api.api.pricing_routes import router as pricing_router
from tana_valet_api.api.vehicle_routes import router as vehicle_router
from tana_valet_api.config import settings
from tana_valet_api.errors import ParkingError

setup_loguru(
    settings.app_name,
    log_to_stdout=settings.log_to_stdout,
    log_to_file=settings.log_to_file,
    log_dir=settings.log_dir,
    level=settings.log_level,
)

app = FastAPI(title=settings.app_name)
app.add_middleware(TraceContextMiddleware)
app.include_router(vehicle_router)
app.include_router(payment_router)
app.include_router(pricing_router)


@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError) -> JSONResponse:
    logger.warning(
        "parking_error method={} path={} status_code={} error={}",
        request.method,
        request.url.path,
        exc.status_code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.extra})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = current_trace_id()
    logger.opt(exception=exc).error("unhandled_error method={} path={}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "trace_id": trace_id},
        headers={TRACE_ID_HEADER: trace_id},
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok", "service": settings.app_name}
