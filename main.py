"""
folioflow - FastAPI Backend

Folio/project approval workflow driven by WhatsApp messages.

Run Instructions:
-----------------
1. Install:
   pip install -e .

2. Seed the directory (plants and people):
   python scripts/seed_directory.py directory.json

3. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

4. Point the Twilio WhatsApp sandbox webhook at:
   https://<host>/webhooks/whatsapp
"""

import time

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from folioflow import __version__
from folioflow.api import reports_router, webhooks_router
from folioflow.core.database import get_db
from folioflow.core.dispatch import get_dispatcher
from folioflow.core.settings import get_settings
from folioflow.services.auth import verify_api_key
from folioflow.services.errors import FolioflowError, to_http_exception
from folioflow.services.logging import log_error, log_request, logger
from folioflow.services.metrics import get_metrics, record_error, record_request

app = FastAPI(
    title="folioflow API",
    description="""
    folioflow - expense folio approvals over WhatsApp

    ## Inbound
    `POST /webhooks/whatsapp` receives Twilio form posts and always answers 200 with TwiML.

    ## Reports
    Read-only folio, project and notification views under `/reports`.
    Set `API_KEY` to require an `X-API-Key` header.
    """,
    version=__version__,
)

app.include_router(webhooks_router)
app.include_router(reports_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id,
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)

            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(FolioflowError)
async def folioflow_exception_handler(request: Request, exc: FolioflowError):
    """Structured JSON for errors escaping an HTTP route."""
    log_error(exc.code.value, str(exc), exc.context)
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error("unhandled", str(exc), {"path": str(request.url.path), "method": request.method}, exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Create or migrate the schema before the first request."""
    db = get_db()
    db.initialize()
    settings = get_settings()
    logger.info("folioflow %s started (db=%s)", __version__, "postgres" if db.use_postgres else "sqlite")
    if not settings.transport_configured:
        logger.warning("Twilio is not configured; notifications will be logged as FAILED")
    if not settings.object_store_configured:
        logger.warning("S3 is not configured; attachments will be refused")


@app.on_event("shutdown")
async def shutdown_event():
    """Let in-flight fan-outs finish."""
    await get_dispatcher().drain(timeout=30)


@app.get("/health", tags=["System"], summary="Health Check")
async def health():
    settings = get_settings()
    return {
        "status": "ok",
        "version": __version__,
        "transport_configured": settings.transport_configured,
        "object_store_configured": settings.object_store_configured,
    }


@app.get("/health/db", tags=["System"], summary="Database Health Check")
async def health_db():
    try:
        result = get_db().ping()
    except Exception as e:
        log_error("health_db", str(e), exception=e)
        return JSONResponse(status_code=503, content={"ok": False, "error": "database unavailable"})
    return result


@app.get("/metrics", tags=["System"], summary="Get Metrics")
async def metrics_endpoint(api_key: str = Depends(verify_api_key)):
    try:
        metrics = get_metrics()
    except Exception as e:
        log_error("metrics_error", str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get metrics: {str(e)}")
    metrics["pending_fanouts"] = get_dispatcher().pending
    return metrics
