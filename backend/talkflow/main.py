# /talkflow/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import structlog

from talkflow.config.settings import settings
from talkflow.utils.errors import TalkFlowError
from talkflow.utils.lifecycle import lifespan
from talkflow.utils.metrics import response_time_histogram
from talkflow.routes import flows, public, talks

log = structlog.get_logger(__name__)

app = FastAPI(
    title="TalkFlow",
    version="1.0.0",
    description="Flow-driven conversation engine for AI agents",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=f"/api/{settings.api_version}/redoc" if settings.environment != "production" else None,
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(TalkFlowError)
async def talkflow_error_handler(request: Request, exc: TalkFlowError):
    log.warning("Request rejected", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)


# --- API Routers ---
app.include_router(public.router)
app.include_router(talks.router, prefix=f"/api/{settings.api_version}")
app.include_router(flows.router, prefix=f"/api/{settings.api_version}")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "talkflow.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
    )
