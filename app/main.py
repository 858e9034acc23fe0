from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import settings
from app.api.v1.api import api_router
from app.core.exceptions import OrchestratorError, orchestrator_error_handler
from app.middleware.ip_whitelist import AdminIPWhitelistMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.middleware.metrics import PrometheusMiddleware, metrics_endpoint, set_app_info
from app.logging_config import setup_logging, log_missing_credentials

# ── Initialize structured logging ──
setup_logging()
log_missing_credentials()

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

cors_origins = ["http://localhost:3000"]
if settings.BACKEND_CORS_ORIGINS:
    cors_origins.extend([origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Admin / cron IP whitelist – blocks non-whitelisted IPs from privileged endpoints
app.add_middleware(AdminIPWhitelistMiddleware)

# Request logging middleware – request ID, timing, context
app.add_middleware(RequestLoggingMiddleware)

# Prometheus metrics middleware – request count, latency, in-progress
app.add_middleware(PrometheusMiddleware)

app.add_exception_handler(OrchestratorError, orchestrator_error_handler)

app.include_router(api_router, prefix=settings.API_V1_STR)

@app.get("/")
def root():
    return {"message": "Welcome to the VM Orchestrator API", "docs": "/docs"}

@app.get("/health")
def health_check():
    return {"status": "ok", "env": settings.APP_ENV}

# Prometheus metrics endpoint
app.add_route("/metrics", metrics_endpoint)
set_app_info(version="1.0.0", env=settings.APP_ENV)
