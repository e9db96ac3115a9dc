from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from photoflow.api.routes import billing, credits, workflows
from photoflow.config import get_settings
from photoflow.core.errors import PhotoflowError
from photoflow.core.exceptions import global_exception_handler, http_exception_handler, photoflow_exception_handler, request_validation_exception_handler
from photoflow.core.lifespan import lifespan
from photoflow.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

settings = get_settings()

app = FastAPI(title="photoflow-engine", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(
  CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization", "x-user-id"], expose_headers=["content-length", "x-request-id"]
)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(PhotoflowError, photoflow_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(workflows.router, prefix="/v1/workflows", tags=["workflows"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(billing.router, prefix="/internal", tags=["billing"])
