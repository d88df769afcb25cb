from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from coursegen.api.routes import jobs
from coursegen.config import get_settings
from coursegen.core.exceptions import global_exception_handler, http_exception_handler, orchestration_exception_handler, request_validation_exception_handler
from coursegen.core.lifespan import lifespan
from coursegen.core.middleware import RequestLoggingMiddleware
from coursegen.jobs.errors import JobAccessError, StateConflictError, StructuralError

settings = get_settings()

app = FastAPI(title="coursegen-engine", lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "x-user-id", "x-org-id"], expose_headers=["content-length", "x-request-id"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(JobAccessError, orchestration_exception_handler)
app.add_exception_handler(StateConflictError, orchestration_exception_handler)
app.add_exception_handler(StructuralError, orchestration_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
