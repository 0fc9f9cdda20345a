from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .adapters.ms365.errors import ErrorCategory, GraphError
from .logging_config import setup_logging
from .routes import ms365


setup_logging()

app = FastAPI(title="M365 Tool Gateway", version=__version__)
app.include_router(ms365.router)


# Boundary mapping: throttling and transport failures are retryable by the caller
STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTH: 401,
    ErrorCategory.THROTTLED: 503,
    ErrorCategory.API_ERROR: 502,
    ErrorCategory.NETWORK_ERROR: 503,
    ErrorCategory.SYSTEM: 500,
}


@app.exception_handler(GraphError)
async def graph_error_handler(request: Request, exc: GraphError):
    """Render a classified Graph failure as JSON with a category-specific status."""
    headers = {}
    if exc.category is ErrorCategory.THROTTLED:
        retry_after = exc.context.get("retry_after") or exc.context.get("max_retry_after")
        if retry_after:
            headers["Retry-After"] = str(int(round(retry_after)) or 1)
    return JSONResponse(
        status_code=STATUS_BY_CATEGORY.get(exc.category, 500),
        content={"error": exc.to_dict(), "retryable": exc.retryable},
        headers=headers,
    )


@app.get("/api/health")
def health():
    """Minimal liveness endpoint for tool hosts and orchestrators."""
    return {"status": "ok"}
