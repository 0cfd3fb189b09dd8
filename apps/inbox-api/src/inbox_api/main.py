"""
Inbox API

FastAPI app serving the agent inbox, team and billing endpoints, plus the
WhatsApp and Stripe webhooks.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inbox.streams.groups import ensure_streams
from inbox_api.routers import (
    admin,
    analytics,
    auth,
    billing,
    broadcasts,
    contacts,
    conversations,
    stripe_webhook,
    team,
    templates,
    whatsapp_webhook,
)
from inboxcore.errors import AppError, RateLimitError
from inboxcore.logging import setup_logging
from inboxcore.redis import close_redis, get_redis_client
from inboxcore.settings import get_settings

# Configure logging before creating the app
setup_logging()
settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="WhatsApp Inbox API",
    description="Multi-tenant WhatsApp Business inbox",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"path": request.url.path})

    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.on_event("startup")
async def startup():
    """Ensure Redis streams exist on startup."""
    try:
        ensure_streams(get_redis_client())
    except Exception as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    close_redis()


for module in (
    auth,
    conversations,
    contacts,
    templates,
    broadcasts,
    team,
    analytics,
    billing,
    admin,
    whatsapp_webhook,
    stripe_webhook,
):
    app.include_router(module.router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
