"""
Main FastAPI application entry point
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orgchat.api import chat
from orgchat.core.config import settings
from orgchat.core.logging import configure_logging
from orgchat.db.session import Base, get_engine
from orgchat.models import chat as chat_models  # noqa: F401  (registers tables)

configure_logging()
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=get_engine())

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Organization-scoped chat sessions with streamed, cited answers",
    version="1.0.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(chat.router, prefix=f"{settings.API_PREFIX}/chat", tags=["Chat"])


@app.get("/")
async def root():
    return {
        "message": "Organization Chat API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def run():
    """Serve the API with uvicorn (``orgchat`` console script)."""
    import uvicorn

    uvicorn.run("orgchat.main:app", host=settings.HOST, port=settings.PORT, reload=settings.RELOAD)


if __name__ == "__main__":
    run()
