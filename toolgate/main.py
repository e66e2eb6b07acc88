"""Main FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from toolgate import __version__
from toolgate.api.endpoints import router
from toolgate.config import get_settings
from toolgate.services.conversation import ScheduledTaskRunner, get_conversation_service
from toolgate.utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    runner = ScheduledTaskRunner(get_conversation_service(), poll_seconds=get_settings().schedule_poll_seconds)
    runner.start()
    try:
        yield
    finally:
        await runner.stop()


# Create FastAPI application
app = FastAPI(
    title="Toolgate",
    description=(
        "A chat agent service whose tool calls go through an approval gate: "
        "low-risk tools run immediately, others wait for a human decision."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    tags_metadata=[
        {
            "name": "Conversation",
            "description": (
                "Run turns as Server-Sent Event streams and read or delete conversation history. "
                "Tool calls that need approval pause the turn until a decision is sent."
            ),
        },
        {
            "name": "Operations",
            "description": "Operator actions on conversations flagged inconsistent.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("toolgate.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
