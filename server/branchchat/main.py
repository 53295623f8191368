import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import Base, engine
from .errors import TreeInvariantViolation
from .routers import attachments, conversations, messages
from .services.generation import GenerationRegistry

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

# Create tables (simple starter; prefer Alembic later)
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Branching Chat API")
app.state.generations = GenerationRegistry()

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations.router, prefix="/api")
app.include_router(messages.router, prefix="/api")
app.include_router(attachments.router, prefix="/api")


@app.exception_handler(TreeInvariantViolation)
def tree_invariant_violation(request: Request, exc: TreeInvariantViolation):
    logger.error("Tree invariant violation on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": str(exc), "code": "TREE_INVARIANT_VIOLATION"},
    )


@app.get("/healthz")
def health():
    return {"ok": True}
