import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core import db, errors, settings, storage
from feedback import router as feedback_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings.configure_logging()
    # Initialize the DB pool and the blob store once per process.
    await db.init_pool()
    try:
        await storage.init_store()
        yield
    finally:
        storage.close_store()
        await db.close_pool()


app = FastAPI(lifespan=lifespan)

# Allow local frontend dev server to call this API from the browser.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(errors.FeedbackError)
async def feedback_error_handler(request: Request, exc: errors.FeedbackError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed method=%s path=%s kind=%s error=%s",
            request.method,
            request.url.path,
            exc.kind,
            exc,
            exc_info=exc,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_detail, "kind": exc.kind},
    )


app.include_router(feedback_router.router, tags=["feedback"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/")
def root() -> dict:
    return {"message": "feedback-store api"}
