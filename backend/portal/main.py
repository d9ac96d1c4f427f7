import logging
import sqlite3
from contextlib import asynccontextmanager
from fastapi import FastAPI

from portal.config import settings
from portal.database import init_db
from portal.routers import admin, allocations, documents, files, unallocated
from portal.routers import settings as settings_router
from portal.services.pipeline import pipeline

logger = logging.getLogger("portal")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create schema, integrity-check, start queue workers and the reaper
    init_db(settings.db_path)
    try:
        conn = sqlite3.connect(str(settings.db_path))
        result = conn.execute("PRAGMA integrity_check").fetchone()
        conn.close()
        if result and result[0] == "ok":
            logger.info("Database integrity check passed.")
        else:
            logger.error("DATABASE INTEGRITY CHECK FAILED: %s", result)
    except sqlite3.Error as exc:
        logger.error("Could not run startup integrity check: %s", exc)
    await pipeline.start()
    yield
    await pipeline.stop()


app = FastAPI(
    title="Invoice Portal",
    description="Financial document intake, allocation and retention",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(files.router, prefix=settings.api_prefix)
app.include_router(unallocated.router, prefix=settings.api_prefix)
app.include_router(allocations.router, prefix=settings.api_prefix)
app.include_router(documents.router, prefix=settings.api_prefix)
app.include_router(settings_router.router, prefix=settings.api_prefix)
app.include_router(admin.router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": "0.1.0",
        "queue_running": pipeline.queue.running,
        "queue_pending": pipeline.queue.pending(),
    }


def run():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)
