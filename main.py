from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from settings import settings
from server.src.modules.docs_api import (
    autosave_saver,
    docs_db_error_handler,
    docs_error_handler,
    router as docs_router,
)
from server.src.modules.docs_autosave import EditSessionRegistry
from server.src.modules.docs_config import get_docs_settings, validate_docs_environment
from server.src.modules.docs_db import create_all_tables
from server.src.modules.docs_errors import DocsError
from server.src.modules.logging_helpers import logger


# ---------- Lifespan (startup/shutdown) ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    report = validate_docs_environment()
    for warning in report.warnings:
        logger.warning(warning)
    for error in report.errors:
        logger.error(error)
    if get_docs_settings().auto_create_tables:
        await create_all_tables()
    yield
    await app.state.edit_sessions.close()

app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.edit_sessions = EditSessionRegistry(autosave_saver)
app.add_exception_handler(DocsError, docs_error_handler)
app.add_exception_handler(SQLAlchemyError, docs_db_error_handler)
app.include_router(docs_router)


@app.get("/health", include_in_schema=False)
def health():
    return {"ok": True}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
