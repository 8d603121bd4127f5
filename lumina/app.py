from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import pydantic
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException

from .config import Settings, load_settings
from .credentials import CredentialSelector
from .dispatcher import GatewayFactory, ModeDispatcher
from .errors import HistoryStoreError
from .history_store import HistoryStore
from .history_sync import HistorySynchronizer, LocalHistoryBackend
from .models import (
    GenerateResponse,
    GenerationRequest,
    HistoryRecordCreate,
    StoredRecord,
    build_result,
    entry_from_record,
    record_from_entry,
)

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("lumina").setLevel(log_level)
logger = logging.getLogger("lumina.api")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[HistoryStore] = None,
    gateway_factory: Optional[GatewayFactory] = None,
    credentials: Optional[CredentialSelector] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI application around one history store and dispatcher.
    Inputs/Outputs: Optional Settings, HistoryStore, gateway factory and credential
        selector (defaults come from the environment); returns a FastAPI app.
    Side Effects / State: No disk or network access until the first request.
    Dependencies: HistoryStore, HistorySynchronizer, ModeDispatcher.
    Failure Modes: Invalid numeric environment values raise ValueError.
    Testing Notes: Pass a tmp_path store and a fake gateway factory.
    """
    settings = settings or load_settings()
    store = store or HistoryStore(settings.history_db_path)
    history = HistorySynchronizer(LocalHistoryBackend(store))
    dispatcher = ModeDispatcher(settings, history, gateway_factory=gateway_factory, credentials=credentials)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await dispatcher.refresh_credentials()
        await history.list()
        yield

    app = FastAPI(title="Lumina Studio", lifespan=lifespan)
    app.state.store = store
    app.state.history = history
    app.state.dispatcher = dispatcher

    @app.get("/api/history", response_model=List[StoredRecord])
    async def list_history() -> List[StoredRecord]:
        """Return persisted records newest first and refresh the in-memory history."""
        entries = await history.list()
        if history.last_error is not None:
            raise HTTPException(status_code=500, detail="Failed to fetch history")
        return [record_from_entry(entry) for entry in entries]

    @app.post("/api/history", response_model=StoredRecord)
    async def create_history(payload: HistoryRecordCreate) -> StoredRecord:
        """Persist a finished result sent by a client."""
        try:
            result = build_result(
                type=payload.type,
                primary_asset=payload.data,
                prompt=payload.prompt,
                text=payload.text,
                sources=payload.sources or [],
            )
        except pydantic.ValidationError as exc:
            raise HTTPException(status_code=400, detail="Missing required fields") from exc
        try:
            entry = await history.create(result)
        except HistoryStoreError as exc:
            raise HTTPException(status_code=500, detail="Failed to save history") from exc
        return record_from_entry(entry)

    @app.delete("/api/history/{record_id}")
    async def delete_history(record_id: int) -> dict:
        try:
            deleted = await history.delete(record_id)
        except HistoryStoreError as exc:
            raise HTTPException(status_code=500, detail="Failed to delete item") from exc
        return {"success": deleted}

    @app.post("/api/generate", response_model=GenerateResponse)
    async def generate(
        request: GenerationRequest,
        x_api_key: Optional[str] = Header(default=None),
    ) -> GenerateResponse:
        """Run one generation; failures answer with the mapped user message."""
        outcome = await dispatcher.generate(request, api_key=x_api_key)
        if not outcome.ok:
            raise HTTPException(status_code=outcome.status_code, detail=outcome.error)
        return GenerateResponse(entry=record_from_entry(outcome.entry))

    @app.post("/api/history/{record_id}/upscale", response_model=GenerateResponse)
    async def upscale(
        record_id: int,
        x_api_key: Optional[str] = Header(default=None),
    ) -> GenerateResponse:
        try:
            record = await asyncio.to_thread(store.get_record, record_id)
        except HistoryStoreError as exc:
            raise HTTPException(status_code=500, detail="Failed to fetch history") from exc
        if record is None:
            raise HTTPException(status_code=404, detail="History item not found")
        outcome = await dispatcher.upscale(entry_from_record(record), api_key=x_api_key)
        if not outcome.ok:
            raise HTTPException(status_code=outcome.status_code, detail=outcome.error)
        return GenerateResponse(entry=record_from_entry(outcome.entry))

    return app


app = create_app()


def main() -> None:
    """Serve the API; HOST and PORT come from the environment."""
    uvicorn.run(
        "lumina.app:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_level=log_level,
    )
