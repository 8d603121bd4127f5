"""In-memory history cache kept consistent with the durable store.

``HistorySynchronizer`` owns the ordered, newest-first list of entries shown
to the user. Every mutation goes to the store first; the cache is only
spliced once the store call succeeds, always as a whole-list replacement.
Two backends reach the store: ``LocalHistoryBackend`` wraps an in-process
``HistoryStore`` and ``HttpHistoryBackend`` talks to the ``/api/history``
endpoints of a running server.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol

import httpx
import pydantic

from .errors import HistoryStoreError
from .history_store import HistoryStore
from .models import (
    GenerationResult,
    HistoryEntry,
    StoredRecord,
    entry_from_record,
    record_payload,
)

logger = logging.getLogger("lumina.history")


class HistoryBackend(Protocol):
    async def list_records(self) -> List[StoredRecord]:
        ...

    async def create_record(self, result: GenerationResult) -> StoredRecord:
        ...

    async def delete_record(self, record_id: int) -> bool:
        ...


class LocalHistoryBackend:
    """Run HistoryStore calls in a worker thread so the event loop stays free."""

    def __init__(self, store: HistoryStore) -> None:
        self._store = store

    async def list_records(self) -> List[StoredRecord]:
        return await asyncio.to_thread(self._store.list_records)

    async def create_record(self, result: GenerationResult) -> StoredRecord:
        return await asyncio.to_thread(self._store.create_record, record_payload(result))

    async def delete_record(self, record_id: int) -> bool:
        return await asyncio.to_thread(self._store.delete_record, record_id)


class HttpHistoryBackend:
    """Reach the durable store through its HTTP API."""

    def __init__(self, client: httpx.AsyncClient, prefix: str = "/api/history") -> None:
        self._client = client
        self._prefix = prefix.rstrip("/")

    async def list_records(self) -> List[StoredRecord]:
        response = await self._request("GET", self._prefix)
        try:
            return [StoredRecord.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, pydantic.ValidationError) as exc:
            raise HistoryStoreError(f"Malformed history listing: {exc}") from exc

    async def create_record(self, result: GenerationResult) -> StoredRecord:
        body = record_payload(result).model_dump(mode="json", exclude_none=True)
        response = await self._request("POST", self._prefix, json=body)
        try:
            return StoredRecord.model_validate(response.json())
        except (ValueError, pydantic.ValidationError) as exc:
            raise HistoryStoreError(f"Malformed created record: {exc}") from exc

    async def delete_record(self, record_id: int) -> bool:
        response = await self._request("DELETE", f"{self._prefix}/{record_id}")
        try:
            return bool(response.json().get("success", True))
        except ValueError:
            return True

    async def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise HistoryStoreError(f"{method} {url} failed: {exc}") from exc
        if not response.is_success:
            raise HistoryStoreError(f"{method} {url} returned HTTP {response.status_code}")
        return response


class HistorySynchronizer:
    """Single source of truth for the ordered generation history in memory."""

    def __init__(self, backend: HistoryBackend) -> None:
        self._backend = backend
        self._entries: List[HistoryEntry] = []
        self.last_error: Optional[HistoryStoreError] = None

    @property
    def entries(self) -> List[HistoryEntry]:
        return list(self._entries)

    def find(self, entry_id: int) -> Optional[HistoryEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    async def list(self) -> List[HistoryEntry]:
        """Purpose: Reload the cache from the store, replacing it entirely.
        Inputs/Outputs: No inputs; returns entries newest first.
        Side Effects / State: Replaces the cache on success; sets last_error on failure.
        Dependencies: HistoryBackend.list_records and entry_from_record.
        Failure Modes: Store errors are non-fatal; the previous snapshot is returned.
        Testing Notes: After creating A, B, C the result is [C, B, A].
        """
        try:
            records = await self._backend.list_records()
            entries = [entry_from_record(record) for record in records]
        except (HistoryStoreError, pydantic.ValidationError) as exc:
            logger.warning("history reload failed, keeping %s cached entries: %s", len(self._entries), exc)
            self.last_error = exc if isinstance(exc, HistoryStoreError) else HistoryStoreError(str(exc))
            return list(self._entries)
        self.last_error = None
        self._entries = entries
        return list(self._entries)

    async def create(self, result: GenerationResult) -> HistoryEntry:
        """Persist a result and prepend the stored entry to the cache."""
        record = await self._backend.create_record(result)
        entry = result.model_copy(update={"id": record.id, "timestamp": record.timestamp})
        self._entries = [entry] + self._entries
        logger.info("history entry added id=%s type=%s", entry.id, entry.type)
        return entry

    async def delete(self, entry_id: int) -> bool:
        """Delete by id; unknown ids are a no-op that leaves the cache unchanged."""
        deleted = await self._backend.delete_record(entry_id)
        if deleted:
            self._entries = [entry for entry in self._entries if entry.id != entry_id]
        return deleted

    async def clear(self) -> List[int]:
        """Purpose: Delete every known entry one by one.
        Inputs/Outputs: No inputs; returns the ids that could not be deleted.
        Side Effects / State: Issues one store delete per entry; removes only the
            successfully deleted entries from the cache.
        Dependencies: HistoryBackend.delete_record.
        Failure Modes: A failing delete does not stop the loop; the failed entries
            stay both in the store and in the cache.
        Testing Notes: Make one delete fail and check the survivor in both places.
        """
        failed: List[int] = []
        deleted: List[int] = []
        for entry in list(self._entries):
            if entry.id is None:
                continue
            try:
                if await self._backend.delete_record(entry.id):
                    deleted.append(entry.id)
                else:
                    failed.append(entry.id)
            except HistoryStoreError as exc:
                logger.warning("history clear could not delete id=%s: %s", entry.id, exc)
                failed.append(entry.id)
        removed = set(deleted)
        self._entries = [entry for entry in self._entries if entry.id not in removed]
        if failed:
            self.last_error = HistoryStoreError(f"Failed to delete {len(failed)} history item(s)")
        return failed
