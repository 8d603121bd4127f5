"""Result materialization: turn transient media handles into durable encodings.

The provider gateway hands back either a data URI (already durable) or a
``TransientMedia`` handle for media that only lives for the current request,
such as a downloaded video buffer. Only the encoded form is ever stored.
"""

from __future__ import annotations

import logging
import tempfile
from typing import IO, Optional, Union

from .errors import MaterializationError
from .utils import build_data_uri, is_data_uri

logger = logging.getLogger("lumina.materializer")

SPOOL_MAX_BYTES = 16 * 1024 * 1024


class TransientMedia:
    """Short-lived handle to binary media; unusable once closed."""

    def __init__(self, buffer: IO[bytes], mime_type: str, source_uri: str = "") -> None:
        self._buffer = buffer
        self.mime_type = mime_type
        self.source_uri = source_uri

    @classmethod
    def spooled(cls, mime_type: str, source_uri: str = "") -> "TransientMedia":
        """Create an empty handle backed by a spooled temporary file."""
        return cls(tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES), mime_type, source_uri)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, source_uri: str = "") -> "TransientMedia":
        media = cls.spooled(mime_type, source_uri)
        media.write(data)
        return media

    @property
    def closed(self) -> bool:
        return self._buffer.closed

    def write(self, chunk: bytes) -> None:
        self._buffer.write(chunk)

    def read(self) -> bytes:
        if self.closed:
            raise MaterializationError("Transient media handle is already closed")
        self._buffer.seek(0)
        return self._buffer.read()

    def close(self) -> None:
        if not self.closed:
            self._buffer.close()

    def __enter__(self) -> "TransientMedia":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<TransientMedia {self.mime_type} {state}>"


Asset = Union[str, TransientMedia, None]


def materialize(asset: Asset) -> str:
    """Purpose: Produce the durable, self-describing encoding of a result asset.
    Inputs/Outputs: Input is a data URI, a TransientMedia handle, or None; output
        is a data URI or "" for text-only results.
    Side Effects / State: Consumes and closes TransientMedia handles.
    Dependencies: Uses build_data_uri/is_data_uri from utils.
    Failure Modes: Raises MaterializationError for non-durable strings, closed
        handles, or handles with no bytes.
    Testing Notes: Materializing a data URI twice returns the identical string.
    """
    if asset is None or asset == "":
        return ""
    if isinstance(asset, str):
        # Already durable: pass through untouched.
        if is_data_uri(asset):
            return asset
        raise MaterializationError("Asset is neither a data URI nor a transient media handle")
    try:
        data = asset.read()
    finally:
        asset.close()
    if not data:
        raise MaterializationError("Transient media handle contained no bytes")
    logger.info("materialized transient media mime=%s bytes=%s", asset.mime_type, len(data))
    return build_data_uri(data, asset.mime_type)


def release(asset: Optional[Asset]) -> None:
    """Close a transient handle that will not be materialized."""
    if isinstance(asset, TransientMedia):
        asset.close()
