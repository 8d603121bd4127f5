from __future__ import annotations

import base64
import binascii
import json
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .utils import build_data_uri, decode_sources, is_data_uri


class Mode(str, Enum):
    """The eight user-selectable generation kinds."""
    IMAGE_EDIT = "image-edit"
    GENERATE_IMAGE = "generate-image"
    VIDEO_GEN = "video-gen"
    ANALYZE = "analyze"
    RESEARCH = "research"
    SUMMARIZE = "summarize"
    SPEECH = "speech"
    TRANSCRIBE = "transcribe"


AspectRatio = Literal["16:9", "9:16"]
ResultType = Literal["image", "video", "analysis", "audio", "transcription", "research", "summary"]


class MediaPayload(BaseModel):
    """Uploaded image or recorded audio clip, base64 encoded."""
    data: str
    mime_type: str

    @field_validator("data")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        if not value:
            raise ValueError("media data must not be empty")
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("media data must be base64 encoded") from exc
        return value

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "MediaPayload":
        return cls(data=base64.b64encode(data).decode("ascii"), mime_type=mime_type)

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def as_data_uri(self) -> str:
        return build_data_uri(self.raw_bytes(), self.mime_type)


class GenerationRequest(BaseModel):
    """One user action: a mode plus whatever prompt/media the mode needs."""
    mode: Mode
    prompt: str = ""
    media: Optional[MediaPayload] = None
    aspect_ratio: AspectRatio = "16:9"


class Source(BaseModel):
    """Web citation returned alongside research text."""
    title: str = "Source"
    uri: str = Field(min_length=1)


class _ResultBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    prompt: str = Field(min_length=1)
    primary_asset: str = ""
    text: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("primary_asset")
    @classmethod
    def _durable_asset(cls, value: str) -> str:
        # Only self-contained encodings may be stored; transient handles never are.
        if value and not is_data_uri(value):
            raise ValueError("primary_asset must be a base64 data URI")
        return value


class ImageResult(_ResultBase):
    type: Literal["image"] = "image"
    primary_asset: str = Field(min_length=1)


class VideoResult(_ResultBase):
    type: Literal["video"] = "video"
    primary_asset: str = Field(min_length=1)


class AudioResult(_ResultBase):
    type: Literal["audio"] = "audio"
    primary_asset: str = Field(min_length=1)


class AnalysisResult(_ResultBase):
    type: Literal["analysis"] = "analysis"
    text: str = Field(min_length=1)


class TranscriptionResult(_ResultBase):
    type: Literal["transcription"] = "transcription"
    text: str = Field(min_length=1)


class ResearchResult(_ResultBase):
    type: Literal["research"] = "research"
    text: str = Field(min_length=1)
    sources: List[Source] = Field(default_factory=list)


class SummaryResult(_ResultBase):
    type: Literal["summary"] = "summary"
    text: str = Field(min_length=1)


GenerationResult = Annotated[
    Union[
        ImageResult,
        VideoResult,
        AudioResult,
        AnalysisResult,
        TranscriptionResult,
        ResearchResult,
        SummaryResult,
    ],
    Field(discriminator="type"),
]
# A persisted GenerationResult; ``id`` is always set.
HistoryEntry = GenerationResult

RESULT_ADAPTER: TypeAdapter = TypeAdapter(GenerationResult)


def build_result(**fields: object) -> GenerationResult:
    """Construct the result variant selected by ``fields["type"]``."""
    return RESULT_ADAPTER.validate_python(fields)


class HistoryRecordCreate(BaseModel):
    """Body of a store create call."""
    type: ResultType
    data: str = ""
    prompt: str = Field(min_length=1)
    text: Optional[str] = None
    sources: Optional[List[Source]] = None


class StoredRecord(BaseModel):
    """Row of the durable history table; ``sources`` is serialized JSON."""
    id: int
    type: ResultType
    data: str
    prompt: str
    text: Optional[str] = None
    sources: Optional[str] = None
    timestamp: Optional[str] = None


class GenerateResponse(BaseModel):
    entry: StoredRecord


def serialize_sources(sources: Optional[List[Source]]) -> Optional[str]:
    if sources is None:
        return None
    return json.dumps([source.model_dump() for source in sources], ensure_ascii=False)


def record_payload(result: GenerationResult) -> HistoryRecordCreate:
    """Translate a result into the store's create body."""
    return HistoryRecordCreate(
        type=result.type,
        data=result.primary_asset,
        prompt=result.prompt,
        text=result.text,
        sources=getattr(result, "sources", None),
    )


def entry_from_record(record: StoredRecord) -> HistoryEntry:
    """Rebuild a typed history entry from a stored row."""
    fields = {
        "id": record.id,
        "type": record.type,
        "primary_asset": record.data,
        "prompt": record.prompt,
        "text": record.text,
        "timestamp": record.timestamp,
    }
    if record.type == "research":
        fields["sources"] = decode_sources(record.sources)
    return build_result(**fields)


def record_from_entry(entry: HistoryEntry) -> StoredRecord:
    if entry.id is None:
        raise ValueError("History entry has no id")
    return StoredRecord(
        id=entry.id,
        type=entry.type,
        data=entry.primary_asset,
        prompt=entry.prompt,
        text=entry.text,
        sources=serialize_sources(getattr(entry, "sources", None)),
        timestamp=entry.timestamp,
    )
