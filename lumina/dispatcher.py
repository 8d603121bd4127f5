"""Mode dispatch: validate a request, run the provider call, persist the result.

Role:
    Entry point for every user-initiated generation. It is the only place
    where taxonomy errors are turned into the single user-visible message
    of their category, and it guarantees that a result is either fully
    materialized and stored or not stored at all.

Flow per request:
    validate_request -> credential selection (video only) -> resolve API key
    -> GeminiGateway call (VideoPoller for video) -> materialize
    -> HistorySynchronizer.create
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import pydantic

from .config import Settings
from .credentials import CredentialSelector, UnmanagedCredentials, resolve_api_key
from .errors import (
    ApiKeyExpiredError,
    CredentialSelectionRequiredError,
    EmptyResultError,
    GenerationInProgressError,
    LuminaError,
    MissingApiKeyError,
    UpscaleError,
    ValidationError,
)
from .gemini_client import GeminiGateway, ProviderOutput
from .history_sync import HistorySynchronizer
from .materializer import materialize, release
from .models import (
    GenerationRequest,
    GenerationResult,
    HistoryEntry,
    MediaPayload,
    Mode,
    build_result,
)
from .utils import parse_data_uri

logger = logging.getLogger("lumina.dispatcher")

GatewayFactory = Callable[[str], GeminiGateway]

EDIT_DEFAULT_PROMPT = "Enhance this image"
UPSCALED_TEXT = "Image upscaled and enhanced for better clarity."

PROMPT_REQUIRED_MODES = {
    Mode.GENERATE_IMAGE,
    Mode.VIDEO_GEN,
    Mode.RESEARCH,
    Mode.SUMMARIZE,
    Mode.SPEECH,
}
IMAGE_REQUIRED_MODES = {Mode.IMAGE_EDIT, Mode.ANALYZE}
AUDIO_REQUIRED_MODES = {Mode.TRANSCRIBE}

RESULT_TYPES = {
    Mode.IMAGE_EDIT: "image",
    Mode.GENERATE_IMAGE: "image",
    Mode.VIDEO_GEN: "video",
    Mode.ANALYZE: "analysis",
    Mode.RESEARCH: "research",
    Mode.SUMMARIZE: "summary",
    Mode.SPEECH: "audio",
    Mode.TRANSCRIBE: "transcription",
}

UPSCALABLE_TYPES = {"image", "analysis"}


@dataclass
class GenerationOutcome:
    """What the caller shows: the stored entry, or one mapped error message."""
    entry: Optional[HistoryEntry] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.entry is not None


def _has_media(request: GenerationRequest, prefix: str) -> bool:
    media = request.media
    return media is not None and media.mime_type.lower().startswith(prefix)


def validate_request(request: GenerationRequest) -> None:
    """Purpose: Enforce the per-mode input preconditions.
    Inputs/Outputs: Input is a GenerationRequest; returns None when valid.
    Side Effects / State: None; no network activity.
    Dependencies: PROMPT/IMAGE/AUDIO_REQUIRED_MODES tables.
    Failure Modes: Raises ValidationError with a mode-specific message.
    Testing Notes: Every mode with its required input missing must raise.
    """
    mode = request.mode
    if mode in PROMPT_REQUIRED_MODES and not request.prompt.strip():
        raise ValidationError(f"Please enter a prompt or URL for {mode.value} generation.")
    if mode in IMAGE_REQUIRED_MODES and not _has_media(request, "image/"):
        raise ValidationError("Please upload an image.")
    if mode in AUDIO_REQUIRED_MODES and not _has_media(request, "audio/"):
        raise ValidationError("Please record some audio first.")


def default_prompt_label(mode: Mode) -> str:
    if mode == Mode.IMAGE_EDIT:
        return "Image Edit"
    if mode == Mode.ANALYZE:
        return "Image Analysis"
    return "Generation"


class ModeDispatcher:
    """Route validated requests to the gateway and persist what comes back."""

    def __init__(
        self,
        settings: Settings,
        history: HistorySynchronizer,
        gateway_factory: Optional[GatewayFactory] = None,
        credentials: Optional[CredentialSelector] = None,
    ) -> None:
        """Purpose: Wire the dispatcher to its collaborators.
        Inputs/Outputs: Settings, a HistorySynchronizer, an optional gateway
            factory (API key -> GeminiGateway) and credential selector.
        Side Effects / State: Starts with has_credential False until
            refresh_credentials runs, and no generation in flight.
        Dependencies: GeminiGateway.from_api_key when no factory is given.
        Failure Modes: None at construction.
        Testing Notes: Inject a factory returning a gateway around a fake client.
        """
        self._settings = settings
        self._history = history
        self._gateway_factory = gateway_factory or (lambda key: GeminiGateway.from_api_key(key, settings))
        self._credentials = credentials or UnmanagedCredentials()
        self.has_credential = False
        self._in_flight = False

    @property
    def history(self) -> HistorySynchronizer:
        return self._history

    @property
    def is_generating(self) -> bool:
        return self._in_flight

    async def refresh_credentials(self) -> bool:
        self.has_credential = await self._credentials.has_selected_credential()
        return self.has_credential

    async def generate(self, request: GenerationRequest, api_key: Optional[str] = None) -> GenerationOutcome:
        """Run one generation and map any failure to its user-visible message."""
        try:
            entry = await self.dispatch(request, api_key)
        except LuminaError as exc:
            return self._failure(request.mode.value, exc)
        return GenerationOutcome(entry=entry)

    async def dispatch(self, request: GenerationRequest, api_key: Optional[str] = None) -> HistoryEntry:
        """Purpose: Validate, call the provider, materialize and persist one request.
        Inputs/Outputs: A GenerationRequest and optional per-request API key;
            returns the persisted HistoryEntry.
        Side Effects / State: Provider calls, one history create, credential flag
            updates. Holds the single generation slot for its whole duration.
        Dependencies: validate_request, gateway factory, materialize, HistorySynchronizer.
        Failure Modes: Raises taxonomy errors; ApiKeyExpiredError also clears
            has_credential. Nothing is persisted unless the result is complete.
        Testing Notes: Validation failures must not construct a gateway at all.
        """
        validate_request(request)
        with self._generation_slot():
            if request.mode == Mode.VIDEO_GEN:
                await self._ensure_credential()
            gateway = self._gateway_for(api_key)
            logger.info("generation start mode=%s", request.mode.value)
            try:
                output = await self._call_gateway(gateway, request)
            except ApiKeyExpiredError:
                self.has_credential = False
                raise
            try:
                result = self._build_result(request, output)
            finally:
                release(output.asset)
            entry = await self._history.create(result)
            logger.info("generation stored mode=%s id=%s", request.mode.value, entry.id)
            return entry

    async def upscale(self, entry: HistoryEntry, api_key: Optional[str] = None) -> GenerationOutcome:
        """Enhance an existing image or analysis entry into a new image entry."""
        try:
            new_entry = await self._upscale(entry, api_key)
        except (ValidationError, ApiKeyExpiredError) as exc:
            return self._failure("upscale", exc)
        except LuminaError as exc:
            return self._failure("upscale", UpscaleError(exc.detail))
        return GenerationOutcome(entry=new_entry)

    async def _upscale(self, entry: HistoryEntry, api_key: Optional[str]) -> HistoryEntry:
        if entry.type not in UPSCALABLE_TYPES:
            raise ValidationError("Only image results can be upscaled.")
        try:
            data, mime_type = parse_data_uri(entry.primary_asset)
        except ValueError as exc:
            raise ValidationError("This result has no image to upscale.") from exc
        with self._generation_slot():
            gateway = self._gateway_for(api_key)
            try:
                output = await gateway.upscale_image(MediaPayload.from_bytes(data, mime_type))
            except ApiKeyExpiredError:
                self.has_credential = False
                raise
            result = build_result(
                type="image",
                primary_asset=materialize(output.asset),
                prompt=f"Upscaled: {entry.prompt}",
                text=UPSCALED_TEXT,
            )
            return await self._history.create(result)

    @contextmanager
    def _generation_slot(self) -> Iterator[None]:
        if self._in_flight:
            raise GenerationInProgressError()
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    async def _ensure_credential(self) -> None:
        if self.has_credential:
            return
        await self._credentials.open_selection_dialog()
        if not await self.refresh_credentials():
            logger.info("video generation aborted: no credential selected")
            raise CredentialSelectionRequiredError()

    def _gateway_for(self, api_key: Optional[str]) -> GeminiGateway:
        key = resolve_api_key(api_key, self._settings)
        if not key:
            raise MissingApiKeyError()
        return self._gateway_factory(key)

    async def _call_gateway(self, gateway: GeminiGateway, request: GenerationRequest) -> ProviderOutput:
        mode = request.mode
        prompt = request.prompt
        if mode == Mode.IMAGE_EDIT:
            return await gateway.edit_image(request.media, prompt or EDIT_DEFAULT_PROMPT)
        if mode == Mode.GENERATE_IMAGE:
            return await gateway.generate_image(prompt)
        if mode == Mode.VIDEO_GEN:
            seed = request.media if _has_media(request, "image/") else None
            return await gateway.generate_video(prompt, request.aspect_ratio, seed)
        if mode == Mode.ANALYZE:
            return await gateway.analyze_image(request.media, prompt)
        if mode == Mode.RESEARCH:
            return await gateway.research(prompt)
        if mode == Mode.SUMMARIZE:
            return await gateway.summarize_url(prompt)
        if mode == Mode.SPEECH:
            return await gateway.synthesize_speech(prompt)
        if mode == Mode.TRANSCRIBE:
            return await gateway.transcribe_audio(request.media)
        raise ValidationError(f"Unsupported mode: {mode}")

    def _build_result(self, request: GenerationRequest, output: ProviderOutput) -> GenerationResult:
        mode = request.mode
        if mode in (Mode.ANALYZE, Mode.TRANSCRIBE):
            # The submitted media is what these entries display.
            asset = request.media.as_data_uri()
        else:
            asset = materialize(output.asset)
        if not asset and not output.text:
            raise EmptyResultError(f"{mode.value} produced neither an asset nor text")
        fields = {
            "type": RESULT_TYPES[mode],
            "primary_asset": asset,
            "prompt": request.prompt or default_prompt_label(mode),
            "text": output.text,
        }
        if mode == Mode.RESEARCH:
            fields["sources"] = output.sources
        try:
            return build_result(**fields)
        except pydantic.ValidationError as exc:
            raise EmptyResultError(f"{mode.value} result is incomplete: {exc}") from exc

    def _failure(self, operation: str, exc: LuminaError) -> GenerationOutcome:
        if isinstance(exc, ValidationError):
            logger.info("generation rejected op=%s reason=%s", operation, exc.detail)
        elif isinstance(exc, EmptyResultError):
            logger.warning("generation produced no usable content op=%s detail=%s", operation, exc.detail)
        else:
            logger.error("generation failed op=%s kind=%s detail=%s", operation, exc.kind, exc.detail)
        return GenerationOutcome(error=exc.user_message, error_kind=exc.kind, status_code=exc.status_code)
