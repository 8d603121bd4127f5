from __future__ import annotations

import io
import logging
import re
import wave
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from google import genai
from google.genai import types

from .config import Settings
from .errors import EmptyResultError, provider_errors
from .materializer import Asset
from .models import MediaPayload, Source
from .utils import build_data_uri
from .video_poller import VideoPoller

logger = logging.getLogger("lumina.gateway")

ANALYZE_DEFAULT_PROMPT = "Analyze this image in detail."
TRANSCRIBE_INSTRUCTION = "Transcribe this audio accurately."
SUMMARIZE_DEFAULT_INSTRUCTION = "Summarize the content of this URL:"
UPSCALE_INSTRUCTION = (
    "Upscale and enhance this image. Increase resolution, sharpen details, and improve "
    "overall clarity while maintaining the original composition."
)

NO_ANALYSIS_TEXT = "No analysis generated."
NO_TRANSCRIPTION_TEXT = "No transcription generated."
NO_RESEARCH_TEXT = "No research results."
NO_SUMMARY_TEXT = "Failed to summarize URL."

PCM_SAMPLE_RATE = 24000


@dataclass
class ProviderOutput:
    """Normalized provider answer: an asset and/or narrative text."""
    asset: Asset = None
    text: Optional[str] = None
    sources: List[Source] = field(default_factory=list)


class GeminiGateway:
    """One coroutine per generation mode on top of the google-genai async client."""

    def __init__(
        self,
        client: Any,
        settings: Settings,
        api_key: str = "",
        poller: Optional[VideoPoller] = None,
    ) -> None:
        """Purpose: Bind a google-genai client and the model configuration.
        Inputs/Outputs: Inputs are a genai.Client (or compatible fake), Settings,
            the per-request API key and an optional VideoPoller; no return value.
        Side Effects / State: Stores collaborators; no network activity.
        Dependencies: Settings for model names; VideoPoller for video mode.
        Failure Modes: None at construction time.
        Testing Notes: Pass a fake client exposing ``aio.models.generate_content``.
        """
        self._client = client
        self._settings = settings
        self._api_key = api_key
        self._poller = poller or VideoPoller(client, api_key, settings)

    @classmethod
    def from_api_key(cls, api_key: str, settings: Settings) -> "GeminiGateway":
        """Create a gateway with a fresh SDK client for the resolved key."""
        client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(settings.provider_timeout_sec * 1000)),
        )
        return cls(client, settings, api_key=api_key)

    @property
    def poller(self) -> VideoPoller:
        return self._poller

    async def edit_image(self, media: MediaPayload, prompt: str) -> ProviderOutput:
        """Purpose: Apply an instruction to an uploaded image.
        Inputs/Outputs: Image payload and instruction text; returns an image data URI.
        Side Effects / State: One provider call.
        Dependencies: Settings.gemini_model_image.
        Failure Modes: EmptyResultError when no inline image comes back;
            RemoteProviderError/ApiKeyExpiredError on provider failure.
        Testing Notes: Stub a response part with inline_data and check the data URI.
        """
        response = await self._generate(
            "edit_image",
            self._settings.gemini_model_image,
            [_media_part(media), types.Part.from_text(text=prompt)],
        )
        return ProviderOutput(asset=_require_inline_asset(response, "edit_image"))

    async def generate_image(self, prompt: str) -> ProviderOutput:
        response = await self._generate(
            "generate_image",
            self._settings.gemini_model_image,
            [types.Part.from_text(text=prompt)],
            types.GenerateContentConfig(image_config=types.ImageConfig(aspect_ratio="1:1")),
        )
        return ProviderOutput(asset=_require_inline_asset(response, "generate_image"))

    async def upscale_image(self, media: MediaPayload) -> ProviderOutput:
        response = await self._generate(
            "upscale_image",
            self._settings.gemini_model_image,
            [_media_part(media), types.Part.from_text(text=UPSCALE_INSTRUCTION)],
            types.GenerateContentConfig(image_config=types.ImageConfig(aspect_ratio="1:1")),
        )
        return ProviderOutput(asset=_require_inline_asset(response, "upscale_image"))

    async def analyze_image(self, media: MediaPayload, prompt: str = "") -> ProviderOutput:
        response = await self._generate(
            "analyze_image",
            self._settings.gemini_model_pro,
            [_media_part(media), types.Part.from_text(text=prompt or ANALYZE_DEFAULT_PROMPT)],
        )
        return ProviderOutput(text=_response_text(response) or NO_ANALYSIS_TEXT)

    async def synthesize_speech(self, text: str) -> ProviderOutput:
        """Purpose: Read text aloud with the fixed prebuilt voice.
        Inputs/Outputs: Input text; returns a ``data:audio/wav`` asset.
        Side Effects / State: One provider call.
        Dependencies: Settings.gemini_model_tts and Settings.tts_voice; wave for PCM wrapping.
        Failure Modes: EmptyResultError when the response carries no audio.
        Testing Notes: Raw PCM input must come back as a RIFF/WAVE payload.
        """
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._settings.tts_voice),
                ),
            ),
        )
        response = await self._generate(
            "synthesize_speech",
            self._settings.gemini_model_tts,
            [types.Part.from_text(text=text)],
            config,
        )
        inline = _first_inline_data(response)
        if inline is None:
            logger.warning("empty result op=synthesize_speech")
            raise EmptyResultError("Speech synthesis returned no audio")
        data, mime_type = inline
        wav_bytes, wav_mime = pcm_to_wav(data, mime_type)
        return ProviderOutput(asset=build_data_uri(wav_bytes, wav_mime))

    async def transcribe_audio(self, media: MediaPayload) -> ProviderOutput:
        # The fixed instruction is attached regardless of any user prompt.
        response = await self._generate(
            "transcribe_audio",
            self._settings.gemini_model_flash,
            [_media_part(media), types.Part.from_text(text=TRANSCRIBE_INSTRUCTION)],
        )
        return ProviderOutput(text=_response_text(response) or NO_TRANSCRIPTION_TEXT)

    async def research(self, prompt: str) -> ProviderOutput:
        """Purpose: Answer a question grounded in Google Search results.
        Inputs/Outputs: Free text; returns narrative text plus citation pairs.
        Side Effects / State: One provider call with the google_search tool.
        Dependencies: Settings.gemini_model_pro; extract_sources for grounding metadata.
        Failure Modes: Provider errors propagate; an empty answer falls back to a label.
        Testing Notes: Citations without a URI must be dropped, order preserved.
        """
        response = await self._generate(
            "research",
            self._settings.gemini_model_pro,
            prompt,
            types.GenerateContentConfig(tools=[types.Tool(google_search=types.GoogleSearch())]),
        )
        return ProviderOutput(
            text=_response_text(response) or NO_RESEARCH_TEXT,
            sources=extract_sources(response),
        )

    async def summarize_url(self, url: str, instruction: Optional[str] = None) -> ProviderOutput:
        response = await self._generate(
            "summarize_url",
            self._settings.gemini_model_pro,
            f"{instruction or SUMMARIZE_DEFAULT_INSTRUCTION} {url}",
            types.GenerateContentConfig(tools=[types.Tool(url_context=types.UrlContext())]),
        )
        return ProviderOutput(text=_response_text(response) or NO_SUMMARY_TEXT)

    async def generate_video(
        self,
        prompt: str,
        aspect_ratio: str = "16:9",
        image: Optional[MediaPayload] = None,
    ) -> ProviderOutput:
        """Run the long-running video job; the asset is a TransientMedia handle."""
        media = await self._poller.run(prompt, aspect_ratio, image)
        return ProviderOutput(asset=media)

    async def _generate(
        self,
        operation: str,
        model: str,
        contents: Any,
        config: Optional[types.GenerateContentConfig] = None,
    ) -> Any:
        # Single entry point so every mode shares error translation and logging.
        logger.info("provider call start op=%s model=%s", operation, model)
        with provider_errors(operation):
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        logger.info("provider call done op=%s model=%s", operation, model)
        return response


def _media_part(media: MediaPayload) -> types.Part:
    return types.Part.from_bytes(data=media.raw_bytes(), mime_type=media.mime_type)


def _response_text(response: Any) -> str:
    text: Optional[str] = getattr(response, "text", None)
    return (text or "").strip()


def _first_inline_data(response: Any) -> Optional[Tuple[bytes, str]]:
    """Return (bytes, mime) of the first inline data part of the first candidate."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    for part in parts:
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline is not None else None
        if data:
            return data, getattr(inline, "mime_type", None) or ""
    return None


def _require_inline_asset(response: Any, operation: str) -> str:
    inline = _first_inline_data(response)
    if inline is None:
        logger.warning("empty result op=%s", operation)
        raise EmptyResultError(f"{operation} returned no inline image")
    data, mime_type = inline
    return build_data_uri(data, mime_type or "image/png")


def extract_sources(response: Any) -> List[Source]:
    """Collect {title, uri} pairs from grounding metadata, skipping URI-less chunks."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    sources: List[Source] = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None) if web is not None else None
        if not uri:
            continue
        sources.append(Source(title=getattr(web, "title", None) or "Source", uri=uri))
    return sources


def pcm_to_wav(data: bytes, mime_type: str) -> Tuple[bytes, str]:
    """Wrap raw 16-bit mono PCM in a WAV container; other audio passes through."""
    mime = (mime_type or "").lower()
    if not (mime.startswith("audio/l16") or mime.startswith("audio/pcm")):
        return data, mime_type or "audio/wav"
    match = re.search(r"rate=(\d+)", mime)
    rate = int(match.group(1)) if match else PCM_SAMPLE_RATE
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(rate)
        wav.writeframes(data)
    return buffer.getvalue(), "audio/wav"
