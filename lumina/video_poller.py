"""Long-running video generation: issue, poll until done, then download.

Video jobs return an operation handle instead of a result. The poller
re-queries the provider at a fixed interval, replacing the handle with the
refreshed one each time, and fetches the finished asset with the API key in
a request header. The downloaded bytes come back as a ``TransientMedia``
handle that the materializer must consume within the same request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple

import httpx
from google.genai import types

from .config import Settings
from .errors import (
    DownloadFailedError,
    EmptyResultError,
    PollTimeoutError,
    classify_provider_failure,
    error_reasons,
    provider_errors,
)
from .materializer import TransientMedia
from .models import MediaPayload

logger = logging.getLogger("lumina.poller")

API_KEY_HEADER = "x-goog-api-key"
DEFAULT_VIDEO_MIME = "video/mp4"
MAX_DOWNLOAD_REDIRECTS = 5


class VideoPoller:
    """Drive one Veo generation from initial request to downloaded bytes."""

    def __init__(
        self,
        client: Any,
        api_key: str,
        settings: Settings,
        *,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._model = settings.veo_model
        self._resolution = settings.video_resolution
        self._interval = max(float(settings.video_poll_interval_sec), 0.0)
        self._max_attempts = int(settings.video_max_poll_attempts)
        self._download_timeout = settings.download_timeout_sec
        self._http_client_factory = http_client_factory or self._default_http_client
        self._sleep = sleep
        self.status_queries = 0

    def _default_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._download_timeout)

    async def run(
        self,
        prompt: str,
        aspect_ratio: str,
        image: Optional[MediaPayload] = None,
    ) -> TransientMedia:
        """Purpose: Generate one video and return its bytes as a transient handle.
        Inputs/Outputs: Prompt, aspect ratio ("16:9" or "9:16") and optional seed
            image; returns an open TransientMedia.
        Side Effects / State: Issues provider calls, sleeps between status queries,
            downloads the finished video. Updates status_queries.
        Dependencies: google-genai async client, httpx for the download.
        Failure Modes: RemoteProviderError/ApiKeyExpiredError from the provider,
            PollTimeoutError past the attempt bound, EmptyResultError when the
            finished operation has no video, DownloadFailedError on download.
        Testing Notes: A fake operation that reports done after N queries must see
            exactly N status queries and one download.
        """
        started = time.monotonic()
        operation = await self._issue(prompt, aspect_ratio, image)
        operation = await self._wait(operation)
        uri = _video_uri(operation)
        if not uri:
            logger.warning("video operation finished without a download uri")
            raise EmptyResultError("Video operation completed without a generated video")
        media = await self.download(uri)
        logger.info(
            "video ready queries=%s elapsed_ms=%s",
            self.status_queries,
            int((time.monotonic() - started) * 1000),
        )
        return media

    async def _issue(self, prompt: str, aspect_ratio: str, image: Optional[MediaPayload]) -> Any:
        config = types.GenerateVideosConfig(
            number_of_videos=1,
            resolution=self._resolution,
            aspect_ratio=aspect_ratio,
        )
        seed = None
        if image is not None:
            seed = types.Image(image_bytes=image.raw_bytes(), mime_type=image.mime_type)
        logger.info("video submit model=%s aspect_ratio=%s seeded=%s", self._model, aspect_ratio, seed is not None)
        with provider_errors("generate_video"):
            return await self._client.aio.models.generate_videos(
                model=self._model,
                prompt=prompt,
                image=seed,
                config=config,
            )

    async def _wait(self, operation: Any) -> Any:
        # Each sleep is a cancellation point; nothing has been persisted yet.
        self.status_queries = 0
        while not operation.done:
            if self._max_attempts > 0 and self.status_queries >= self._max_attempts:
                raise PollTimeoutError(
                    f"Video operation not done after {self.status_queries} status queries"
                )
            await self._sleep(self._interval)
            with provider_errors("poll_video"):
                operation = await self._client.aio.operations.get(operation)
            self.status_queries += 1
            logger.debug("video poll attempt=%s done=%s", self.status_queries, bool(operation.done))

        error = getattr(operation, "error", None)
        if error:
            details = error if isinstance(error, dict) else {"message": str(error)}
            raise classify_provider_failure(
                str(details.get("message") or "Video operation failed"),
                details.get("code"),
                details.get("status"),
                error_reasons(details),
            )
        return operation

    async def download(self, uri: str) -> TransientMedia:
        """Fetch the finished video, authenticating with the API key header.

        Redirects are followed here rather than by httpx so the key header is
        dropped as soon as a redirect leaves the origin of ``uri``.
        """
        url = httpx.URL(uri)
        origin = _origin(url)
        headers = {API_KEY_HEADER: self._api_key or ""}
        try:
            async with self._http_client_factory() as http:
                for _ in range(MAX_DOWNLOAD_REDIRECTS + 1):
                    async with http.stream("GET", url, headers=headers) as response:
                        if response.is_redirect:
                            url = url.join(response.headers["location"])
                            if _origin(url) != origin:
                                headers = {}
                            logger.debug("video download redirected host=%s", url.host)
                            continue
                        if not response.is_success:
                            logger.error("video download failed status=%s", response.status_code)
                            raise DownloadFailedError(f"Video download returned HTTP {response.status_code}")
                        return await _spool(response, str(url))
        except httpx.HTTPError as exc:
            logger.error("video download transport error: %s", exc)
            raise DownloadFailedError(f"Video download failed: {exc}") from exc
        raise DownloadFailedError(f"Video download exceeded {MAX_DOWNLOAD_REDIRECTS} redirects")


async def _spool(response: httpx.Response, source_uri: str) -> TransientMedia:
    mime_type = response.headers.get("content-type", DEFAULT_VIDEO_MIME).split(";")[0]
    media = TransientMedia.spooled(mime_type or DEFAULT_VIDEO_MIME, source_uri=source_uri)
    try:
        async for chunk in response.aiter_bytes():
            media.write(chunk)
    except BaseException:
        media.close()
        raise
    return media


def _origin(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    return url.scheme, url.host, url.port


def _video_uri(operation: Any) -> Optional[str]:
    response = getattr(operation, "response", None) or getattr(operation, "result", None)
    videos = getattr(response, "generated_videos", None) or []
    if not videos:
        return None
    video = getattr(videos[0], "video", None)
    return getattr(video, "uri", None) or None
