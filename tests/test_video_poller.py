import asyncio

import httpx
import pytest
from google.genai import errors as genai_errors

from fakes import (
    VIDEO_BYTES,
    VIDEO_URI,
    DownloadRecorder,
    FakeGenaiClient,
    SleepRecorder,
    make_settings,
    video_operation,
)
from lumina.errors import (
    ApiKeyExpiredError,
    DownloadFailedError,
    EmptyResultError,
    PollTimeoutError,
    RemoteProviderError,
)
from lumina.models import MediaPayload
from lumina.video_poller import API_KEY_HEADER, VideoPoller


def build_poller(tmp_path, client, downloads=None, sleeps=None, **overrides):
    settings = make_settings(tmp_path, **overrides)
    downloads = downloads or DownloadRecorder()
    sleeps = sleeps or SleepRecorder()
    poller = VideoPoller(
        client,
        "secret-key",
        settings,
        http_client_factory=downloads.client_factory(),
        sleep=sleeps,
    )
    return poller, downloads, sleeps


@pytest.mark.parametrize("queries", [1, 3, 7])
def test_polls_exactly_until_done_then_downloads_once(tmp_path, queries):
    client = FakeGenaiClient(done_after=queries)
    poller, downloads, sleeps = build_poller(tmp_path, client)

    media = asyncio.run(poller.run("a cat surfing", "16:9"))

    assert client.operations.queries == queries
    assert poller.status_queries == queries
    assert sleeps.delays == [10.0] * queries
    assert len(downloads.requests) == 1
    assert media.read() == VIDEO_BYTES
    assert media.mime_type == "video/mp4"
    media.close()


def test_already_finished_operation_is_not_polled(tmp_path):
    client = FakeGenaiClient()
    client.models.video_reply = video_operation(done=True)
    poller, downloads, sleeps = build_poller(tmp_path, client)

    media = asyncio.run(poller.run("sunrise", "9:16"))

    assert client.operations.queries == 0
    assert sleeps.delays == []
    assert len(downloads.requests) == 1
    media.close()


def test_download_authenticates_with_header_not_query(tmp_path):
    client = FakeGenaiClient(done_after=1)
    poller, downloads, _ = build_poller(tmp_path, client)

    asyncio.run(poller.run("sunrise", "16:9")).close()

    request = downloads.requests[0]
    assert request.headers[API_KEY_HEADER] == "secret-key"
    assert "secret-key" not in str(request.url)
    assert str(request.url) == VIDEO_URI


def test_request_carries_aspect_ratio_and_seed_image(tmp_path):
    client = FakeGenaiClient(done_after=1)
    poller, _, _ = build_poller(tmp_path, client)
    seed = MediaPayload.from_bytes(b"seed", "image/jpeg")

    asyncio.run(poller.run("sunrise", "9:16", seed)).close()

    call = client.models.video_calls[0]
    assert call["model"] == "veo-3.1-fast-generate-preview"
    assert call["config"].aspect_ratio == "9:16"
    assert call["config"].number_of_videos == 1
    assert call["config"].resolution == "720p"
    assert call["image"].image_bytes == b"seed"


def test_poll_bound_raises_timeout(tmp_path):
    client = FakeGenaiClient(done_after=100)
    poller, downloads, _ = build_poller(tmp_path, client, video_max_poll_attempts=4)

    with pytest.raises(PollTimeoutError):
        asyncio.run(poller.run("sunrise", "16:9"))

    assert client.operations.queries == 4
    assert downloads.requests == []


def test_failed_download_raises(tmp_path):
    client = FakeGenaiClient(done_after=1)
    poller, _, _ = build_poller(tmp_path, client, downloads=DownloadRecorder(status_code=403))

    with pytest.raises(DownloadFailedError):
        asyncio.run(poller.run("sunrise", "16:9"))


def test_finished_operation_without_video_is_empty(tmp_path):
    client = FakeGenaiClient(done_after=1)
    client.operations.final = video_operation(done=True, uri=None)
    poller, downloads, _ = build_poller(tmp_path, client)

    with pytest.raises(EmptyResultError):
        asyncio.run(poller.run("sunrise", "16:9"))
    assert downloads.requests == []


def test_operation_error_signalling_missing_entity_is_key_expiry(tmp_path):
    client = FakeGenaiClient(done_after=1)
    client.operations.final = video_operation(
        done=True,
        uri=None,
        error={"code": 404, "message": "Requested entity was not found."},
    )
    poller, _, _ = build_poller(tmp_path, client)

    with pytest.raises(ApiKeyExpiredError):
        asyncio.run(poller.run("sunrise", "16:9"))


def test_provider_error_while_issuing_is_translated(tmp_path):
    client = FakeGenaiClient()
    client.models.video_reply = genai_errors.ServerError(
        503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}
    )
    poller, _, _ = build_poller(tmp_path, client)

    with pytest.raises(RemoteProviderError) as excinfo:
        asyncio.run(poller.run("sunrise", "16:9"))
    assert not isinstance(excinfo.value, ApiKeyExpiredError)


def test_cancellation_during_wait_skips_download(tmp_path):
    client = FakeGenaiClient(done_after=5)

    async def cancelled_sleep(delay):
        raise asyncio.CancelledError()

    poller, downloads, _ = build_poller(tmp_path, client, sleeps=cancelled_sleep)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(poller.run("sunrise", "16:9"))
    assert client.operations.queries == 0
    assert downloads.requests == []


def test_operation_error_with_invalid_key_reason_is_key_expiry(tmp_path):
    client = FakeGenaiClient(done_after=1)
    client.operations.final = video_operation(
        done=True,
        uri=None,
        error={
            "code": 400,
            "message": "Request rejected.",
            "details": [{"reason": "API_KEY_INVALID"}],
        },
    )
    poller, _, _ = build_poller(tmp_path, client)

    with pytest.raises(ApiKeyExpiredError):
        asyncio.run(poller.run("sunrise", "16:9"))


class RedirectingStorage:
    """Serves the video from wherever the first request is redirected to."""

    def __init__(self, location):
        self.location = location
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if len(self.requests) == 1:
            return httpx.Response(302, headers={"location": self.location})
        return httpx.Response(200, content=VIDEO_BYTES, headers={"content-type": "video/mp4"})

    def client_factory(self):
        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(self))


def test_cross_origin_redirect_drops_the_key_header(tmp_path):
    client = FakeGenaiClient(done_after=1)
    storage = RedirectingStorage("https://storage.example.net/blob/video-1?sig=abc")
    poller, _, _ = build_poller(tmp_path, client, downloads=storage)

    media = asyncio.run(poller.run("sunrise", "16:9"))

    first, second = storage.requests
    assert first.headers[API_KEY_HEADER] == "secret-key"
    assert second.url.host == "storage.example.net"
    assert API_KEY_HEADER not in second.headers
    assert media.read() == VIDEO_BYTES
    media.close()


def test_same_origin_redirect_keeps_the_key_header(tmp_path):
    client = FakeGenaiClient(done_after=1)
    storage = RedirectingStorage("/v1beta/files/video-1:download?alt=media&hop=1")
    poller, _, _ = build_poller(tmp_path, client, downloads=storage)

    asyncio.run(poller.run("sunrise", "16:9")).close()

    second = storage.requests[1]
    assert second.url.host == "generativelanguage.googleapis.com"
    assert second.headers[API_KEY_HEADER] == "secret-key"


def test_endless_redirects_fail_the_download(tmp_path):
    client = FakeGenaiClient(done_after=1)

    def loop(request):
        return httpx.Response(302, headers={"location": str(request.url)})

    class Looping:
        def client_factory(self):
            return lambda: httpx.AsyncClient(transport=httpx.MockTransport(loop))

    poller, _, _ = build_poller(tmp_path, client, downloads=Looping())

    with pytest.raises(DownloadFailedError):
        asyncio.run(poller.run("sunrise", "16:9"))
