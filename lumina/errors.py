"""Error taxonomy shared by the gateway, poller, history and dispatcher layers.

Every error carries the single user-visible message the dispatcher reports
for its category and the HTTP status the API layer answers with. The
``detail`` argument is the internal description used for logging.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional

import httpx
from google.genai import errors as genai_errors

logger = logging.getLogger("lumina.errors")

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again."


class LuminaError(Exception):
    """Base class for all errors raised by the generation core."""

    kind = "error"
    user_message = GENERIC_FAILURE_MESSAGE
    status_code = 500

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message
        if user_message is not None:
            self.user_message = user_message


class ValidationError(LuminaError):
    """A mode precondition failed; no network call was made."""

    kind = "validation"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=message)


class GenerationInProgressError(ValidationError):
    kind = "busy"
    status_code = 409

    def __init__(self) -> None:
        super().__init__("A generation is already in progress.")


class MissingApiKeyError(ValidationError):
    kind = "missing_api_key"

    def __init__(self) -> None:
        super().__init__("Gemini API Key is missing. Please configure it in settings.")


class CredentialSelectionRequiredError(ValidationError):
    kind = "credential_required"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("Please select a paid project API key to generate videos.")


class RemoteProviderError(LuminaError):
    """Transport or upstream failure reported by the generative provider."""

    kind = "provider"
    status_code = 502


class ApiKeyExpiredError(RemoteProviderError):
    kind = "api_key_expired"
    user_message = "API Key expired or invalid. Please select a valid paid project key."
    status_code = 401


class PollTimeoutError(RemoteProviderError):
    kind = "poll_timeout"
    status_code = 504


class DownloadFailedError(RemoteProviderError):
    kind = "download_failed"


class EmptyResultError(LuminaError):
    """The provider answered but produced no usable asset or text."""

    kind = "empty_result"
    status_code = 502


class UpscaleError(LuminaError):
    kind = "upscale"
    user_message = "Upscaling failed. Please try again."
    status_code = 502


class MaterializationError(LuminaError):
    kind = "materialization"


class HistoryStoreError(LuminaError):
    """The durable history store failed to list, create or delete a record."""

    kind = "history_store"
    user_message = "Failed to update history. Please try again."


API_KEY_EXPIRED_MARKERS = (
    "Requested entity was not found",
    "API key not valid",
    "API key expired",
    "API_KEY_INVALID",
)
API_KEY_EXPIRED_REASONS = {"API_KEY_INVALID"}


def classify_provider_failure(
    message: str,
    code: Optional[int] = None,
    status: Optional[str] = None,
    reasons: Iterable[str] = (),
) -> RemoteProviderError:
    """Map an upstream failure description onto the taxonomy.

    Credential rejections become ApiKeyExpiredError so callers can re-run the
    credential selection flow; everything else is a generic provider error.
    ``reasons`` are the ``reason`` values of the error's detail entries.
    """
    text = message or ""
    if code == 401 or (status or "").upper() == "UNAUTHENTICATED":
        return ApiKeyExpiredError(text)
    if any(marker in text for marker in API_KEY_EXPIRED_MARKERS):
        return ApiKeyExpiredError(text)
    if API_KEY_EXPIRED_REASONS.intersection(reasons):
        return ApiKeyExpiredError(text)
    return RemoteProviderError(text or "Provider request failed")


def error_reasons(payload: Any) -> List[str]:
    """Collect ``reason`` values from a google.rpc error body or its details list."""
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        payload = payload["error"]
    details = payload.get("details") if isinstance(payload, dict) else payload
    if not isinstance(details, list):
        return []
    return [str(item["reason"]) for item in details if isinstance(item, dict) and item.get("reason")]


@contextmanager
def provider_errors(operation: str) -> Iterator[None]:
    """Translate SDK and transport exceptions raised inside the block.

    Errors that already belong to the taxonomy pass through unchanged.
    Cancellation is not an Exception and always propagates.
    """
    try:
        yield
    except LuminaError:
        raise
    except genai_errors.APIError as exc:
        logger.warning("provider call failed op=%s code=%s status=%s", operation, exc.code, exc.status)
        raise classify_provider_failure(
            str(exc.message or exc),
            exc.code,
            exc.status,
            error_reasons(exc.details),
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning("provider transport failed op=%s error=%s", operation, exc)
        raise RemoteProviderError(f"{operation}: {exc}") from exc
    except Exception as exc:
        # aiohttp-backed SDK transports raise their own client and OS errors.
        logger.warning("provider call raised op=%s error=%r", operation, exc)
        raise RemoteProviderError(f"{operation}: {exc!r}") from exc
