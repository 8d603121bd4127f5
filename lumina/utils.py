import base64
import binascii
import json
import re
from typing import Any, List, Optional, Tuple

DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]+)(?P<params>(?:;[^;,]+)*);base64,(?P<data>.*)$", re.DOTALL)


def build_data_uri(data: bytes, mime_type: str) -> str:
    """Purpose: Encode binary media into a self-contained data URI.
    Inputs/Outputs: Input is raw bytes and a MIME type; output is a
        ``data:<mime>;base64,<payload>`` string.
    Side Effects / State: None; pure function.
    Dependencies: Uses base64; called by the gateway and the materializer.
    Failure Modes: An empty MIME type falls back to application/octet-stream.
    Testing Notes: Check the prefix and that the payload decodes to the input bytes.
    """
    # Base64 keeps the encoding replay-safe once stored.
    mime = (mime_type or "application/octet-stream").strip()
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def is_data_uri(value: Optional[str]) -> bool:
    """Return True when ``value`` is a base64 data URI."""
    if not value:
        return False
    return DATA_URI_RE.match(value) is not None


def parse_data_uri(value: str) -> Tuple[bytes, str]:
    """Purpose: Split a base64 data URI back into bytes and MIME type.
    Inputs/Outputs: Input is a data URI; output is (payload bytes, mime type).
    Side Effects / State: None; pure function.
    Dependencies: Uses DATA_URI_RE and base64; used by upscale and tests.
    Failure Modes: Raises ValueError when the string is not a base64 data URI
        or the payload is not valid base64.
    Testing Notes: Round-trip a small payload through build_data_uri.
    """
    # Reject anything that is not a base64 data URI.
    match = DATA_URI_RE.match(value or "")
    if not match:
        raise ValueError("Value is not a base64 data URI")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Data URI payload is not valid base64") from exc
    return data, match.group("mime")


def safe_json_loads(text: Optional[str]) -> Optional[Any]:
    """Purpose: Decode a serialized JSON value stored alongside a history record.
    Inputs/Outputs: Input is raw text or None; output is the decoded value or None.
    Side Effects / State: None; pure function.
    Dependencies: Uses json.loads; called when store records are turned into entries.
    Failure Modes: Returns None on JSONDecodeError or empty input.
    Testing Notes: Validate valid JSON parses and malformed JSON returns None.
    """
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def decode_sources(text: Optional[str]) -> List[dict]:
    """Decode serialized citation pairs, dropping malformed entries."""
    decoded = safe_json_loads(text)
    if not isinstance(decoded, list):
        return []
    return [item for item in decoded if isinstance(item, dict) and item.get("uri")]
