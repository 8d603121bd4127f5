from __future__ import annotations

from typing import Optional, Protocol

from .config import Settings


class CredentialSelector(Protocol):
    """Out-of-band paid-key selection, provided by managed hosting environments."""

    async def has_selected_credential(self) -> bool:
        ...

    async def open_selection_dialog(self) -> None:
        ...


class UnmanagedCredentials:
    """Selector for environments without a selection dialog; always reports a key."""

    async def has_selected_credential(self) -> bool:
        return True

    async def open_selection_dialog(self) -> None:
        return None


def resolve_api_key(override: Optional[str], settings: Settings) -> str:
    """Pick the key for one request: a user-saved key first, then configuration."""
    if override and override.strip():
        return override.strip()
    return settings.gemini_api_key
