"""Utility functions for NoteVault."""

from typing import Optional

PRIVATE_PLACEHOLDER = "[private]"


def preview_text(
    text: Optional[str], private: bool = False, max_length: int = 64
) -> str:
    """Return a short, log-safe preview of note content.

    Private content is never echoed; a placeholder is returned instead.

    Examples:
        preview_text("Buy milk") -> "Buy milk"
        preview_text("secret", private=True) -> "[private]"
        preview_text("x" * 100) -> 64 x's

    Args:
        text: The note content (may be None).
        private: Whether the note is private.
        max_length: Maximum number of characters to keep.

    Returns:
        A single-line preview string.
    """
    if private:
        return PRIVATE_PLACEHOLDER
    if not text:
        return ""
    preview = text.replace("\r", " ").replace("\n", " ")
    return preview[:max_length]
