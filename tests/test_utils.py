"""Tests for utility functions."""
from notevault.utils import PRIVATE_PLACEHOLDER, preview_text


class TestPreviewText:
    """Tests for log previews of note content."""

    def test_short_text_unchanged(self):
        assert preview_text("Buy milk") == "Buy milk"

    def test_private_text_hidden(self):
        """Private content is never echoed."""
        assert preview_text("Locker code 4711", private=True) == PRIVATE_PLACEHOLDER

    def test_truncated(self):
        assert preview_text("x" * 100) == "x" * 64
        assert preview_text("abcdef", max_length=3) == "abc"

    def test_single_line(self):
        assert preview_text("first\nsecond\r\nthird") == "first second  third"

    def test_empty(self):
        assert preview_text(None) == ""
        assert preview_text("") == ""
