"""
Tests for agentview.utils.titles.
"""

import pytest

from agentview.utils.titles import is_placeholder_title, suggested_title


class TestSuggestedTitle:
    def test_first_sentence(self):
        assert suggested_title("Is this a good plan? Let's see what happens next.") == "Is this a good plan?"

    def test_short_text_kept(self):
        assert suggested_title("ok") == "ok"

    def test_empty_is_untitled(self):
        assert suggested_title("") == "Untitled"
        assert suggested_title("   \n\t ") == "Untitled"

    def test_whitespace_collapsed(self):
        assert suggested_title("  hello\n\n   world  ") == "hello world"

    def test_short_first_sentence_tries_second(self):
        assert suggested_title("Hi. What does this error mean? Thanks") == "Hi. What does this error mean?"

    def test_long_text_truncated(self):
        text = "This sentence goes on and on without any terminator at all for a while"
        title = suggested_title(text)
        assert title.endswith("…")
        assert len(title) <= 45
        assert title.startswith("This sentence goes on")


class TestPlaceholderTitles:
    @pytest.mark.parametrize(
        "title",
        ["New thread", "untitled", "Thread", "Thread 4", "thread #12", "Capture", "  Quick Chat  ", None],
    )
    def test_placeholders(self, title):
        assert is_placeholder_title(title)

    @pytest.mark.parametrize("title", ["My thread", "Capture of login page", "Threads", "Untitled draft"])
    def test_real_titles(self, title):
        assert not is_placeholder_title(title)
