"""Tests for utility helpers"""

import pytest

from hostwatch.utils.helpers import parse_interval


class TestParseInterval:
    """Test interval parsing"""

    @pytest.mark.parametrize("text,seconds", [
        ("30s", 30),
        ("10m", 600),
        ("1h", 3600),
        ("2d", 172800),
        ("10 minutes", 600),
        ("1 Hour", 3600),
    ])
    def test_valid(self, text, seconds):
        assert parse_interval(text) == seconds

    @pytest.mark.parametrize("text", ["", "ten minutes", "5", "5 weeks", "-1m"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_interval(text)
