"""Unit tests for utils/formatting.py."""

import pytest

from wizard.utils.formatting import format_duration


@pytest.mark.unit
@pytest.mark.parametrize(
    "seconds, expected",
    [
        (None, "unknown"),
        (-5, "0 seconds"),
        (45.7, "45 seconds"),
        (60, "1 minute"),
        (200, "3 minutes 20s"),
        (3600, "1 hour"),
        (7500, "2 hours 5 min"),
    ],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
