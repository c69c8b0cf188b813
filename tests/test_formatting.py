"""Tests for formatting utilities."""

import pytest

from resmon.formatting import format_bytes, format_ratio, format_speed, to_largest_unit


@pytest.mark.parametrize(
    "value, expected",
    [
        (0, (0, "")),
        (999, (999, "")),
        (1_500_000, (1.5, "M")),
        (2_000_000_000, (2.0, "G")),
    ],
)
def test_to_largest_unit_decimal(value, expected):
    number, prefix = to_largest_unit(value)
    assert number == pytest.approx(expected[0])
    assert prefix == expected[1]


def test_to_largest_unit_binary():
    assert to_largest_unit(3 * 1024**2, binary=True) == (3.0, "Mi")


def test_format_bytes():
    assert format_bytes(300_000_000) == "300.0 MB"
    assert format_bytes(512) == "512.0 B"


def test_format_speed():
    assert format_speed(None) == "N/A"
    assert format_speed(1500) == "1.5 kB/s"


def test_format_ratio():
    assert format_ratio(0.125) == "12.5 %"
    assert format_ratio(None) == "0.0 %"
