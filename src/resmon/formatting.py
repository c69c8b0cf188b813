"""Formatting utilities for consistent CLI output."""

DECIMAL_PREFIXES = ("", "k", "M", "G", "T", "P", "E")
BINARY_PREFIXES = ("", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei")


def to_largest_unit(value: float, *, binary: bool = False) -> tuple[float, str]:
    """Scale value to the largest unit prefix that keeps it >= 1.

    Returns:
        (scaled value, prefix), e.g. (1.5, "M") for 1_500_000
    """
    base = 1024.0 if binary else 1000.0
    prefixes = BINARY_PREFIXES if binary else DECIMAL_PREFIXES
    index = 0
    while abs(value) >= base and index < len(prefixes) - 1:
        value /= base
        index += 1
    return value, prefixes[index]


def format_bytes(value: float) -> str:
    """Format a byte count, e.g. "300.0 MB"."""
    number, prefix = to_largest_unit(value)
    return f"{number:.1f} {prefix}B"


def format_speed(value: float | None) -> str:
    """Format a byte rate, or "N/A" when unsupported."""
    if value is None:
        return "N/A"
    return f"{format_bytes(value)}/s"


def format_ratio(ratio: float | None) -> str:
    """Format a 0.0-1.0 ratio as a percentage, e.g. "12.5 %"."""
    return f"{(ratio or 0.0) * 100.0:.1f} %"
