"""
Conversion of Kubernetes resource quantities reported by metrics.k8s.io.

CPU usage comes back as e.g. "12345678n" or "250m", memory as "128Mi" or
"131072Ki". Both helpers return whole integers: millicores and bytes.
"""
import math
import re

from .errors import InvalidQuantity

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# (suffix, multiplier, divisor); two-letter suffixes must precede one-letter ones
MEMORY_SUFFIXES = (
    ("Ki", 1024, 1),
    ("Mi", 1024 ** 2, 1),
    ("Gi", 1024 ** 3, 1),
    ("Ti", 1024 ** 4, 1),
    ("Pi", 1024 ** 5, 1),
    ("Ei", 1024 ** 6, 1),
    ("n", 1, 1e9),
    ("u", 1, 1e6),
    ("m", 1, 1e3),
    ("k", 1000, 1),
    ("M", 1000 ** 2, 1),
    ("G", 1000 ** 3, 1),
    ("T", 1000 ** 4, 1),
    ("P", 1000 ** 5, 1),
    ("E", 1000 ** 6, 1),
)

# relative to millicores
CPU_SUFFIXES = (
    ("n", 1, 1e6),
    ("u", 1, 1e3),
    ("m", 1, 1),
)


def _parse_number(raw: str, quantity: str) -> float:
    if not _NUMBER_RE.match(raw):
        raise InvalidQuantity(f"Invalid quantity: {quantity!r}")
    return float(raw)


def _split(quantity, suffixes):
    """Return (number, multiplier, divisor); (number, None, None) when unsuffixed."""
    if quantity is None:
        raise InvalidQuantity("Invalid quantity: None")
    text = str(quantity).strip()
    if not text:
        raise InvalidQuantity("Invalid quantity: empty string")
    for suffix, multiplier, divisor in suffixes:
        if text.endswith(suffix):
            return _parse_number(text[:-len(suffix)], text), multiplier, divisor
    return _parse_number(text, text), None, None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_memory_to_bytes(quantity) -> int:
    """Convert a memory quantity into bytes.

    Fractional bytes are truncated toward zero, so sub-byte quantities
    such as "2u" come out as 0.
    """
    value, multiplier, divisor = _split(quantity, MEMORY_SUFFIXES)
    if multiplier is None:
        return int(value)
    return int(value * multiplier / divisor)


def parse_cpu_to_millicores(quantity) -> int:
    """Convert a CPU quantity into millicores, rounding half up."""
    value, multiplier, divisor = _split(quantity, CPU_SUFFIXES)
    if multiplier is None:
        # plain cores
        return _round_half_up(value * 1000)
    return _round_half_up(value * multiplier / divisor)


def bytes_to_mebibytes(value: int) -> float:
    return value / 1024 / 1024
