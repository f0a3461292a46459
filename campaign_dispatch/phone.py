"""Phone number normalisation and SMS segment accounting."""

from __future__ import annotations

import math
import re
from typing import NamedTuple, Optional

_NON_DIGITS = re.compile(r"\D")

GSM_7BIT = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ\x0cÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?¡"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM_EXTENDED = set("^{}\\[~]|€")


def format_e164(phone: object) -> Optional[str]:
    """Return ``phone`` in canonical ``+<digits>`` form, or ``None`` when unusable.

    Ten-digit numbers are assumed to be North American and get the ``1`` prefix.
    """
    if phone is None:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    if len(digits) == 10:
        digits = "1" + digits
    if not 11 <= len(digits) <= 15:
        return None
    return "+" + digits


def normalize_digits(phone: object) -> Optional[str]:
    """Return the national digits used as the thread key (leading US ``1`` dropped)."""
    if phone is None:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits or None


class SegmentInfo(NamedTuple):
    encoding: str
    segments: int
    remaining: int


def calculate_segments(message: str) -> SegmentInfo:
    """Count the SMS segments a body occupies (GSM-7 when possible, else UCS-2)."""
    is_gsm = all(ch in GSM_7BIT or ch in GSM_EXTENDED for ch in message)
    if is_gsm:
        char_count = sum(2 if ch in GSM_EXTENDED else 1 for ch in message)
        single, multi = 160, 153
    else:
        # UCS-2 budgets are in UTF-16 code units; astral characters take two
        char_count = len(message.encode("utf-16-le")) // 2
        single, multi = 70, 67
    segments = 1 if char_count <= single else math.ceil(char_count / multi)
    capacity = single if segments == 1 else segments * multi
    return SegmentInfo("GSM-7" if is_gsm else "UCS-2", segments, capacity - char_count)
