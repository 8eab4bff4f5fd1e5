"""
SMS segment counting.

Determines the encoding of a message body and how many carrier segments
it is billed as under toll-free (US/Canada) concatenation rules.
"""

import math
from enum import Enum
from typing import Any


class SmsEncoding(Enum):
    """Character encodings a carrier may use for an SMS body."""
    GSM7 = "gsm-7"
    UCS2 = "ucs-2"


# GSM 03.38 basic character set. Extended characters (e.g. the euro sign)
# are not listed and therefore push a message to UCS-2.
GSM7_BASIC_CHARS = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ\x1bÆæßÉ"
    " !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§"
    "¿abcdefghijklmnopqrstuvwxyzäöñüà"
    "\f[\\]^{|}~"
)

GSM7_SINGLE_SEGMENT_CHARS = 160
GSM7_MULTI_SEGMENT_CHARS = 152
UCS2_SINGLE_SEGMENT_CHARS = 70
UCS2_MULTI_SEGMENT_CHARS = 66


def detect_encoding(text: str) -> SmsEncoding:
    """Return GSM7 when every character is in the basic set, else UCS2."""
    if all(char in GSM7_BASIC_CHARS for char in text):
        return SmsEncoding.GSM7
    return SmsEncoding.UCS2


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units, as carriers count it (an emoji is 2)."""
    return len(text.encode("utf-16-le")) // 2


def count_segments(text: Any) -> int:
    """Count the billed segments for a single message body.

    Args:
        text: Message body. Anything that is not a string counts as no message.

    Returns:
        0 for an empty or non-string body, otherwise the segment count
    """
    if not isinstance(text, str) or not text:
        return 0

    length = utf16_length(text)
    if detect_encoding(text) == SmsEncoding.GSM7:
        if length <= GSM7_SINGLE_SEGMENT_CHARS:
            return 1
        return math.ceil(length / GSM7_MULTI_SEGMENT_CHARS)

    if length <= UCS2_SINGLE_SEGMENT_CHARS:
        return 1
    return math.ceil(length / UCS2_MULTI_SEGMENT_CHARS)
