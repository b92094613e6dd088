"""
Ticket codes: one letter A-Z followed by a zero-padded 3-digit number.

The sequence runs A000, A001, ... A999, B000, ... Z999 and then wraps back
to A000. The wrap reuses codes issued long before; it is logged so that
operators notice when the capacity of 26 000 codes is exhausted.
"""
from __future__ import annotations
import logging
import re
from typing import Tuple

logger = logging.getLogger(__name__)

DEFAULT_CODE = "A000"
MAX_NUMBER = 999

_CODE_RE = re.compile(r"^([A-Z])([0-9]{3})$")


class InvalidCodeFormat(ValueError):
    pass


def parse_code(code: str) -> Tuple[str, int]:
    m = _CODE_RE.match(code) if isinstance(code, str) else None
    if m is None:
        raise InvalidCodeFormat(f"invalid ticket code: {code!r}")
    return m.group(1), int(m.group(2))


def format_code(letter: str, number: int) -> str:
    return f"{letter}{number:03d}"


def code_key(code: str) -> Tuple[str, int]:
    # (letter, number) ordering used for the sequence
    return parse_code(code)


def next_code(code: str) -> str:
    letter, number = parse_code(code)
    number += 1
    if number <= MAX_NUMBER:
        return format_code(letter, number)
    if letter == "Z":
        logger.warning(
            "ticket code sequence wrapped from %s to %s; "
            "codes will be reused", code, DEFAULT_CODE
        )
        return DEFAULT_CODE
    return format_code(chr(ord(letter) + 1), 0)
