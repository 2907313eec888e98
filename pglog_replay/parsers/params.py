"""Decoding of logged bind parameter values."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable

from . import ParamValue

PARAMETERS_PREFIX = "parameters: "

# "$1 = 'a', $2 = NULL" -> ["'a'", "NULL"]
PLACEHOLDER_SEPARATOR = re.compile(r"(?:, )?\$[1-9][0-9]* = ")

INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")

DATETIME_PATTERN = re.compile(
    r"(?P<date>[0-9]{4}-[0-9]{2}-[0-9]{2})[T ](?P<time>[0-9]{2}:[0-9]{2}:[0-9]{2})"
    r"(?:\.(?P<fraction>[0-9]+))?"
    r"(?P<offset>Z|[+-][0-9]{2}(?::?[0-9]{2})?)?"
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

Conversion = Callable[[str], "ParamValue | _Missing"]


def _to_null(raw: str) -> ParamValue | _Missing:
    return None if raw == "NULL" else MISSING


def _strip_quotes(raw: str) -> str:
    if raw.startswith("'"):
        raw = raw[1:]
    if raw.endswith("'"):
        raw = raw[:-1]
    return raw


def _to_boolean(raw: str) -> ParamValue | _Missing:
    if raw == "t":
        return True
    if raw == "f":
        return False
    return MISSING


def _to_integer(raw: str) -> ParamValue | _Missing:
    if not INTEGER_PATTERN.fullmatch(raw):
        return MISSING
    try:
        return int(raw)
    except ValueError:
        # longer than sys.get_int_max_str_digits(), e.g. a huge numeric
        return MISSING


def _parse_datetime(raw: str, with_offset: bool) -> datetime | _Missing:
    match = DATETIME_PATTERN.fullmatch(raw)
    if not match or (match["offset"] is not None) != with_offset:
        return MISSING

    # fromisoformat on 3.10 only takes 3 or 6 fractional digits and +HH:MM offsets
    text = f"{match['date']}T{match['time']}"
    if match["fraction"]:
        text += "." + match["fraction"][:6].ljust(6, "0")
    offset = match["offset"]
    if offset == "Z":
        text += "+00:00"
    elif offset:
        digits = offset[1:].replace(":", "")
        text += f"{offset[0]}{digits[:2]}:{digits[2:] or '00'}"

    try:
        return datetime.fromisoformat(text)
    except ValueError:
        # out of range fields, e.g. month 13
        return MISSING


def _to_datetime(raw: str) -> ParamValue | _Missing:
    return _parse_datetime(raw, with_offset=True)


def _to_naive_datetime(raw: str) -> ParamValue | _Missing:
    return _parse_datetime(raw, with_offset=False)


def _to_list(raw: str) -> ParamValue | _Missing:
    if raw.startswith("{"):
        return raw[1:-1].split(",")
    return MISSING


CONVERSIONS: tuple[Conversion, ...] = (
    _to_boolean,
    _to_integer,
    _to_datetime,
    _to_naive_datetime,
    _to_list,
)


def coerce_parameter(raw: str) -> ParamValue:
    """Convert one logged parameter value, first matching conversion wins.

    ``NULL`` is checked before quotes are stripped so that ``'NULL'`` stays a
    string. Anything no conversion accepts is returned quote-stripped.
    """
    value = _to_null(raw)
    if value is not MISSING:
        return value

    stripped = _strip_quotes(raw)
    for conversion in CONVERSIONS:
        value = conversion(stripped)
        if value is not MISSING:
            return value
    return stripped


def split_parameters(payload: str) -> list[str]:
    fragments = PLACEHOLDER_SEPARATOR.split(payload)
    while fragments and fragments[0] == "":
        fragments.pop(0)
    while fragments and fragments[-1] == "":
        fragments.pop()
    return fragments


def decode_parameters(body: str) -> list[ParamValue] | None:
    """Decode a ``parameters: ...`` DETAIL body, ``None`` for any other body."""
    if not body.startswith(PARAMETERS_PREFIX):
        return None
    return [coerce_parameter(fragment) for fragment in split_parameters(body[len(PARAMETERS_PREFIX) :])]
