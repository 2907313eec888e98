"""Intermediate replay file: one JSON encoded statement per line."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .parsers import ParamValue, Statement

logger = logging.getLogger(__name__)

DATETIME_TAG = "$datetime"


def _encode_value(value: ParamValue) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    return value


def _decode_value(value: Any) -> ParamValue:
    if isinstance(value, dict):
        return datetime.fromisoformat(value[DATETIME_TAG])
    return value


def encode_statement(statement: Statement) -> str:
    payload = {
        "statement": statement.text,
        "params": [_encode_value(value) for value in statement.params],
    }
    return json.dumps(payload, ensure_ascii=False)


def decode_statement(line: str) -> Statement:
    payload = json.loads(line)
    return Statement(payload["statement"], [_decode_value(value) for value in payload["params"]])


class ReplayFileWriter:
    """Statement sink appending every statement to a replay file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.written = 0
        self._handle = None

    def __enter__(self) -> ReplayFileWriter:
        self._handle = self.path.open("w", encoding="utf-8")
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        logger.debug("Wrote %d statements to %s", self.written, self.path)

    def __call__(self, statement: Statement) -> None:
        if self._handle is None:
            raise RuntimeError("ReplayFileWriter must be used as a context manager")
        self._handle.write(encode_statement(statement) + "\n")
        self.written += 1


def read_replayfile(path: Path) -> Iterator[Statement]:
    """Yield the statements of a replay file in order."""
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if line.strip():
                yield decode_statement(line)
