"""PostgreSQL statement log parser.

Expects the server to log with ``log_line_prefix = '%m|%u|%d|%c|'`` and
``log_statement = 'all'``, so every entry looks like::

    2019-08-02 14:02:07.123 CEST|user|db|5d442a3f.1c3e|LOG:  statement: SELECT 1

Statements spanning several lines continue on tab-prefixed lines, and bind
parameters follow on a ``DETAIL:  parameters: ...`` entry.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, NamedTuple

import polars as pl

from . import LogParser, ParseStats, Statement, StatementCategory, StatementSink
from .params import decode_parameters

logger = logging.getLogger(__name__)

KEYWORD_PATTERN = re.compile(r"^\W*(?P<keyword>[A-Za-z]+)")

LINE_PATTERN = re.compile(
    r"^(?P<timestamp>.*?)\|(?P<user>.*?)\|(?P<database>.*?)\|(?P<session_id>.*?)\|"
    r"(?P<entry_type>.*?):  (?P<body>.*)$",
    re.DOTALL,
)

SIMPLE_PREFIX = "statement: "
PARAMETRIZED_PREFIX = "execute <unnamed>: "
PREPARED_PATTERN = re.compile(r"^execute (?P<name>.+?): (?P<text>.*)$", re.DOTALL)


class EntryType(Enum):
    LOG = "LOG"
    DETAIL = "DETAIL"
    ERROR = "ERROR"
    STATEMENT = "STATEMENT"
    FATAL = "FATAL"
    PANIC = "PANIC"
    WARNING = "WARNING"
    NOTICE = "NOTICE"
    INFO = "INFO"
    DEBUG = "DEBUG"
    HINT = "HINT"
    CONTEXT = "CONTEXT"
    QUERY = "QUERY"
    LOCATION = "LOCATION"
    OTHER = "OTHER"

    @classmethod
    def from_token(cls, token: str) -> EntryType:
        if token.startswith("DEBUG"):
            return cls.DEBUG
        try:
            return cls(token)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    user: str
    database: str
    session_id: str
    entry_type: EntryType
    body: str


class ClassifiedStatement(NamedTuple):
    text: str
    category: StatementCategory
    name: str | None = None


@dataclass(frozen=True, slots=True)
class FoldState:
    """Running state of the parse: the statement awaiting parameters and the stats so far."""

    pending: str | None = None
    stats: ParseStats = field(default_factory=ParseStats)


def classify_line(line: str) -> LogEntry | None:
    """Split a log line into its prefix fields, entry type and message body."""
    match = LINE_PATTERN.match(line)
    if not match:
        return None
    return LogEntry(
        timestamp=match["timestamp"],
        user=match["user"],
        database=match["database"],
        session_id=match["session_id"],
        entry_type=EntryType.from_token(match["entry_type"]),
        body=match["body"].strip(),
    )


def merge_continuation(line: str, pending: str | None) -> str | None:
    """Return the extended pending text, or ``None`` when ``line`` is not a continuation."""
    if pending is None or not line.startswith("\t"):
        return None
    return f"{pending} {line[1:]}"


def classify_statement(body: str, stats: ParseStats) -> tuple[ClassifiedStatement | None, ParseStats]:
    """Recognise a logged statement; rules are tried in order."""
    if body.startswith(SIMPLE_PREFIX):
        classified = ClassifiedStatement(body[len(SIMPLE_PREFIX) :], StatementCategory.SIMPLE)
    elif body.startswith(PARAMETRIZED_PREFIX):
        classified = ClassifiedStatement(body[len(PARAMETRIZED_PREFIX) :], StatementCategory.PARAMETRIZED)
    else:
        match = PREPARED_PATTERN.match(body)
        if not match:
            return None, stats
        classified = ClassifiedStatement(match["text"], StatementCategory.PREPARED, match["name"])

    return classified, stats.note_statement(classified.category, classified.name)


def step(state: FoldState, raw_line: str) -> tuple[FoldState, list[Statement]]:
    """Advance the fold by one raw line.

    Returns the next state and the statements finished by this line, in
    emission order.
    """
    stats = state.stats.note_line()
    line = raw_line.rstrip("\r\n")

    merged = merge_continuation(line, state.pending)
    if merged is not None:
        return FoldState(merged, stats), []

    entry = classify_line(line)
    if entry is None:
        return FoldState(state.pending, stats), []

    if entry.entry_type is EntryType.DETAIL:
        params = decode_parameters(entry.body)
        if params is not None:
            if state.pending is None:
                logger.warning("Parameters without a pending statement at line %d", stats.lines_read)
                stats = stats.note_orphaned_parameters()
            return FoldState(None, stats), [Statement(state.pending, params)]

    emitted = [] if state.pending is None else [Statement(state.pending, [])]
    classified, stats = classify_statement(entry.body, stats)
    if classified is None:
        return FoldState(None, stats), emitted
    return FoldState(classified.text, stats), emitted


def finish(state: FoldState) -> list[Statement]:
    """Flush the statement still pending at end of input."""
    if state.pending is None:
        return []
    return [Statement(state.pending, [])]


class PostgresLogParser(LogParser):
    """Parser for PostgreSQL ``log_statement = 'all'`` logs."""

    @property
    def name(self) -> str:
        return "PostgreSQL"

    def parse_lines(self, lines: Iterable[str], sink: StatementSink) -> ParseStats:
        state = FoldState()
        for raw_line in lines:
            state, emitted = step(state, raw_line)
            for statement in emitted:
                sink(statement)
        for statement in finish(state):
            sink(statement)

        logger.debug("Parsed %d statements from %d lines", state.stats.total_statements, state.stats.lines_read)
        return state.stats

    def load_dataframe(self, path: Path, show_progress: bool = True) -> tuple[pl.DataFrame, ParseStats]:
        """Load the statements of a log into a DataFrame, one row per execution."""
        rows: list[dict[str, object]] = []

        def collect(statement: Statement) -> None:
            keyword = KEYWORD_PATTERN.match(statement.text or "")
            rows.append(
                {
                    "statement": statement.text,
                    "keyword": keyword["keyword"].upper() if keyword else None,
                    "param_count": len(statement.params),
                }
            )

        stats = self.parse_with_progress(path, collect, show_progress)

        schema = {"statement": pl.Utf8, "keyword": pl.Utf8, "param_count": pl.Int64}
        if not rows:
            return pl.DataFrame(schema=schema), stats
        return pl.DataFrame(rows, schema=schema), stats
