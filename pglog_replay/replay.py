"""Replaying parsed statements against a PostgreSQL database."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import psycopg2

from .parsers import ParamValue, ParseStats, Statement
from .parsers.postgres import PostgresLogParser
from .replayfile import ReplayFileWriter, read_replayfile

logger = logging.getLogger(__name__)

# quoted literals, quoted identifiers and dollar-quoted bodies are matched whole and left alone
PLACEHOLDER_TOKEN = re.compile(
    r"(?P<quoted>'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")"
    r"|(?P<dollar_quoted>\$(?P<tag>[A-Za-z_][A-Za-z_0-9]*|)\$.*?\$(?P=tag)\$)"
    r"|\$(?P<position>[1-9][0-9]*)",
    re.DOTALL,
)


@dataclass
class ConnectionConfig:
    """Connection settings; unset fields fall back to libpq defaults."""

    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    dbname: str | None = None
    dsn: str | None = None

    def connect_kwargs(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "dbname": self.dbname,
        }
        kwargs = {key: value for key, value in params.items() if value is not None}
        # psycopg2 refuses a call without any dsn or keyword, "" means libpq defaults
        kwargs["dsn"] = self.dsn or ""
        return kwargs

    def connect(self):
        connection = psycopg2.connect(**self.connect_kwargs())
        connection.autocommit = True
        return connection


@dataclass
class ReplayError:
    """A statement the database rejected."""

    index: int
    statement: str | None
    message: str
    pgcode: str | None = None


@dataclass
class ReplayReport:
    parse_seconds: float
    replay_seconds: float
    stats: ParseStats
    errors: list[ReplayError] = field(default_factory=list)


def _placeholder(match: re.Match) -> str:
    if match["position"] is None:
        return match.group(0)
    return f"%(p{match['position']})s"


def to_pyformat(text: str, params: list[ParamValue]) -> tuple[str, dict[str, ParamValue] | None]:
    """Rewrite ``$n`` placeholders into psycopg2 named placeholders.

    Statements without parameters are passed through untouched, psycopg2 does
    not interpolate them.
    """
    if not params:
        return text, None
    query = PLACEHOLDER_TOKEN.sub(_placeholder, text.replace("%", "%%"))
    return query, {f"p{position}": value for position, value in enumerate(params, start=1)}


class Replayer:
    """Executes statements one by one, collecting the ones that fail."""

    def __init__(self, connection) -> None:
        self.connection = connection
        self.executed = 0

    def execute(self, index: int, statement: Statement) -> ReplayError | None:
        if statement.text is None:
            return ReplayError(index, None, "parameters logged without a statement")

        query, params = to_pyformat(statement.text, statement.params)
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
        except psycopg2.Error as exc:
            logger.debug("Statement %d failed: %s", index, exc)
            return ReplayError(index, statement.text, str(exc).strip(), exc.pgcode)
        except KeyError as exc:
            # placeholder without a logged value
            return ReplayError(index, statement.text, f"no parameter for placeholder {exc}")
        finally:
            cursor.close()
        self.executed += 1
        return None

    def replay(self, statements: Iterable[Statement]) -> list[ReplayError]:
        errors: list[ReplayError] = []
        for index, statement in enumerate(statements):
            error = self.execute(index, statement)
            if error is not None:
                errors.append(error)

        logger.info("Replayed %d statements, %d failed", self.executed, len(errors))
        return errors


def parse(path: Path, show_progress: bool = False) -> tuple[list[Statement], ParseStats]:
    """Parse every statement of a log file into memory."""
    statements: list[Statement] = []
    stats = PostgresLogParser().parse_with_progress(path, statements.append, show_progress)
    return statements, stats


def parse_to_replayfile(path: Path, replayfile: Path, show_progress: bool = False) -> ParseStats:
    """Parse a log file, streaming the statements into a replay file."""
    with ReplayFileWriter(replayfile) as writer:
        return PostgresLogParser().parse_with_progress(path, writer, show_progress)


def replay(statements: Iterable[Statement], config: ConnectionConfig) -> list[ReplayError]:
    connection = config.connect()
    try:
        return Replayer(connection).replay(statements)
    finally:
        connection.close()


def replay_from_replayfile(replayfile: Path, config: ConnectionConfig) -> list[ReplayError]:
    return replay(read_replayfile(replayfile), config)


def parse_and_replay(path: Path, config: ConnectionConfig, show_progress: bool = False) -> ReplayReport:
    """Parse a log file into memory, then replay it.

    Memory grows with the log size; prefer
    :func:`parse_and_replay_via_replayfile` for large logs.
    """
    started = time.perf_counter()
    statements, stats = parse(path, show_progress)
    parsed = time.perf_counter()
    errors = replay(statements, config)
    finished = time.perf_counter()
    return ReplayReport(parsed - started, finished - parsed, stats, errors)


def parse_and_replay_via_replayfile(
    path: Path, replayfile: Path, config: ConnectionConfig, show_progress: bool = False
) -> ReplayReport:
    started = time.perf_counter()
    stats = parse_to_replayfile(path, replayfile, show_progress)
    parsed = time.perf_counter()
    errors = replay_from_replayfile(replayfile, config)
    finished = time.perf_counter()
    return ReplayReport(parsed - started, finished - parsed, stats, errors)
