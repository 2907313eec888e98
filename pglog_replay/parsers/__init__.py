"""Parser modules for database server logs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, NamedTuple, Union

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TimeRemainingColumn

console = Console()

ParamValue = Union[None, bool, int, datetime, list[str], str]


class StatementCategory(Enum):
    SIMPLE = "simple"
    PARAMETRIZED = "parametrized"
    PREPARED = "prepared"


class Statement(NamedTuple):
    """A finished statement with the parameter values bound to it.

    ``text`` is ``None`` only for parameter lines that arrived while no
    statement was pending.
    """

    text: str | None
    params: list[ParamValue]


StatementSink = Callable[[Statement], None]


@dataclass(frozen=True, slots=True)
class ParseStats:
    """Statistics about parsing operations.

    Instances are immutable, every ``note_*`` call returns the next value.
    """

    lines_read: int = 0
    total_statements: int = 0
    simple_statements: int = 0
    parametrized_statements: int = 0
    prepared_statements_processed: int = 0
    unique_prepared_statements: int = 0
    orphaned_parameters: int = 0
    prepared_statement_names: frozenset[str] = field(default_factory=frozenset)

    def note_line(self) -> ParseStats:
        return replace(self, lines_read=self.lines_read + 1)

    def note_statement(self, category: StatementCategory, name: str | None = None) -> ParseStats:
        total = self.total_statements + 1
        if category is StatementCategory.SIMPLE:
            return replace(self, total_statements=total, simple_statements=self.simple_statements + 1)
        if category is StatementCategory.PARAMETRIZED:
            return replace(self, total_statements=total, parametrized_statements=self.parametrized_statements + 1)

        names = self.prepared_statement_names | {name} if name is not None else self.prepared_statement_names
        return replace(
            self,
            total_statements=total,
            prepared_statements_processed=self.prepared_statements_processed + 1,
            prepared_statement_names=names,
            unique_prepared_statements=len(names),
        )

    def note_orphaned_parameters(self) -> ParseStats:
        return replace(self, orphaned_parameters=self.orphaned_parameters + 1)

    def as_dict(self) -> dict[str, int]:
        return {
            "lines_read": self.lines_read,
            "total_statements": self.total_statements,
            "simple_statements": self.simple_statements,
            "parametrized_statements": self.parametrized_statements,
            "prepared_statements_processed": self.prepared_statements_processed,
            "unique_prepared_statements": self.unique_prepared_statements,
            "orphaned_parameters": self.orphaned_parameters,
        }


class LogParser(ABC):
    """Base class for statement log parsers."""

    @abstractmethod
    def parse_lines(self, lines: Iterable[str], sink: StatementSink) -> ParseStats:
        """Fold over raw log lines, passing every finished statement to ``sink``."""
        pass

    def parse_file(
        self,
        path: Path,
        sink: StatementSink,
        advance_progress: Callable[[int], None] | None = None,
    ) -> ParseStats:
        """Parse a log file lazily, line by line.

        Raises ``OSError`` when the file cannot be opened or read.
        """
        with path.open("r", encoding="utf-8", errors="replace", newline="") as handle:
            if advance_progress is None:
                return self.parse_lines(handle, sink)
            return self.parse_lines(_reporting(handle, advance_progress), sink)

    def parse_with_progress(self, path: Path, sink: StatementSink, show_progress: bool = True) -> ParseStats:
        """Parse a log file, drawing a progress bar when attached to a terminal."""
        if not (show_progress and console.is_terminal):
            return self.parse_file(path, sink)

        total_bytes = path.stat().st_size
        if total_bytes == 0:
            return self.parse_file(path, sink)

        with Progress(
            "{task.description}",
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeRemainingColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Parsing", total=total_bytes)

            def advance(amount: int) -> None:
                progress.advance(task_id, amount)

            stats = self.parse_file(path, sink, advance)
            progress.update(task_id, completed=total_bytes)
        return stats

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the parser name."""
        pass


def _reporting(lines: Iterable[str], advance_progress: Callable[[int], None]) -> Iterable[str]:
    for line in lines:
        advance_progress(len(line.encode("utf-8", errors="replace")))
        yield line
