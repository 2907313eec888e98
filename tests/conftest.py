from __future__ import annotations

from pathlib import Path

import psycopg2
import pytest

DATA_DIR = Path(__file__).parent / "data"


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection

    def execute(self, query, params=None):
        # psycopg2 interpolates pyformat placeholders the same way
        rendered = query % params if params is not None else query
        if any(marker in rendered for marker in self.connection.failing):
            raise psycopg2.ProgrammingError(f"cannot run: {rendered}")
        self.connection.executed.append((query, params))

    def close(self):
        self.connection.cursors_closed += 1


class FakeConnection:
    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.executed: list[tuple[str, dict | None]] = []
        self.autocommit = False
        self.closed = False
        self.cursors_closed = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self):
        self.closed = True


@pytest.fixture
def sample_log() -> Path:
    return DATA_DIR / "postgresql.log"


@pytest.fixture
def fake_connect(monkeypatch):
    """Route psycopg2.connect to a FakeConnection; failing markers make matching statements fail."""
    connections: list[FakeConnection] = []
    kwargs_seen: list[dict] = []

    def install(failing: tuple[str, ...] = ()):
        def connect(**kwargs):
            kwargs_seen.append(kwargs)
            connection = FakeConnection(failing)
            connections.append(connection)
            return connection

        monkeypatch.setattr(psycopg2, "connect", connect)
        return connections, kwargs_seen

    return install
