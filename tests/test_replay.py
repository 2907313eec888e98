from pathlib import Path

from conftest import FakeConnection

from pglog_replay.parsers import Statement
from pglog_replay.replay import (
    ConnectionConfig,
    Replayer,
    parse,
    parse_and_replay,
    parse_and_replay_via_replayfile,
    replay,
    to_pyformat,
)


def test_to_pyformat_rewrites_placeholders():
    query, params = to_pyformat("SELECT $1, $2 WHERE name LIKE 'a%' AND id = $10", list(range(1, 11)))
    assert query == "SELECT %(p1)s, %(p2)s WHERE name LIKE 'a%%' AND id = %(p10)s"
    assert params["p1"] == 1
    assert params["p10"] == 10


def test_to_pyformat_skips_quoted_text():
    query, params = to_pyformat(
        "SELECT '$1 off', \"col$2\", $$ $1 $$, $fn$ RETURN $2; $fn$, $1, 'it''s $2', $2",
        ["a", "b"],
    )
    assert query == (
        "SELECT '$1 off', \"col$2\", $$ $1 $$, $fn$ RETURN $2; $fn$, %(p1)s, 'it''s $2', %(p2)s"
    )
    assert params == {"p1": "a", "p2": "b"}


def test_to_pyformat_leaves_plain_statements():
    assert to_pyformat("SELECT '100%'", []) == ("SELECT '100%'", None)


def test_connect_kwargs_skips_unset_values():
    config = ConnectionConfig(host="db", port=5433, dbname="shop")
    assert config.connect_kwargs() == {"host": "db", "port": 5433, "dbname": "shop", "dsn": ""}
    assert ConnectionConfig(dsn="postgresql:///shop").connect_kwargs() == {"dsn": "postgresql:///shop"}


def test_replayer_collects_errors_and_continues():
    connection = FakeConnection(failing=("missing",))
    errors = Replayer(connection).replay(
        [
            Statement("SELECT 1", []),
            Statement("SELECT * FROM missing", []),
            Statement("SELECT $1", [2]),
        ]
    )

    assert [error.index for error in errors] == [1]
    assert errors[0].statement == "SELECT * FROM missing"
    assert "missing" in errors[0].message
    assert connection.executed == [("SELECT 1", None), ("SELECT %(p1)s", {"p1": 2})]
    assert connection.cursors_closed == 3


def test_replayer_reports_orphaned_parameters_without_executing():
    connection = FakeConnection()
    errors = Replayer(connection).replay([Statement(None, [1])])
    assert len(errors) == 1
    assert errors[0].statement is None
    assert connection.executed == []


def test_replayer_reports_placeholder_without_value():
    errors = Replayer(FakeConnection()).replay([Statement("SELECT $2", [1])])
    assert len(errors) == 1
    assert "no parameter" in errors[0].message


def test_replay_uses_autocommit_connection(fake_connect):
    connections, kwargs_seen = fake_connect()
    errors = replay([Statement("SELECT 1", [])], ConnectionConfig(host="db"))

    assert errors == []
    assert kwargs_seen == [{"host": "db", "dsn": ""}]
    assert connections[0].autocommit is True
    assert connections[0].closed is True


def test_parse_keeps_statements_in_memory(sample_log: Path):
    statements, stats = parse(sample_log)
    assert len(statements) == stats.total_statements == 7


def test_parse_and_replay(fake_connect, sample_log: Path):
    connections, _ = fake_connect(failing=("missing",))
    report = parse_and_replay(sample_log, ConnectionConfig())

    assert report.stats.total_statements == 7
    assert [error.statement for error in report.errors] == ["SELECT * FROM missing"]
    assert len(connections[0].executed) == 6
    assert report.parse_seconds >= 0
    assert report.replay_seconds >= 0


def test_parse_and_replay_via_replayfile(fake_connect, sample_log: Path, tmp_path: Path):
    connections, _ = fake_connect()
    replayfile = tmp_path / "sample.replay"
    report = parse_and_replay_via_replayfile(sample_log, replayfile, ConnectionConfig())

    assert report.errors == []
    assert len(replayfile.read_text(encoding="utf-8").splitlines()) == 7
    assert connections[0].executed[2] == (
        "INSERT INTO items (id, name) VALUES (%(p1)s, %(p2)s)",
        {"p1": 1, "p2": "apple"},
    )
