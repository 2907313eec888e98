from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pglog_replay.parsers import Statement
from pglog_replay.replayfile import ReplayFileWriter, decode_statement, encode_statement, read_replayfile


def test_writer_and_reader_preserve_statements(tmp_path: Path):
    statements = [
        Statement("SELECT 1", []),
        Statement(
            "INSERT INTO t VALUES ($1, $2, $3, $4, $5, $6, $7)",
            [
                None,
                True,
                42,
                datetime(2019, 8, 2, 14, 2, 7, 123000, tzinfo=timezone(timedelta(hours=2))),
                datetime(2019, 8, 2, 14, 2, 7),
                ["a", "b"],
                "it's\nmultiline",
            ],
        ),
        Statement(None, ["orphan"]),
    ]
    replayfile = tmp_path / "out.replay"

    with ReplayFileWriter(replayfile) as writer:
        for statement in statements:
            writer(statement)

    assert writer.written == 3
    assert len(replayfile.read_text(encoding="utf-8").splitlines()) == 3
    assert list(read_replayfile(replayfile)) == statements


def test_datetime_offset_survives_encoding():
    value = datetime(2019, 8, 2, 14, 2, 7, tzinfo=timezone(timedelta(hours=-5)))
    decoded = decode_statement(encode_statement(Statement("SELECT $1", [value])))
    assert decoded.params[0].utcoffset() == timedelta(hours=-5)
    assert decode_statement(encode_statement(Statement("SELECT $1", [datetime(2020, 1, 1)]))).params[0].tzinfo is None


def test_writer_requires_context(tmp_path: Path):
    with pytest.raises(RuntimeError):
        ReplayFileWriter(tmp_path / "out.replay")(Statement("SELECT 1", []))
