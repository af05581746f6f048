import time
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from obe.db import Degree, make_engine, storage_call
from obe.errors import StorageTimeoutError
from obe.storage import idempotent_read


def locked():
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


class FlakyReader:
    def __init__(self, failures):
        self.db = MagicMock()
        self._depth = 0
        self.failures = failures
        self.calls = 0

    @idempotent_read
    def read(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise locked()
        return "rows"


def test_storage_call_translates_timeouts():
    with pytest.raises(StorageTimeoutError) as exc:
        with storage_call("load_outcomes"):
            raise locked()
    assert exc.value.status_code == 503
    assert exc.value.detail["operation"] == "load_outcomes"


def test_storage_call_passes_other_errors_through():
    with pytest.raises(OperationalError):
        with storage_call("load_outcomes"):
            raise OperationalError("SELECT 1", {}, Exception("no such table: plos"))


def test_reads_are_retried_once():
    reader = FlakyReader(failures=1)
    assert reader.read() == "rows"
    assert reader.calls == 2
    reader.db.rollback.assert_called_once()


def test_second_timeout_is_raised():
    reader = FlakyReader(failures=2)
    with pytest.raises(StorageTimeoutError):
        reader.read()
    assert reader.calls == 2


def test_reads_inside_a_transaction_are_not_retried():
    reader = FlakyReader(failures=1)
    reader._depth = 1
    with pytest.raises(StorageTimeoutError):
        reader.read()
    assert reader.calls == 1


def test_atomic_rolls_back_on_error(store, db, program):
    with pytest.raises(RuntimeError):
        with store.atomic():
            db.add(Degree(code="TMP", name="Temporary"))
            db.flush()
            raise RuntimeError("abort")
    assert not store.degree_exists(program.other_degree_id + 1)


def test_sqlite_lock_wait_is_bounded(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'obe.db'}", 0.2)
    try:
        with engine.connect() as holder, engine.connect() as contender:
            holder.exec_driver_sql("BEGIN EXCLUSIVE")
            started = time.monotonic()
            with pytest.raises(StorageTimeoutError) as exc:
                with storage_call("save_threshold"):
                    contender.exec_driver_sql("CREATE TABLE scratch (x INTEGER)")
            assert time.monotonic() - started < 5
            assert exc.value.detail["operation"] == "save_threshold"
            holder.exec_driver_sql("ROLLBACK")
    finally:
        engine.dispose()
