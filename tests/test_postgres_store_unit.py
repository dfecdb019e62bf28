"""PostgresStore unit tests against a scripted connection, no database needed."""

import contextlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from tasktrack.storage.errors import ConstraintViolation, DuplicateTokenError
from tasktrack.storage.models import RefreshTokenRecord
from tasktrack.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _ParentUniqueViolation(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="refresh_token_parent_uniq")


class _TokenUniqueViolation(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="refresh_token_token_key")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield self


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    store.dsn = "postgresql://test"
    return store


def _token_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "token": "tok-1",
        "user_id": "22222222-2222-2222-2222-222222222222",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "revoked": False,
        "revoked_at": None,
        "updated_at": NOW,
        "client_fingerprint": {"user_agent": "pytest"},
        "parent_id": None,
    }
    row.update(overrides)
    return row


def _record(parent_id=None):
    return RefreshTokenRecord.new(
        "22222222-2222-2222-2222-222222222222",
        "tok-2",
        NOW + timedelta(days=7),
        issued_at=NOW,
        parent_id=parent_id,
    )


class TestRotationPrimitives:
    def test_revoke_if_live_is_conditional_update(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[{"id": "rec-1"}])])
        store = _store(tmp_path, conn)

        with store.transaction() as txn:
            assert txn.revoke_if_live("rec-1", NOW) is True

        sql, params = conn.executed[0]
        assert "WHERE id = %s AND revoked = FALSE" in sql
        assert "RETURNING id" in sql
        assert params == (NOW, NOW, "rec-1")
        assert conn.transactions == 1

    def test_revoke_if_live_reports_lost_race(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[])])
        store = _store(tmp_path, conn)

        assert store.with_transaction(lambda txn: txn.revoke_if_live("rec-1", NOW)) is False

    def test_insert_uses_savepoint(self, tmp_path):
        conn = FakeConnection([FakeCursor()])
        store = _store(tmp_path, conn)

        record = store.insert_refresh_token(_record())

        assert record.token == "tok-2"
        assert conn.transactions == 1
        sql, params = conn.executed[0]
        assert sql.startswith("INSERT INTO refresh_token")
        assert params[1] == "tok-2"

    def test_token_collision_maps_to_duplicate_token(self, tmp_path):
        conn = FakeConnection([_TokenUniqueViolation("duplicate key")])
        store = _store(tmp_path, conn)

        with pytest.raises(DuplicateTokenError):
            store.insert_refresh_token(_record())

    def test_second_successor_maps_to_parent_violation(self, tmp_path):
        conn = FakeConnection([_ParentUniqueViolation("duplicate key")])
        store = _store(tmp_path, conn)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_refresh_token(_record(parent_id="rec-1"))

        assert not isinstance(excinfo.value, DuplicateTokenError)
        assert excinfo.value.detail == {"parent_id": "rec-1"}

    def test_missing_owner_maps_to_constraint_violation(self, tmp_path):
        conn = FakeConnection([errors.ForeignKeyViolation("fk")])
        store = _store(tmp_path, conn)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_refresh_token(_record())

        assert "user_id" in excinfo.value.detail


class TestQueries:
    def test_find_refresh_token_builds_filters(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[_token_row()])])
        store = _store(tmp_path, conn)

        record = store.find_refresh_token("tok-1", user_id="u-1", revoked=False)

        sql, params = conn.executed[0]
        assert sql.endswith("WHERE token = %s AND user_id = %s AND revoked = %s")
        assert params == ("tok-1", "u-1", False)
        assert record.client_fingerprint == {"user_agent": "pytest"}
        assert record.parent_id is None

    def test_fingerprint_stored_as_json_text(self, tmp_path):
        row = _token_row(client_fingerprint='{"ip_address": "10.0.0.1"}', parent_id="p-1")
        conn = FakeConnection([FakeCursor(rows=[row])])
        store = _store(tmp_path, conn)

        record = store.find_refresh_token("tok-1")

        assert record.client_fingerprint == {"ip_address": "10.0.0.1"}
        assert record.parent_id == "p-1"

    def test_latest_live_orders_by_issue_time(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[])])
        store = _store(tmp_path, conn)

        assert store.find_latest_live_refresh_token("u-1", now=NOW) is None

        sql, params = conn.executed[0]
        assert "revoked = FALSE AND expires_at > %s" in sql
        assert "ORDER BY issued_at DESC" in sql
        assert params == ("u-1", NOW)

    def test_find_successor_selects_by_parent(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[_token_row(id="rec-2", parent_id="rec-1")])])
        store = _store(tmp_path, conn)

        successor = store.find_successor("rec-1")

        sql, params = conn.executed[0]
        assert sql.endswith("WHERE parent_id = %s")
        assert params == ("rec-1",)
        assert successor.id == "rec-2"

    def test_find_successor_none_without_child(self, tmp_path):
        conn = FakeConnection([FakeCursor(rows=[])])
        store = _store(tmp_path, conn)

        assert store.find_successor("rec-1") is None

    def test_purge_returns_rowcount(self, tmp_path):
        conn = FakeConnection([FakeCursor(rowcount=3)])
        store = _store(tmp_path, conn)

        assert store.purge_expired_refresh_tokens(NOW) == 3
        assert conn.executed[0][1] == (NOW,)

    def test_record_login_failure_single_statement(self, tmp_path):
        row = {
            "id": "u-1",
            "username": "alice",
            "email": "alice@example.com",
            "role_ids": ["r-1"],
            "failed_login_attempts": 5,
            "lock_until": NOW + timedelta(minutes=15),
        }
        conn = FakeConnection([FakeCursor(rows=[row])])
        store = _store(tmp_path, conn)

        user = store.record_login_failure(
            "u-1", max_attempts=5, lockout=timedelta(minutes=15), now=NOW
        )

        assert len(conn.executed) == 1
        _, params = conn.executed[0]
        assert params["lock_until"] == NOW + timedelta(minutes=15)
        assert params["max_attempts"] == 5
        assert user.failed_login_attempts == 5
        assert user.is_locked(NOW)
        assert user.role_ids == ["r-1"]

    def test_duplicate_username_detected_from_constraint(self, tmp_path):
        class _UsernameViolation(errors.UniqueViolation):
            @property
            def diag(self):
                return SimpleNamespace(constraint_name="app_user_username_key")

        conn = FakeConnection([_UsernameViolation("duplicate key")])
        store = _store(tmp_path, conn)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("alice", "alice@example.com")

        assert excinfo.value.detail == {"field": "username"}

    def test_credential_inserted_in_same_transaction(self, tmp_path):
        row = {"id": "u-1", "username": "alice", "email": "alice@example.com", "role_ids": []}
        conn = FakeConnection([FakeCursor(rows=[row]), FakeCursor(rowcount=1)])
        store = _store(tmp_path, conn)

        store.create_user("alice", "alice@example.com", credential=("hash", "argon2id"))

        assert conn.transactions == 1
        assert len(conn.executed) == 2
        user_id = conn.executed[0][1][0]
        sql, params = conn.executed[1]
        assert sql.startswith("INSERT INTO user_auth_credential")
        assert params == (user_id, "hash", "argon2id")
