"""Object index store: JSON file (objectData.json) with SQLite and Postgres backends."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from hashlib import sha256
from logging import getLogger
from pathlib import Path
from typing import Any, ContextManager, Iterator, Mapping, Optional
import json
import os
import sqlite3

from filelock import FileLock, Timeout

from packages.tilepack_core.atlas.errors import IndexConflictError, StoreError
from packages.tilepack_core.atlas.records import (
    TileIndexRecord,
    decode_index_document,
    records_to_document,
)
from packages.tilepack_core.atlas.stores import ObjectIndexStore

logger = getLogger("tilepack_api.storage.object_index")


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
EMPTY_REVISION = "empty"
DEFAULT_LOCK_TIMEOUT = 30.0
# Shared by every process pointing at the same Postgres database.
ADVISORY_LOCK_KEY = 7_402_911


def _conflict() -> IndexConflictError:
    return IndexConflictError("Object index changed since it was read", error_code="index_conflict")


def _lock_timeout() -> float:
    raw = str(os.environ.get("TILEPACK_LOCK_TIMEOUT") or "").strip()
    if not raw:
        return DEFAULT_LOCK_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        return DEFAULT_LOCK_TIMEOUT


@contextmanager
def _hold_file_lock(lock: FileLock) -> Iterator[None]:
    try:
        Path(lock.lock_file).parent.mkdir(parents=True, exist_ok=True)
        lock.acquire()
    except Timeout as exc:
        logger.warning("[STORAGE] Timed out waiting for lock '%s'", lock.lock_file)
        raise IndexConflictError(
            f"Object index is locked by another writer: {lock.lock_file}", error_code="index_locked"
        ) from exc
    except OSError as exc:
        raise StoreError(f"Could not lock object index: {exc}", error_code="index_io_error") from exc
    try:
        yield
    finally:
        lock.release()


class JsonFileObjectIndexStore(ObjectIndexStore):
    """``{uid: [record]}`` document on disk, rewritten wholesale on every put."""

    def __init__(self, path: Path, lock_timeout: Optional[float] = None) -> None:
        self.path = path
        timeout = _lock_timeout() if lock_timeout is None else lock_timeout
        self._file_lock = FileLock(str(path) + ".lock", timeout=timeout)

    def operation_lock(self) -> ContextManager[None]:
        return _hold_file_lock(self._file_lock)

    def init_db(self) -> None:
        logger.info("[STORAGE] Initializing JSON object index at '%s'", self.path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write_bytes(b"{}")
        except OSError as exc:
            raise StoreError(f"Could not initialize object index: {exc}", error_code="index_io_error") from exc

    def _read_bytes(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"Could not read object index: {exc}", error_code="index_io_error") from exc

    def _write_bytes(self, data: bytes) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, self.path)

    @staticmethod
    def _digest(data: Optional[bytes]) -> str:
        if data is None:
            return EMPTY_REVISION
        return sha256(data).hexdigest()

    def revision(self) -> str:
        return self._digest(self._read_bytes())

    def get_all(self) -> dict[str, TileIndexRecord]:
        data = self._read_bytes()
        if data is None:
            return {}
        try:
            document = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreError(f"Object index is not valid JSON: {exc}", error_code="malformed_index") from exc
        return decode_index_document(document)

    def put_all(
        self,
        records: Mapping[str, TileIndexRecord],
        *,
        expected_revision: Optional[str] = None,
    ) -> None:
        payload = json.dumps(records_to_document(records), separators=(",", ":")).encode("utf-8")
        # Re-entrant: the engine already holds it for the whole operation.
        with _hold_file_lock(self._file_lock):
            if expected_revision is not None and self.revision() != expected_revision:
                logger.warning("[STORAGE] Object index revision mismatch at '%s'", self.path)
                raise _conflict()
            try:
                self._write_bytes(payload)
            except OSError as exc:
                raise StoreError(f"Failed to save object data: {exc}", error_code="index_io_error") from exc
        logger.info("[STORAGE] Object index saved: records=%d, path='%s'", len(records), self.path)


class SQLiteObjectIndexStore(ObjectIndexStore):
    def __init__(self, db_path: Path, lock_timeout: Optional[float] = None) -> None:
        self.db_path = db_path
        timeout = _lock_timeout() if lock_timeout is None else lock_timeout
        self._file_lock = FileLock(str(db_path) + ".lock", timeout=timeout)

    def operation_lock(self) -> ContextManager[None]:
        return _hold_file_lock(self._file_lock)

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        logger.info("[STORAGE] Initializing SQLite object index at '%s'", self.db_path)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS tile_index_records (
                      uid TEXT PRIMARY KEY,
                      position INTEGER NOT NULL,
                      tileset_name TEXT NOT NULL,
                      payload_json TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS object_index_meta (
                      key TEXT PRIMARY KEY,
                      value INTEGER NOT NULL
                    )
                    """
                )
                conn.execute(
                    "INSERT OR IGNORE INTO object_index_meta (key, value) VALUES ('revision', 0)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_tir_tileset ON tile_index_records(tileset_name)"
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Could not initialize object index: {exc}", error_code="index_io_error") from exc
        logger.info("[STORAGE] SQLite object index initialized successfully")

    def revision(self) -> str:
        self.init_db()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM object_index_meta WHERE key = 'revision'"
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not read object index: {exc}", error_code="index_io_error") from exc
        return str(int(row["value"]))

    def get_all(self) -> dict[str, TileIndexRecord]:
        self.init_db()
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT uid, payload_json FROM tile_index_records ORDER BY position ASC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not read object index: {exc}", error_code="index_io_error") from exc
        try:
            document = {str(r["uid"]): json.loads(r["payload_json"]) for r in rows}
        except json.JSONDecodeError as exc:
            raise StoreError(f"Object index row is not valid JSON: {exc}", error_code="malformed_index") from exc
        return decode_index_document(document)

    def put_all(
        self,
        records: Mapping[str, TileIndexRecord],
        *,
        expected_revision: Optional[str] = None,
    ) -> None:
        self.init_db()
        try:
            with self._connect() as conn:
                if expected_revision is None:
                    conn.execute("UPDATE object_index_meta SET value = value + 1 WHERE key = 'revision'")
                else:
                    cur = conn.execute(
                        "UPDATE object_index_meta SET value = value + 1 WHERE key = 'revision' AND value = ?",
                        (int(expected_revision),),
                    )
                    if cur.rowcount != 1:
                        raise _conflict()
                conn.execute("DELETE FROM tile_index_records")
                conn.executemany(
                    """
                    INSERT INTO tile_index_records (uid, position, tileset_name, payload_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (uid, position, record.tileset_name, json.dumps(record.to_payload()))
                        for position, (uid, record) in enumerate(records.items())
                    ],
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to save object data: {exc}", error_code="index_io_error") from exc
        logger.info("[STORAGE] Object index saved: records=%d, db='%s'", len(records), self.db_path)


class PostgresObjectIndexStore(ObjectIndexStore):
    def __init__(self, database_url: str, lock_timeout: Optional[float] = None) -> None:
        self.database_url = database_url
        self.lock_timeout = _lock_timeout() if lock_timeout is None else lock_timeout
        self._ensure_driver()

    @staticmethod
    def _ensure_driver() -> None:
        try:
            import psycopg  # noqa: F401
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise RuntimeError(
                "Postgres backend requires `psycopg`. Install it with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def _run(self, fn):
        import psycopg

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    return fn(cur)
        except psycopg.Error as exc:
            raise StoreError(f"Object index database error: {exc}", error_code="index_io_error") from exc

    @contextmanager
    def operation_lock(self) -> Iterator[None]:
        """Session advisory lock on a dedicated connection, released when it closes."""
        import psycopg
        from psycopg import errors as pg_errors

        try:
            conn = psycopg.connect(self.database_url, autocommit=True)
        except psycopg.Error as exc:
            raise StoreError(f"Object index database error: {exc}", error_code="index_io_error") from exc
        try:
            try:
                conn.execute("SELECT set_config('lock_timeout', %s, false)", (f"{int(self.lock_timeout * 1000)}ms",))
                conn.execute("SELECT pg_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
            except pg_errors.LockNotAvailable as exc:
                logger.warning("[STORAGE] Timed out waiting for the object index advisory lock")
                raise IndexConflictError(
                    "Object index is locked by another writer", error_code="index_locked"
                ) from exc
            except psycopg.Error as exc:
                raise StoreError(f"Could not lock object index: {exc}", error_code="index_io_error") from exc
            yield
        finally:
            conn.close()

    def init_db(self) -> None:
        def _create(cur) -> None:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tile_index_records (
                  uid TEXT PRIMARY KEY,
                  position INTEGER NOT NULL,
                  tileset_name TEXT NOT NULL,
                  payload JSONB NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS object_index_meta (
                  key TEXT PRIMARY KEY,
                  value BIGINT NOT NULL
                )
                """
            )
            cur.execute(
                "INSERT INTO object_index_meta (key, value) VALUES ('revision', 0) ON CONFLICT (key) DO NOTHING"
            )

        self._run(_create)

    def revision(self) -> str:
        self.init_db()

        def _fetch(cur) -> str:
            cur.execute("SELECT value FROM object_index_meta WHERE key = 'revision'")
            return str(int(cur.fetchone()["value"]))

        return self._run(_fetch)

    def get_all(self) -> dict[str, TileIndexRecord]:
        self.init_db()

        def _fetch(cur) -> list[dict[str, Any]]:
            cur.execute("SELECT uid, payload FROM tile_index_records ORDER BY position ASC")
            return cur.fetchall()

        rows = self._run(_fetch)
        return decode_index_document({str(r["uid"]): r["payload"] for r in rows})

    def put_all(
        self,
        records: Mapping[str, TileIndexRecord],
        *,
        expected_revision: Optional[str] = None,
    ) -> None:
        from psycopg.types.json import Jsonb

        self.init_db()

        def _store(cur) -> None:
            if expected_revision is None:
                cur.execute("UPDATE object_index_meta SET value = value + 1 WHERE key = 'revision'")
            else:
                cur.execute(
                    "UPDATE object_index_meta SET value = value + 1 WHERE key = 'revision' AND value = %s",
                    (int(expected_revision),),
                )
                if cur.rowcount != 1:
                    raise _conflict()
            cur.execute("DELETE FROM tile_index_records")
            for position, (uid, record) in enumerate(records.items()):
                cur.execute(
                    """
                    INSERT INTO tile_index_records (uid, position, tileset_name, payload)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (uid, position, record.tileset_name, Jsonb(record.to_payload())),
                )

        self._run(_store)
        logger.info("[STORAGE] Object index saved: records=%d (postgres)", len(records))


def _resolve_path(raw: str) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = (WORKSPACE_ROOT / p).resolve()
    return p


def _database_url() -> Optional[str]:
    return os.environ.get("DATABASE_URL")


@lru_cache(maxsize=1)
def _backend() -> ObjectIndexStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresObjectIndexStore(database_url)
    if database_url and database_url.startswith("sqlite:///"):
        return SQLiteObjectIndexStore(_resolve_path(database_url[len("sqlite:///") :]))
    raw = os.environ.get("TILEPACK_INDEX_PATH", str(WORKSPACE_ROOT / "assets" / "json" / "objectData.json"))
    return JsonFileObjectIndexStore(_resolve_path(raw))


def get_object_index_store() -> ObjectIndexStore:
    return _backend()


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()
