from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar, Union

from .config import Config
from .errors import DatabaseError
from .logger import setup_logger
from .models import InstalledPackage, PackageRecord, Repository
from .version import version_collation

_logger = setup_logger()

T = TypeVar("T")

PACKAGE_COLUMNS = (
    "repo_name",
    "pkg_id",
    "name",
    "version",
    "checksum",
    "size",
    "bin_name",
    "origin_descriptor",
    "description",
    "notes",
    "icon_url",
    "desktop_url",
    "build_log",
    "build_script",
)

INSTALLED_COLUMNS = (
    "pkg_id",
    "repo_name",
    "name",
    "version",
    "checksum",
    "install_path",
    "bin_symlink_path",
    "bin_name",
    "profile",
    "portable_mode",
    "portable_home",
    "portable_config",
    "portable_share",
    "installed_at",
)


@dataclass(frozen=True)
class PackageFilter:
    """Selection for query()/query_installed(); unset fields do not filter."""

    name: Optional[str] = None
    pkg_id: Optional[str] = None
    repo_name: Optional[str] = None
    version: Optional[str] = None
    search: Optional[str] = None
    case_sensitive: bool = False
    limit: Optional[int] = None

    def where(self, search_columns: Tuple[str, ...]) -> Tuple[str, List[Any]]:
        where: List[str] = []
        params: List[Any] = []
        for column in ("name", "pkg_id", "repo_name", "version"):
            value = getattr(self, column)
            if value is not None:
                where.append(f"{column} = ?")
                params.append(value)

        if self.search:
            if self.case_sensitive:
                clauses = [f"instr(COALESCE({c}, ''), ?) > 0" for c in search_columns]
                params.extend([self.search] * len(search_columns))
            else:
                escaped = self.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                clauses = [f"LOWER(COALESCE({c}, '')) LIKE LOWER(?) ESCAPE '\\'" for c in search_columns]
                params.extend([f"%{escaped}%"] * len(search_columns))
            where.append("(" + " OR ".join(clauses) + ")")

        sql = (" WHERE " + " AND ".join(where)) if where else ""
        return sql, params


class QueryResult(Generic[T]):
    """
    Lazy, restartable result sequence.

    Nothing touches the database until iteration starts; every new
    iteration re-runs the query on its own connection.
    """

    def __init__(self, db: "DbManager", sql: str, params: List[Any], factory: Callable[[sqlite3.Row], T]):
        self._db = db
        self._sql = sql
        self._params = tuple(params)
        self._factory = factory

    def __iter__(self) -> Iterator[T]:
        conn = self._db._connect()
        try:
            try:
                cursor = conn.execute(self._sql, self._params)
            except sqlite3.Error as e:
                raise DatabaseError(f"Query failed: {e}") from e
            for row in cursor:
                yield self._factory(row)
        finally:
            conn.close()

    def first(self) -> Optional[T]:
        for item in self:
            return item
        return None

    def all(self) -> List[T]:
        return list(self)


class DbManager:
    """
    Package database: synced repository metadata plus installed records.

    Repo-metadata replacement and install-record mutation are independent
    write domains, each serialized by its own lock. Every write runs on a
    private connection inside an IMMEDIATE transaction.
    """

    def __init__(self, config: Config, schema_path: Optional[Union[str, Path]] = None):
        self.config = config
        self.db_path = Path(self.config.db_path)

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._metadata_lock = threading.Lock()
        self._install_lock = threading.Lock()

        schema_file = Path(schema_path) if schema_path else (Path(__file__).parent / "schema.sql")
        try:
            conn = self._connect()
            try:
                with open(schema_file, "r", encoding="utf-8") as fh:
                    conn.executescript(fh.read())
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            raise DatabaseError(f"Cannot initialize database {self.db_path}: {e}") from e

    # -------------------------
    # Connections
    # -------------------------
    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_collation("VERSION", version_collation)
        self._configure_pragmas(conn)
        return conn

    def _configure_pragmas(self, connection: sqlite3.Connection) -> None:
        """Apply performance/integrity pragmas to ANY connection."""
        pragmas = (
            "PRAGMA journal_mode=WAL;",
            "PRAGMA synchronous=NORMAL;",
            "PRAGMA busy_timeout=30000;",
            "PRAGMA temp_store=MEMORY;",
        )
        try:
            for p in pragmas:
                connection.execute(p)
        except sqlite3.Error as e:
            # WAL can be refused on some filesystems; rollback journal still works.
            _logger.debug("PRAGMA configuration failed: %s", e)

    @contextmanager
    def _transaction(self, lock: threading.Lock) -> Iterator[sqlite3.Connection]:
        with lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise DatabaseError(f"Database write failed: {e}") from e
            finally:
                conn.close()

    def close(self) -> None:
        """Connections are per operation; nothing stays open."""

    # -------------------------
    # Repository metadata (write domain 1)
    # -------------------------
    def upsert_repo_packages(self, repo_name: str, records: Iterable[PackageRecord]) -> int:
        """Replace every package row of `repo_name` in one transaction."""
        cols = ", ".join(PACKAGE_COLUMNS)
        placeholders = ", ".join("?" for _ in PACKAGE_COLUMNS)
        sql = f"INSERT INTO packages ({cols}) VALUES ({placeholders})"

        rows = []
        for rec in records:
            if rec.repo_name != repo_name:
                raise DatabaseError(f"Record {rec.pkg_id} belongs to '{rec.repo_name}', not '{repo_name}'")
            data = rec.as_row()
            rows.append(tuple(data[c] for c in PACKAGE_COLUMNS))

        with self._transaction(self._metadata_lock) as conn:
            conn.execute("DELETE FROM packages WHERE repo_name = ?", (repo_name,))
            conn.executemany(sql, rows)
        _logger.debug("Replaced %d package rows for repository '%s'", len(rows), repo_name)
        return len(rows)

    def set_repo_synced(self, repo: Repository, sync_time: str, content_hash: str) -> None:
        sql = """
        INSERT INTO repositories (name, metadata_url, local_shard_path, last_sync_time, content_hash)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            metadata_url=excluded.metadata_url,
            local_shard_path=excluded.local_shard_path,
            last_sync_time=excluded.last_sync_time,
            content_hash=excluded.content_hash
        """
        with self._transaction(self._metadata_lock) as conn:
            conn.execute(
                sql, (repo.name, repo.metadata_url, str(repo.local_shard_path), sync_time, content_hash)
            )

    def get_repo_state(self, name: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM repositories WHERE name = ?", (name,))

    def list_repos(self) -> List[Dict[str, Any]]:
        return self._fetch_all("SELECT * FROM repositories ORDER BY name", ())

    def count_packages(self, repo_name: Optional[str] = None) -> int:
        if repo_name is None:
            row = self._fetch_one("SELECT COUNT(*) AS n FROM packages", ())
        else:
            row = self._fetch_one("SELECT COUNT(*) AS n FROM packages WHERE repo_name = ?", (repo_name,))
        return int(row["n"]) if row else 0

    # -------------------------
    # Installed records (write domain 2)
    # -------------------------
    def record_install(self, installed: InstalledPackage) -> None:
        data = installed.as_row()
        cols = ", ".join(INSTALLED_COLUMNS)
        placeholders = ", ".join("?" for _ in INSTALLED_COLUMNS)
        updates = ", ".join(f"{c}=excluded.{c}" for c in INSTALLED_COLUMNS if c not in ("pkg_id", "repo_name"))
        sql = (
            f"INSERT INTO installed ({cols}) VALUES ({placeholders}) "
            f"ON CONFLICT(repo_name, pkg_id) DO UPDATE SET {updates}"
        )
        with self._transaction(self._install_lock) as conn:
            conn.execute(sql, tuple(data[c] for c in INSTALLED_COLUMNS))

    def remove_install(self, pkg_id: str, repo_name: Optional[str] = None) -> int:
        with self._transaction(self._install_lock) as conn:
            if repo_name is None:
                cur = conn.execute("DELETE FROM installed WHERE pkg_id = ?", (pkg_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM installed WHERE pkg_id = ? AND repo_name = ?", (pkg_id, repo_name)
                )
            return cur.rowcount

    def get_installed(self, pkg_id: str, repo_name: str) -> Optional[InstalledPackage]:
        row = self._fetch_one(
            "SELECT * FROM installed WHERE pkg_id = ? AND repo_name = ?", (pkg_id, repo_name), raw=True
        )
        return InstalledPackage.from_row(row) if row else None

    # -------------------------
    # Query Helpers
    # -------------------------
    def query(self, flt: Optional[PackageFilter] = None) -> QueryResult[PackageRecord]:
        flt = flt or PackageFilter()
        where, params = flt.where(("name", "pkg_id", "description"))
        sql = (
            "SELECT * FROM packages" + where +
            " ORDER BY name ASC, version COLLATE VERSION DESC, repo_name ASC, pkg_id ASC"
        )
        if flt.limit is not None:
            sql += " LIMIT ?"
            params.append(int(flt.limit))
        return QueryResult(self, sql, params, PackageRecord.from_row)

    def query_installed(self, flt: Optional[PackageFilter] = None) -> QueryResult[InstalledPackage]:
        flt = flt or PackageFilter()
        where, params = flt.where(("name", "pkg_id"))
        sql = (
            "SELECT * FROM installed" + where +
            " ORDER BY name ASC, version COLLATE VERSION DESC, repo_name ASC, pkg_id ASC"
        )
        if flt.limit is not None:
            sql += " LIMIT ?"
            params.append(int(flt.limit))
        return QueryResult(self, sql, params, InstalledPackage.from_row)

    def _fetch_one(self, sql: str, params: Tuple, raw: bool = False):
        conn = self._connect()
        try:
            row = conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e
        finally:
            conn.close()
        if row is None:
            return None
        return row if raw else dict(row)

    def _fetch_all(self, sql: str, params: Tuple) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e
        finally:
            conn.close()
