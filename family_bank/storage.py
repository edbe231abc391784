"""
Storage Backend Module

Provides the ledger storage interface and implementations for in-memory
(testing), SQLite (single node) and PostgreSQL (production) stores. Balances
and amounts are whole minor-currency units stored as integers.

All backends express balance changes as a single relative UPDATE so the store
serializes concurrent writers, and group the balance update with the log
append through ``atomic()``.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterator
from datetime import datetime, timezone
from contextlib import contextmanager
import sqlite3
import threading

from .config import FamilyBankConfig
from .errors import ConfigurationError, NotFoundError, StorageError
from .logging_config import get_logger


logger = get_logger("family_bank.storage")

SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _utc_naive(timestamp: datetime) -> datetime:
    """Convert to a naive UTC datetime truncated to whole seconds"""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp.replace(microsecond=0)


class StorageInterface(ABC):
    """Abstract interface for ledger storage backends"""

    @abstractmethod
    def initialize_schema(self) -> None:
        """Create the account and transactions tables if missing"""
        pass

    @abstractmethod
    def create_account(self, account: int, balance: int = 0) -> None:
        """Provision an account (out-of-band setup and tests only)"""
        pass

    @abstractmethod
    def get_balance(self, account: int) -> int:
        """Current balance; raises NotFoundError for unknown accounts"""
        pass

    @abstractmethod
    def fetch_transactions(self, account: int, limit: int, offset: int) -> List[Dict[str, Any]]:
        """Transaction rows (``tstamp``, ``descr``, ``amount``), newest first"""
        pass

    @abstractmethod
    def adjust_balance(self, account: int, delta: int) -> int:
        """Add ``delta`` to the balance in one statement; returns rows updated"""
        pass

    @abstractmethod
    def append_transaction(self, account: int, subject: str, timestamp: datetime,
                           amount: int, description: str) -> None:
        """Append a transaction row"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a database transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connections"""
        pass

    @contextmanager
    def atomic(self) -> Iterator['StorageInterface']:
        """Context manager for atomic operations; rolls back on any exception"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._accounts: Dict[int, int] = {}
        self._transactions: List[Dict[str, Any]] = []
        self._next_id = 1
        self._lock = threading.RLock()
        self._snapshot: Optional[tuple] = None

    def initialize_schema(self) -> None:
        """Nothing to create for in-memory storage"""
        pass

    def create_account(self, account: int, balance: int = 0) -> None:
        with self._lock:
            if account in self._accounts:
                raise StorageError(f"Account {account} already exists")
            self._accounts[account] = balance

    def get_balance(self, account: int) -> int:
        with self._lock:
            if account not in self._accounts:
                raise NotFoundError(f"Account {account} not found")
            return self._accounts[account]

    def fetch_transactions(self, account: int, limit: int, offset: int) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [row for row in self._transactions if row["act"] == account]
            rows.sort(key=lambda row: (row["tstamp"], row["id"]), reverse=True)
            return [
                {"tstamp": row["tstamp"], "descr": row["descr"], "amount": row["amount"]}
                for row in rows[offset:offset + limit]
            ]

    def adjust_balance(self, account: int, delta: int) -> int:
        with self._lock:
            if account not in self._accounts:
                return 0
            self._accounts[account] += delta
            return 1

    def append_transaction(self, account: int, subject: str, timestamp: datetime,
                           amount: int, description: str) -> None:
        with self._lock:
            if account not in self._accounts:
                raise StorageError(f"Transaction references unknown account {account}")
            self._transactions.append({
                "id": self._next_id,
                "act": account,
                "sub": subject,
                "tstamp": _utc_naive(timestamp),
                "amount": amount,
                "descr": description,
            })
            self._next_id += 1

    def begin_transaction(self) -> None:
        """Hold the lock until commit or rollback, snapshotting current state"""
        self._lock.acquire()
        if self._snapshot is not None:
            self._lock.release()
            raise StorageError("Nested transactions are not supported")
        self._snapshot = (dict(self._accounts), len(self._transactions), self._next_id)

    def commit(self) -> None:
        if self._snapshot is None:
            return
        self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        if self._snapshot is None:
            return
        accounts, transaction_count, next_id = self._snapshot
        self._accounts = accounts
        del self._transactions[transaction_count:]
        self._next_id = next_id
        self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Any]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return {
                "account": dict(self._accounts),
                "transactions": [dict(row) for row in self._transactions],
            }


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation.

    One shared connection guarded by a re-entrant lock. The lock is held from
    ``begin_transaction`` to ``commit``/``rollback`` so a transaction is never
    interleaved with statements from other threads.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _translate_errors(self, operation: str):
        try:
            yield
        except (sqlite3.Error, OverflowError) as e:
            logger.error(f"SQLite {operation} failed: {e}")
            raise StorageError(f"{operation} failed") from e

    def initialize_schema(self) -> None:
        with self._lock, self._translate_errors("initialize_schema"):
            self._connection.executescript("""
                CREATE TABLE IF NOT EXISTS account (
                    actno INTEGER PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    act INTEGER NOT NULL REFERENCES account(actno),
                    sub TEXT NOT NULL,
                    tstamp TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    descr TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transactions_act_tstamp
                    ON transactions(act, tstamp);
            """)

    def create_account(self, account: int, balance: int = 0) -> None:
        with self._lock, self._translate_errors("create_account"):
            self._connection.execute(
                "INSERT INTO account (actno, balance) VALUES (?, ?)", (account, balance)
            )

    def get_balance(self, account: int) -> int:
        with self._lock, self._translate_errors("get_balance"):
            row = self._connection.execute(
                "SELECT balance FROM account WHERE actno = ?", (account,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Account {account} not found")
        return row["balance"]

    def fetch_transactions(self, account: int, limit: int, offset: int) -> List[Dict[str, Any]]:
        with self._lock, self._translate_errors("fetch_transactions"):
            cursor = self._connection.execute("""
                SELECT tstamp, descr, amount FROM transactions
                WHERE act = ?
                ORDER BY tstamp DESC, id DESC
                LIMIT ? OFFSET ?
            """, (account, limit, offset))
            return [dict(row) for row in cursor.fetchall()]

    def adjust_balance(self, account: int, delta: int) -> int:
        with self._lock, self._translate_errors("adjust_balance"):
            cursor = self._connection.execute(
                "UPDATE account SET balance = balance + ? WHERE actno = ?", (delta, account)
            )
            return cursor.rowcount

    def append_transaction(self, account: int, subject: str, timestamp: datetime,
                           amount: int, description: str) -> None:
        with self._lock, self._translate_errors("append_transaction"):
            self._connection.execute(
                "INSERT INTO transactions (act, sub, tstamp, amount, descr) VALUES (?, ?, ?, ?, ?)",
                (account, subject, _utc_naive(timestamp).strftime(SQLITE_TIMESTAMP_FORMAT),
                 amount, description)
            )

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._in_transaction:
            self._lock.release()
            raise StorageError("Nested transactions are not supported")
        try:
            with self._translate_errors("begin"):
                self._connection.execute("BEGIN IMMEDIATE")
        except StorageError:
            self._lock.release()
            raise
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        try:
            with self._translate_errors("commit"):
                self._connection.execute("COMMIT")
        except StorageError:
            try:
                if self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback after failed commit also failed: {e}")
            raise
        finally:
            self._in_transaction = False
            self._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            with self._translate_errors("rollback"):
                if self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
        finally:
            self._in_transaction = False
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    Connections come from a thread-safe pool. An atomic scope pins one pooled
    connection to the calling thread until commit or rollback; statements
    outside a scope borrow a connection for a single autocommitted unit.
    """

    def __init__(self, connection_string: str, min_connections: int = 1, max_connections: int = 10):
        try:
            import psycopg2
            import psycopg2.pool
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.psycopg2 = psycopg2
        self.connection_string = connection_string
        self._local = threading.local()
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                min_connections, max_connections, connection_string
            )
        except psycopg2.Error as e:
            raise StorageError("Could not connect to PostgreSQL") from e

    @contextmanager
    def _cursor(self, operation: str):
        """Cursor on the thread's transaction connection, or on a borrowed one"""
        connection = getattr(self._local, "connection", None)
        borrowed = connection is None
        try:
            if borrowed:
                connection = self._pool.getconn()
            with connection.cursor() as cursor:
                yield cursor
            if borrowed:
                connection.commit()
        except self.psycopg2.Error as e:
            if borrowed and connection is not None:
                connection.rollback()
            logger.error(f"PostgreSQL {operation} failed: {e}")
            raise StorageError(f"{operation} failed") from e
        except BaseException:
            if borrowed and connection is not None:
                connection.rollback()
            raise
        finally:
            if borrowed and connection is not None:
                self._pool.putconn(connection, close=bool(connection.closed))

    def initialize_schema(self) -> None:
        with self._cursor("initialize_schema") as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS account (
                    actno BIGINT PRIMARY KEY,
                    balance BIGINT NOT NULL DEFAULT 0
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id BIGSERIAL PRIMARY KEY,
                    act BIGINT NOT NULL REFERENCES account(actno),
                    sub TEXT NOT NULL,
                    tstamp TIMESTAMP NOT NULL,
                    amount BIGINT NOT NULL,
                    descr TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_act_tstamp
                ON transactions(act, tstamp)
            """)

    def create_account(self, account: int, balance: int = 0) -> None:
        with self._cursor("create_account") as cursor:
            cursor.execute(
                "INSERT INTO account (actno, balance) VALUES (%s, %s)", (account, balance)
            )

    def get_balance(self, account: int) -> int:
        with self._cursor("get_balance") as cursor:
            cursor.execute("SELECT balance FROM account WHERE actno = %s", (account,))
            row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Account {account} not found")
        return row[0]

    def fetch_transactions(self, account: int, limit: int, offset: int) -> List[Dict[str, Any]]:
        with self._cursor("fetch_transactions") as cursor:
            cursor.execute("""
                SELECT tstamp, descr, amount FROM transactions
                WHERE act = %s
                ORDER BY tstamp DESC, id DESC
                LIMIT %s OFFSET %s
            """, (account, limit, offset))
            return [
                {"tstamp": tstamp, "descr": descr, "amount": amount}
                for tstamp, descr, amount in cursor.fetchall()
            ]

    def adjust_balance(self, account: int, delta: int) -> int:
        with self._cursor("adjust_balance") as cursor:
            cursor.execute(
                "UPDATE account SET balance = balance + %s WHERE actno = %s", (delta, account)
            )
            return cursor.rowcount

    def append_transaction(self, account: int, subject: str, timestamp: datetime,
                           amount: int, description: str) -> None:
        with self._cursor("append_transaction") as cursor:
            cursor.execute(
                "INSERT INTO transactions (act, sub, tstamp, amount, descr) VALUES (%s, %s, %s, %s, %s)",
                (account, subject, _utc_naive(timestamp), amount, description)
            )

    def begin_transaction(self) -> None:
        if getattr(self._local, "connection", None) is not None:
            raise StorageError("Nested transactions are not supported")
        try:
            connection = self._pool.getconn()
        except self.psycopg2.Error as e:
            raise StorageError("begin failed") from e
        connection.autocommit = False
        self._local.connection = connection

    def _release(self, connection) -> None:
        self._local.connection = None
        self._pool.putconn(connection, close=bool(connection.closed))

    def commit(self) -> None:
        connection = getattr(self._local, "connection", None)
        if connection is None:
            return
        try:
            connection.commit()
        except self.psycopg2.Error as e:
            try:
                connection.rollback()
            except self.psycopg2.Error:
                logger.error("Rollback after failed commit also failed")
            raise StorageError("commit failed") from e
        finally:
            self._release(connection)

    def rollback(self) -> None:
        connection = getattr(self._local, "connection", None)
        if connection is None:
            return
        try:
            connection.rollback()
        except self.psycopg2.Error as e:
            raise StorageError("rollback failed") from e
        finally:
            self._release(connection)

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


def create_storage(config: FamilyBankConfig) -> StorageInterface:
    """
    Create the storage backend named by ``config.database_url``.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:`` and ``postgresql://...`` (or ``postgres://...``).
    """
    url = config.database_url
    if url.startswith("memory://"):
        storage = InMemoryStorage()
    elif url.startswith("sqlite:///"):
        storage = SQLiteStorage(url[len("sqlite:///"):] or ":memory:")
    elif url.startswith(("postgresql://", "postgres://")):
        storage = PostgreSQLStorage(url, config.database_pool_min, config.database_pool_max)
    else:
        raise ConfigurationError(f"Unsupported database URL scheme: {url.split(':', 1)[0]}")

    if config.auto_create_schema:
        storage.initialize_schema()
    return storage
