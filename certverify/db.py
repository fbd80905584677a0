"""
Record store for the certificate verification service.

SQLite-backed storage for users, certificates, the append-only verification
log, and the per-certificate claim lease. Every operation raises StorageError
on transport or integrity failure.
"""

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import StorageError
from .models import Certificate, User, VerificationLogRecord, VerificationStatus
from .util import generate_id, to_json, utc_now_iso

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE,
        full_name TEXT NOT NULL,
        wallet_address TEXT UNIQUE,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );""",
    """
    CREATE TABLE IF NOT EXISTS certificates (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        title TEXT NOT NULL,
        institution_name TEXT NOT NULL,
        program_name TEXT NOT NULL,
        issue_date TEXT NOT NULL,
        verification_url TEXT,
        certificate_url TEXT,
        verification_url_pdf TEXT,
        arweave_url TEXT,
        nft_mint_address TEXT,
        verification_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (verification_status IN ('pending', 'verified', 'rejected')),
        verification_details TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_certificates_user
    ON certificates(user_id);""",
    """
    CREATE TABLE IF NOT EXISTS verification_logs (
        id TEXT PRIMARY KEY,
        certificate_id TEXT NOT NULL REFERENCES certificates(id),
        verification_step TEXT NOT NULL,
        status TEXT NOT NULL,
        details TEXT,
        created_at TEXT NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_verification_logs_certificate
    ON verification_logs(certificate_id, created_at);""",
    """
    CREATE TABLE IF NOT EXISTS verification_claims (
        certificate_id TEXT PRIMARY KEY,
        claim_token TEXT NOT NULL,
        claimed_at REAL NOT NULL,
        expires_at REAL NOT NULL
    );""",
]

CERTIFICATE_COLUMNS = (
    "id", "user_id", "title", "institution_name", "program_name", "issue_date",
    "verification_url", "certificate_url", "verification_url_pdf", "arweave_url",
    "nft_mint_address", "verification_status", "verification_details",
)


class SqliteConnection:
    """
    Thread-local SQLite connection holder.
    Connections are reused within the same thread for performance.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._local = threading.local()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self.get()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def close(self) -> None:
        """Close this thread's connection."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Database error: failed to %s: %s", action, e)
        raise StorageError(f"Database error: failed to {action}") from e


def _decode_details(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class RecordStore(ABC):
    """Record store operations consumed by the verification orchestrator."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def get_certificate(self, user_id: str, certificate_id: str) -> Optional[Certificate]:
        """Look up a certificate by id *and* owner; an id alone is not a valid key."""
        pass

    @abstractmethod
    def update_certificate_status(
        self,
        certificate_id: str,
        status: VerificationStatus,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        pass

    @abstractmethod
    def append_verification_log(
        self,
        certificate_id: str,
        step: str,
        status: str,
        details: Optional[Any] = None
    ) -> VerificationLogRecord:
        pass

    @abstractmethod
    def list_verification_logs(
        self,
        certificate_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[VerificationLogRecord]:
        pass

    @abstractmethod
    def claim_certificate(self, certificate_id: str, claim_token: str, lease_seconds: int) -> bool:
        """Take the processing lease. Returns False if another live claim exists."""
        pass

    @abstractmethod
    def release_claim(self, certificate_id: str, claim_token: str) -> None:
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass


class SqliteRecordStore(RecordStore):

    def __init__(self, db_path: str):
        self._db = SqliteConnection(db_path)

    @property
    def path(self) -> Path:
        return self._db.path

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with _storage_errors("initialize schema"), self._db.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with _storage_errors("fetch user"):
            row = self._db.get().execute(
                "SELECT * FROM users WHERE id=? LIMIT 1", (user_id,)
            ).fetchone()
        return User(**dict(row)) if row else None

    def get_certificate(self, user_id: str, certificate_id: str) -> Optional[Certificate]:
        with _storage_errors("fetch certificate"):
            row = self._db.get().execute(
                "SELECT * FROM certificates WHERE id=? AND user_id=? LIMIT 1",
                (certificate_id, user_id)
            ).fetchone()
        return Certificate(**dict(row)) if row else None

    # ------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------

    def update_certificate_status(
        self,
        certificate_id: str,
        status: VerificationStatus,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status and details in a single UPDATE of that row."""
        payload = to_json(details) if details is not None else None
        with _storage_errors("update certificate verification"), self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE certificates SET verification_status=?, verification_details=?, updated_at=? "
                "WHERE id=?",
                (VerificationStatus(status).value, payload, utc_now_iso(), certificate_id)
            )
            if cur.rowcount != 1:
                raise sqlite3.IntegrityError(f"certificate {certificate_id} not updated")

    def append_verification_log(
        self,
        certificate_id: str,
        step: str,
        status: str,
        details: Optional[Any] = None
    ) -> VerificationLogRecord:
        record = VerificationLogRecord(
            id=generate_id(10),
            certificate_id=certificate_id,
            verification_step=step,
            status=status,
            details=details,
            created_at=utc_now_iso(),
        )
        payload = to_json(details) if details is not None else None
        with _storage_errors("create verification log"), self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO verification_logs(id, certificate_id, verification_step, status, details, created_at) "
                "VALUES(?,?,?,?,?,?)",
                (record.id, certificate_id, step, status, payload, record.created_at)
            )
        return record

    def list_verification_logs(
        self,
        certificate_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[VerificationLogRecord]:
        """Durable log rows for a certificate, newest first."""
        with _storage_errors("fetch verification logs"):
            rows = self._db.get().execute(
                "SELECT * FROM verification_logs WHERE certificate_id=? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (certificate_id, limit, offset)
            ).fetchall()
        records = []
        for row in rows:
            data = dict(row)
            data["details"] = _decode_details(data["details"])
            records.append(VerificationLogRecord(**data))
        return records

    # ------------------------------------------------------------
    # Claim lease
    # ------------------------------------------------------------

    def claim_certificate(self, certificate_id: str, claim_token: str, lease_seconds: int) -> bool:
        """
        Atomically take the processing lease for a certificate.

        Expired leases are purged first, then INSERT OR IGNORE decides the
        winner. Returns True only for the caller whose row was inserted.
        """
        now = time.time()
        with _storage_errors("claim certificate"), self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM verification_claims WHERE certificate_id=? AND expires_at < ?",
                (certificate_id, now)
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO verification_claims(certificate_id, claim_token, claimed_at, expires_at) "
                "VALUES(?,?,?,?)",
                (certificate_id, claim_token, now, now + lease_seconds)
            )
            return cur.rowcount == 1

    def release_claim(self, certificate_id: str, claim_token: str) -> None:
        with _storage_errors("release claim"), self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM verification_claims WHERE certificate_id=? AND claim_token=?",
                (certificate_id, claim_token)
            )

    # ------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------

    def insert_user(self, user: User) -> None:
        with _storage_errors("insert user"), self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO users(id, email, full_name, wallet_address) VALUES(?,?,?,?)",
                (user.id, user.email, user.full_name, user.wallet_address)
            )

    def insert_certificate(self, certificate: Certificate) -> None:
        data = certificate.model_dump(mode="json", include=set(CERTIFICATE_COLUMNS))
        placeholders = ",".join("?" for _ in CERTIFICATE_COLUMNS)
        with _storage_errors("insert certificate"), self._db.transaction() as conn:
            conn.execute(
                f"INSERT INTO certificates({','.join(CERTIFICATE_COLUMNS)}) VALUES({placeholders})",
                tuple(data[c] for c in CERTIFICATE_COLUMNS)
            )

    # ------------------------------------------------------------
    # Health, metrics and test support
    # ------------------------------------------------------------

    def ping(self) -> bool:
        with _storage_errors("ping database"):
            row = self._db.get().execute("SELECT 1").fetchone()
        return row is not None

    def get_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        stats = {}
        with _storage_errors("collect statistics"):
            conn = self._db.get()
            for table in ["users", "certificates", "verification_logs", "verification_claims"]:
                cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
                stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with _storage_errors("reset database"), self._db.transaction() as conn:
            conn.execute("DELETE FROM verification_claims")
            conn.execute("DELETE FROM verification_logs")
            conn.execute("DELETE FROM certificates")
            conn.execute("DELETE FROM users")

    def close(self) -> None:
        self._db.close()
