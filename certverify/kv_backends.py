"""
Key-value backends with per-entry time-to-live.

Shared substrate of the result cache, the audit log and the rate limiter.
Values are strings; callers own serialization. Expired entries are never
returned, whatever the backend does about reclaiming them.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from . import config
from .db import SqliteConnection


class KeyValueStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """A ttl of None or 0 stores the entry without expiry."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list_keys(self, prefix: str) -> List[str]:
        """Live keys starting with prefix, in lexicographic order."""
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """
    Thread-safe in-process store.
    The clock is injectable so TTL expiry can be driven from tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds else None
        with self._lock:
            # Cleanup expired entries
            expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
            for k in expired:
                del self._data[k]
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)


class SqliteKeyValueStore(KeyValueStore):

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self._db = SqliteConnection(db_path)
        self._clock = clock
        with self._db.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_kv_entries_expires
            ON kv_entries(expires_at);""")

    def get(self, key: str) -> Optional[str]:
        row = self._db.get().execute(
            "SELECT value FROM kv_entries WHERE key=? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock())
        ).fetchone()
        return row["value"] if row else None

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds else None
        with self._db.transaction() as conn:
            # Cleanup expired entries (batch operation)
            conn.execute("DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,))
            conn.execute(
                "INSERT OR REPLACE INTO kv_entries(key, value, expires_at) VALUES(?,?,?)",
                (key, value, expires_at)
            )

    def delete(self, key: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM kv_entries WHERE key=?", (key,))

    def list_keys(self, prefix: str) -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._db.get().execute(
            "SELECT key FROM kv_entries WHERE key LIKE ? ESCAPE '\\' "
            "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key ASC",
            (escaped + "%", self._clock())
        ).fetchall()
        # LIKE ignores ASCII case
        return [row["key"] for row in rows if row["key"].startswith(prefix)]

    def close(self) -> None:
        self._db.close()


class S3KeyValueStore(KeyValueStore):
    """Stores each entry as an S3 object under a prefix.

    Expiry is recorded in object metadata and enforced on read; pair the
    prefix with a bucket lifecycle rule to reclaim expired objects.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lifecycle-mgmt.html
    """

    def __init__(self, bucket: str, prefix: str, client=None, clock: Callable[[], float] = time.time):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self._clock = clock
        if client is None:
            try:
                import boto3
            except Exception as e:
                raise RuntimeError("boto3 required for the S3 key-value backend. Install the 's3' extra") from e
            client = boto3.client("s3")
        self._s3 = client

    def _object_key(self, key: str) -> str:
        return self.prefix + key

    def get(self, key: str) -> Optional[str]:
        try:
            obj = self._s3.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except self._s3.exceptions.NoSuchKey:
            return None
        expires_at = obj.get("Metadata", {}).get("expires-at")
        if expires_at and float(expires_at) <= self._clock():
            return None
        return obj["Body"].read().decode("utf-8")

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        metadata = {}
        if ttl_seconds:
            metadata["expires-at"] = str(self._clock() + ttl_seconds)
        self._s3.put_object(
            Bucket=self.bucket,
            Key=self._object_key(key),
            Body=value.encode("utf-8"),
            ContentType="application/json",
            Metadata=metadata,
        )

    def delete(self, key: str) -> None:
        self._s3.delete_object(Bucket=self.bucket, Key=self._object_key(key))

    def list_keys(self, prefix: str) -> List[str]:
        keys = []
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._object_key(prefix)):
            for item in page.get("Contents", []):
                key = item["Key"][len(self.prefix):]
                if self.get(key) is not None:
                    keys.append(key)
        return sorted(keys)


def get_kv_backend(backend: Optional[str] = None) -> KeyValueStore:
    backend = backend or config.KV_BACKEND
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "s3":
        if not config.S3_BUCKET:
            raise RuntimeError("S3_BUCKET is required for the S3 key-value backend")
        return S3KeyValueStore(bucket=config.S3_BUCKET, prefix=config.S3_PREFIX)
    return SqliteKeyValueStore(config.KV_DB_PATH)
