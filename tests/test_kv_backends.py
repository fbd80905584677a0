import io

import pytest

from certverify import config
from certverify.kv_backends import InMemoryKeyValueStore, S3KeyValueStore, SqliteKeyValueStore, get_kv_backend


class FakeS3Client:
    """Just enough of the boto3 S3 client for the key-value backend."""

    class exceptions:
        class NoSuchKey(Exception):
            pass

    def __init__(self):
        self.objects = {}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self.exceptions.NoSuchKey(Key)
        body, metadata = self.objects[(Bucket, Key)]
        return {"Body": io.BytesIO(body), "Metadata": metadata}

    def put_object(self, Bucket, Key, Body, ContentType, Metadata):
        self.objects[(Bucket, Key)] = (Body, dict(Metadata))

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        client = self

        class Paginator:
            def paginate(self, Bucket, Prefix):
                keys = sorted(k for (b, k) in client.objects if b == Bucket and k.startswith(Prefix))
                yield {"Contents": [{"Key": k} for k in keys[:2]]}
                yield {"Contents": [{"Key": k} for k in keys[2:]]}

        return Paginator()


@pytest.fixture(params=["memory", "sqlite", "s3"])
def backend(request, clock, tmp_path):
    if request.param == "memory":
        yield InMemoryKeyValueStore(clock=clock)
    elif request.param == "sqlite":
        store = SqliteKeyValueStore(str(tmp_path / "kv.db"), clock=clock)
        yield store
        store.close()
    else:
        yield S3KeyValueStore("bucket", "certverify/kv", client=FakeS3Client(), clock=clock)


def test_get_returns_stored_value(backend):
    backend.put("verification:c1", '{"a": 1}', 60)
    assert backend.get("verification:c1") == '{"a": 1}'
    assert backend.get("verification:c2") is None


def test_put_overwrites(backend):
    backend.put("k", "one", 60)
    backend.put("k", "two", 60)
    assert backend.get("k") == "two"


def test_expired_entries_are_invisible(backend, clock):
    backend.put("short", "x", 10)
    backend.put("forever", "y")

    clock.advance(11)

    assert backend.get("short") is None
    assert backend.get("forever") == "y"
    assert backend.list_keys("") == ["forever"]


def test_delete_removes_entry(backend):
    backend.put("k", "v", 60)
    backend.delete("k")
    assert backend.get("k") is None


def test_list_keys_filters_by_prefix_in_order(backend):
    for key in ["log:r1:0003", "log:r1:0001", "log:r2:0001", "log:r1:0002", "recent_requests"]:
        backend.put(key, "{}", 60)

    assert backend.list_keys("log:r1:") == ["log:r1:0001", "log:r1:0002", "log:r1:0003"]


def test_memory_store_reclaims_expired_entries_on_write(clock):
    store = InMemoryKeyValueStore(clock=clock)
    store.put("ratelimit:client:verify:100", "3", 60)
    store.put("ratelimit:client:verify:101", "1", 60)
    store.put("config", "kept")

    clock.advance(61)
    store.put("ratelimit:client:verify:102", "1", 60)

    assert sorted(store._data) == ["config", "ratelimit:client:verify:102"]


def test_sqlite_prefix_is_literal_and_case_sensitive(tmp_path, clock):
    store = SqliteKeyValueStore(str(tmp_path / "kv.db"), clock=clock)
    for key in ["log:a_b:1", "log:axb:1", "log:A_B:1", "log:a%b:1"]:
        store.put(key, "{}", 60)

    assert store.list_keys("log:a_b:") == ["log:a_b:1"]
    assert store.list_keys("log:a%") == ["log:a%b:1"]
    store.close()


def test_s3_entries_live_under_prefix(clock):
    client = FakeS3Client()
    store = S3KeyValueStore("bucket", "certverify/kv/", client=client, clock=clock)

    store.put("verification:c1", "{}", 60)

    body, metadata = client.objects[("bucket", "certverify/kv/verification:c1")]
    assert body == b"{}"
    assert float(metadata["expires-at"]) == clock() + 60


def test_backend_selection(monkeypatch, tmp_path):
    assert isinstance(get_kv_backend("memory"), InMemoryKeyValueStore)

    monkeypatch.setattr(config, "KV_DB_PATH", str(tmp_path / "kv.db"))
    store = get_kv_backend("sqlite")
    assert isinstance(store, SqliteKeyValueStore)
    store.close()


def test_s3_backend_requires_bucket(monkeypatch):
    monkeypatch.setattr(config, "S3_BUCKET", "")
    with pytest.raises(RuntimeError):
        get_kv_backend("s3")
