"""Tests for object store backends and the retry policy."""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from hls_ingest.errors import NotFound, TransientStorageError
from hls_ingest.models import StorageConfig
from hls_ingest.storage import (
    LocalObjectStore,
    RetryingObjectStore,
    S3ObjectStore,
    build_object_store,
    guess_content_type,
    local_path_from_uri,
    safe_filename,
)


def _client_error(code, operation="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestLocalObjectStore:
    def test_put_get_bytes(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        store.put("acme", "hls/v1/master.m3u8", b"#EXTM3U\n")
        assert b"".join(store.get("acme", "hls/v1/master.m3u8")) == b"#EXTM3U\n"

    def test_put_from_path_and_stream(self, temp_dir):
        store = LocalObjectStore(temp_dir / "objects")
        src = temp_dir / "src.bin"
        src.write_bytes(b"abc")
        store.put("acme", "a.bin", str(src))
        store.put("acme", "b.bin", io.BytesIO(b"def"))
        assert store.list("acme", "") == ["a.bin", "b.bin"]

    def test_range_inclusive(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        store.put("acme", "f", b"0123456789")
        assert b"".join(store.get("acme", "f", range_start=2, range_end=5)) == b"2345"
        assert b"".join(store.get("acme", "f", range_start=7)) == b"789"

    def test_missing_object(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        with pytest.raises(FileNotFoundError):
            store.get("acme", "nope")

    def test_delete_prunes_empty_dirs(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        store.put("acme", "hls/v1/720p/segment_000.ts", b"x")
        store.delete("acme", "hls/v1/720p/segment_000.ts")
        store.delete("acme", "hls/v1/720p/segment_000.ts")  # missing is fine
        assert not (temp_dir / "acme" / "hls").exists()

    def test_tenants_isolated(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        store.put("acme", "k", b"1")
        assert store.list("globex", "") == []

    def test_path_traversal_rejected(self, temp_dir):
        store = LocalObjectStore(temp_dir)
        with pytest.raises(ValueError):
            store.put("acme", "../escape", b"x")

    @pytest.mark.parametrize("bucket", ["", "..", "a/b", "a\\b", "/abs"])
    def test_bucket_must_be_single_segment(self, temp_dir, bucket):
        store = LocalObjectStore(temp_dir / "objects")
        with pytest.raises(ValueError):
            store.put(bucket, "k.txt", b"x")

    def test_absolute_bucket_cannot_escape_root(self, temp_dir):
        store = LocalObjectStore(temp_dir / "objects")
        outside = temp_dir / "outside"
        with pytest.raises(ValueError):
            store.put(str(outside), "k.txt", b"x")
        assert not outside.exists()


class TestS3ObjectStore:
    def test_resolve_bucket(self):
        store = S3ObjectStore(["main", "media"], client=MagicMock())
        assert store.resolve_bucket("media") == ("media", "")
        assert store.resolve_bucket("acme") == ("main", "workspaces/acme/")

    def test_put_bytes_uses_tenant_prefix(self):
        client = MagicMock()
        store = S3ObjectStore(["main"], client=client)
        store.put("acme", "hls/v1/master.m3u8", b"#EXTM3U")

        client.put_object.assert_called_once_with(
            Bucket="main",
            Key="workspaces/acme/hls/v1/master.m3u8",
            Body=b"#EXTM3U",
            ContentType="application/vnd.apple.mpegurl",
        )

    def test_put_path_uses_upload_file(self):
        client = MagicMock()
        store = S3ObjectStore(["main"], client=client)
        store.put("main", "seg.ts", "/tmp/seg.ts")
        client.upload_file.assert_called_once_with(
            "/tmp/seg.ts", "main", "seg.ts", ExtraArgs={"ContentType": "video/mp2t"}
        )

    def test_get_range_header(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": MagicMock(iter_chunks=lambda size: iter([b"ab"]))}
        store = S3ObjectStore(["main"], client=client)

        assert list(store.get("main", "k", range_start=10, range_end=19)) == [b"ab"]
        client.get_object.assert_called_once_with(Bucket="main", Key="k", Range="bytes=10-19")

    def test_missing_key_maps_to_file_not_found(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("NoSuchKey")
        store = S3ObjectStore(["main"], client=client)
        with pytest.raises(FileNotFoundError):
            store.get("main", "k")

    def test_list_strips_tenant_prefix(self):
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "workspaces/acme/hls/v1/master.m3u8"}]},
            {"Contents": [{"Key": "workspaces/acme/hls/v1/360p/playlist.m3u8"}]},
        ]
        store = S3ObjectStore(["main"], client=client)

        assert store.list("acme", "hls/v1/") == [
            "hls/v1/master.m3u8", "hls/v1/360p/playlist.m3u8",
        ]

    def test_requires_bucket(self):
        with pytest.raises(ValueError):
            S3ObjectStore([], client=MagicMock())


class TestRetryPolicy:
    """Bounded exponential backoff: 2s, 4s, 8s then TransientStorageError."""

    def test_retries_then_gives_up(self):
        inner = MagicMock()
        inner.delete.side_effect = _client_error("SlowDown", "DeleteObject")
        sleeps = []
        store = RetryingObjectStore(inner, max_retries=3, base_delay_s=2.0, sleep=sleeps.append)

        with pytest.raises(TransientStorageError) as exc_info:
            store.delete("acme", "k")

        assert sleeps == [2.0, 4.0, 8.0]
        assert inner.delete.call_count == 4
        assert exc_info.value.operation == "delete"

    def test_recovers_after_transient_error(self):
        inner = MagicMock()
        inner.list.side_effect = [OSError("connection reset"), ["a", "b"]]
        sleeps = []
        store = RetryingObjectStore(inner, sleep=sleeps.append)

        assert store.list("acme", "") == ["a", "b"]
        assert sleeps == [2.0]

    def test_not_found_not_retried(self):
        inner = MagicMock()
        inner.download_to.side_effect = FileNotFoundError("No such object")
        sleeps = []
        store = RetryingObjectStore(inner, sleep=sleeps.append)

        with pytest.raises(NotFound):
            store.download_to("acme", "k", "/tmp/x")
        assert sleeps == []

    def test_stream_rewound_between_attempts(self, temp_dir):
        body = io.BytesIO(b"payload")
        inner = LocalObjectStore(temp_dir)
        calls = []
        real_put = inner.put

        def flaky_put(bucket, key, data, content_type=None):
            calls.append(1)
            if len(calls) == 1:
                data.read()
                raise OSError("broken pipe")
            real_put(bucket, key, data, content_type)

        inner.put = flaky_put
        store = RetryingObjectStore(inner, sleep=lambda s: None)
        store.put("acme", "k", body)

        assert b"".join(inner.get("acme", "k")) == b"payload"


class TestHelpers:
    def test_content_types(self):
        assert guess_content_type("a/playlist.m3u8") == "application/vnd.apple.mpegurl"
        assert guess_content_type("a/segment_000.ts") == "video/mp2t"
        assert guess_content_type("a/blob") == "application/octet-stream"

    def test_local_path_from_uri(self, temp_dir):
        path = temp_dir / "clip.mp4"
        assert local_path_from_uri(path.as_uri()) == path
        assert local_path_from_uri("temp-uploads/x/clip.mp4") is None

    def test_safe_filename(self):
        assert safe_filename("../../etc/passwd") == "passwd"
        assert safe_filename("my clip (1).mp4") == "my_clip__1_.mp4"
        assert safe_filename("") == "upload"

    def test_build_local_store(self, temp_dir):
        store = build_object_store(StorageConfig(local_root=str(temp_dir)))
        assert isinstance(store, RetryingObjectStore)
        assert store.describe()["backend"] == "local"
