from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from image_pipeline.exceptions import StorageOperationError
from image_pipeline.storage.s3 import DEFAULT_CACHE_CONTROL, S3Store


def client_error(code, operation="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


async def chunked(*chunks):
    for chunk in chunks:
        yield chunk


class TestS3Store:
    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
        client.upload_part.side_effect = lambda **kw: {"ETag": f"etag-{kw['PartNumber']}"}
        return client

    @pytest.fixture
    def store(self, client):
        return S3Store(bucket="logos", client=client)

    def test_requires_bucket(self, monkeypatch):
        monkeypatch.delenv("S3_BUCKET", raising=False)
        with pytest.raises(ValueError, match="bucket"):
            S3Store(client=MagicMock())

    def test_bucket_from_env(self, monkeypatch):
        monkeypatch.setenv("S3_BUCKET", "env-bucket")
        store = S3Store(client=MagicMock())
        assert store.bucket == "env-bucket"
        assert store.namespace == "env-bucket"

    @pytest.mark.asyncio
    async def test_exists(self, store, client):
        assert await store.exists("images/a.png") is True
        client.head_object.assert_called_once_with(Bucket="logos", Key="images/a.png")

    @pytest.mark.asyncio
    async def test_exists_not_found(self, store, client):
        client.head_object.side_effect = client_error("404")
        assert await store.exists("images/a.png") is False

    @pytest.mark.asyncio
    async def test_exists_other_error_is_a_miss(self, store, client):
        client.head_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        assert await store.exists("images/a.png") is False

    @pytest.mark.asyncio
    async def test_read(self, store, client):
        body = MagicMock()
        body.read.return_value = b"bytes"
        client.get_object.return_value = {"Body": body}
        assert await store.read("k") == b"bytes"
        body.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_read_missing(self, store, client):
        client.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        assert await store.read("k") is None

    @pytest.mark.asyncio
    async def test_write_sets_public_read_and_cache_control(self, store, client):
        await store.write("images/a.png", b"data", "image/png")
        client.put_object.assert_called_once_with(
            Bucket="logos",
            Key="images/a.png",
            Body=b"data",
            ContentType="image/png",
            CacheControl=DEFAULT_CACHE_CONTROL,
            ACL="public-read",
        )

    @pytest.mark.asyncio
    async def test_write_private(self, client):
        store = S3Store(bucket="logos", client=client, public_read=False)
        await store.write("k", b"data", "image/png")
        assert "ACL" not in client.put_object.call_args.kwargs

    @pytest.mark.asyncio
    async def test_write_error_raises(self, store, client):
        client.put_object.side_effect = client_error("AccessDenied", "PutObject")
        with pytest.raises(StorageOperationError) as exc_info:
            await store.write("k", b"data", "image/png")
        assert exc_info.value.key == "k"

    @pytest.mark.asyncio
    async def test_write_refused_by_memory_guard(self, client):
        store = S3Store(bucket="logos", client=client, memory_guard=lambda n: False)
        with pytest.raises(StorageOperationError, match="Insufficient memory headroom"):
            await store.write("k", b"data", "image/png")
        client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, store, client):
        assert await store.delete("k") is True
        client.delete_object.assert_called_once_with(Bucket="logos", Key="k")

    @pytest.mark.asyncio
    async def test_delete_missing(self, store, client):
        client.head_object.side_effect = client_error("404")
        assert await store.delete("k") is False
        client.delete_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_keys_paginates(self, store, client):
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "images/logos/b.png"}]},
            {"Contents": [{"Key": "images/logos/a.png"}]},
            {},
        ]
        client.get_paginator.return_value = paginator

        assert await store.list_keys("images/logos/") == ["images/logos/a.png", "images/logos/b.png"]
        paginator.paginate.assert_called_once_with(Bucket="logos", Prefix="images/logos/")

    @pytest.mark.asyncio
    async def test_list_keys_error_is_empty(self, store, client):
        client.get_paginator.side_effect = client_error("AccessDenied", "ListObjectsV2")
        assert await store.list_keys("x") == []

    @pytest.mark.asyncio
    async def test_write_stream_multipart(self, store, client):
        written = await store.write_stream(
            "images/big.jpg", chunked(b"aaaa", b"bbbb", b"cc"), "image/jpeg", part_size=4
        )
        assert written == 10
        assert client.upload_part.call_count == 3
        client.complete_multipart_upload.assert_called_once_with(
            Bucket="logos",
            Key="images/big.jpg",
            UploadId="upload-1",
            MultipartUpload={
                "Parts": [
                    {"ETag": "etag-1", "PartNumber": 1},
                    {"ETag": "etag-2", "PartNumber": 2},
                    {"ETag": "etag-3", "PartNumber": 3},
                ]
            },
        )
        client.abort_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_stream_aborts_on_part_failure(self, store, client):
        client.upload_part.side_effect = client_error("InternalError", "UploadPart")
        with pytest.raises(StorageOperationError):
            await store.write_stream("k", chunked(b"abcd"), "image/png", part_size=2)
        client.abort_multipart_upload.assert_called_once_with(
            Bucket="logos", Key="k", UploadId="upload-1"
        )
        client.complete_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_stream_aborts_on_source_failure(self, store, client):
        async def broken():
            yield b"ab"
            raise RuntimeError("origin reset")

        with pytest.raises(RuntimeError):
            await store.write_stream("k", broken(), "image/png", part_size=2)
        client.abort_multipart_upload.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_stream_start_failure(self, store, client):
        client.create_multipart_upload.side_effect = client_error("AccessDenied", "CreateMultipartUpload")
        with pytest.raises(StorageOperationError):
            await store.write_stream("k", chunked(b"ab"), "image/png")

    @pytest.mark.asyncio
    async def test_health_check(self, store, client):
        assert (await store.health_check()).healthy is True
        client.head_bucket.side_effect = client_error("403", "HeadBucket")
        result = await store.health_check()
        assert result.healthy is False
        assert result.store_type == "s3"
