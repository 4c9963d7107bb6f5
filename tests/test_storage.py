import io

import pytest
from botocore.exceptions import ClientError

from dispodeals.errors import StorageError
from dispodeals.ingest.storage import LocalStorage, S3Storage


class FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)][0])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)


@pytest.mark.asyncio
async def test_local_storage_round_trip(tmp_path):
    storage = LocalStorage(tmp_path)
    await storage.put("Greenhouse/2024-06-01/abc.png", b"png", "image/png")
    assert await storage.get("Greenhouse/2024-06-01/abc.png") == b"png"
    await storage.delete("Greenhouse/2024-06-01/abc.png")
    await storage.delete("Greenhouse/2024-06-01/abc.png")
    with pytest.raises(StorageError):
        await storage.get("Greenhouse/2024-06-01/abc.png")


@pytest.mark.asyncio
async def test_local_storage_rejects_escaping_paths(tmp_path):
    storage = LocalStorage(tmp_path / "flyers")
    with pytest.raises(StorageError):
        await storage.put("../outside.png", b"png", "image/png")


@pytest.mark.asyncio
async def test_s3_storage_uses_bucket_and_maps_errors():
    client = FakeS3()
    storage = S3Storage("flyers", client=client)
    await storage.put("Greenhouse/a.pdf", b"%PDF", "application/pdf")
    assert client.objects[("flyers", "Greenhouse/a.pdf")] == (b"%PDF", "application/pdf")
    assert await storage.get("Greenhouse/a.pdf") == b"%PDF"
    with pytest.raises(StorageError):
        await storage.get("Greenhouse/missing.pdf")
