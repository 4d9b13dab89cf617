import pytest

from commons.errors import UploadError
from commons.services.minio_client import MinioClient, build_object_name


class FakeMinio:
    """Records calls the way the minio SDK would receive them"""

    def __init__(self, bucket_exists=True, put_error=None):
        self.exists = bucket_exists
        self.put_error = put_error
        self.made = []
        self.objects = {}
        self.exists_calls = 0

    def bucket_exists(self, bucket):
        self.exists_calls += 1
        return self.exists

    def make_bucket(self, bucket):
        self.made.append(bucket)
        self.exists = True

    def put_object(self, bucket, name, data, length, content_type):
        if self.put_error:
            raise self.put_error
        self.objects[name] = (data.read(), length, content_type)

    def presigned_get_object(self, bucket, name, expires):
        return f"https://minio.test/{bucket}/{name}?signature=x"

    def list_buckets(self):
        return []


def test_object_name_keeps_extension():
    name = build_object_name("receipts", "Scan.PNG", "image/png")
    assert name.startswith("receipts/")
    assert name.endswith(".png")


def test_object_name_guesses_extension():
    assert build_object_name("/expense-proofs/", "", "image/jpeg").startswith("expense-proofs/")
    assert build_object_name("receipts", "blob", "").endswith(".bin")


async def test_upload_with_public_url():
    fake = FakeMinio()
    storage = MinioClient(client=fake, bucket_name="commons", public_url="https://cdn.test/commons/")

    url = await storage.upload(b"data", "r.png", "image/png", "receipts")

    assert url.startswith("https://cdn.test/commons/receipts/")
    [(stored, length, content_type)] = fake.objects.values()
    assert stored == b"data"
    assert length == 4
    assert content_type == "image/png"


async def test_upload_without_public_url_is_presigned():
    storage = MinioClient(client=FakeMinio(), bucket_name="commons", public_url="")
    url = await storage.upload(b"data", "r.png", "image/png", "receipts")
    assert url.startswith("https://minio.test/commons/receipts/")


async def test_bucket_created_once():
    fake = FakeMinio(bucket_exists=False)
    storage = MinioClient(client=fake, bucket_name="commons", public_url="https://cdn.test")

    await storage.upload(b"a", "a.png", "image/png", "receipts")
    await storage.upload(b"b", "b.png", "image/png", "receipts")

    assert fake.made == ["commons"]
    assert fake.exists_calls == 1


async def test_store_failure_raises_upload_error():
    error = ConnectionResetError("connection reset by peer")
    storage = MinioClient(client=FakeMinio(put_error=error), bucket_name="commons", public_url="https://cdn.test")

    with pytest.raises(UploadError):
        await storage.upload(b"a", "a.png", "image/png", "receipts")


async def test_check_health():
    storage = MinioClient(client=FakeMinio(), bucket_name="commons", public_url="")
    assert await storage.check_health() is True
