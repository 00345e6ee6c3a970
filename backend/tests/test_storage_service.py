"""Tests for the S3 object storage wrapper."""
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from shortsmith.pipeline.errors import ErrorKind
from shortsmith.services.storage_service import DuplicateKeyError, ObjectStorage, StorageError


def _client_error(code: str, status: int, message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "PutObject",
    )


class _FakeS3:
    def __init__(self, error=None):
        self.error = error
        self.objects = {}
        self.put_calls = []

    def put_object(self, **kwargs):
        self.put_calls.append(kwargs)
        if self.error:
            raise self.error
        if kwargs.get("IfNoneMatch") == "*" and kwargs["Key"] in self.objects:
            raise _client_error("PreconditionFailed", 412)
        self.objects[kwargs["Key"]] = kwargs["Body"].read()

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://signed.example.com/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


@pytest.fixture
def clip(tmp_path):
    path = tmp_path / "short_job1_1.mp4"
    path.write_bytes(b"\x00" * 2048)
    return path


@pytest.mark.asyncio
async def test_put_returns_public_url(clip):
    s3 = _FakeS3()
    storage = ObjectStorage(client=s3, bucket="shorts-bucket", public_base_url="https://cdn.example.com/")

    url = await storage.put("shorts/job1/short_job1_1.mp4", clip, "video/mp4")

    assert url == "https://cdn.example.com/shorts/job1/short_job1_1.mp4"
    call = s3.put_calls[0]
    assert call["Bucket"] == "shorts-bucket"
    assert call["ContentType"] == "video/mp4"
    assert call["IfNoneMatch"] == "*"
    assert s3.objects["shorts/job1/short_job1_1.mp4"] == b"\x00" * 2048


@pytest.mark.asyncio
async def test_put_returns_presigned_url_without_public_base(clip):
    storage = ObjectStorage(client=_FakeS3(), bucket="shorts-bucket", public_base_url="", url_expiry=3600)

    url = await storage.put("shorts/job1/short_job1_1.mp4", clip, "video/mp4")

    assert url == "https://signed.example.com/shorts-bucket/shorts/job1/short_job1_1.mp4?expires=3600"


@pytest.mark.asyncio
async def test_existing_key_is_never_overwritten(clip):
    s3 = _FakeS3()
    s3.objects["shorts/job1/short_job1_1.mp4"] = b"original"
    storage = ObjectStorage(client=s3, public_base_url="https://cdn.example.com")

    with pytest.raises(DuplicateKeyError):
        await storage.put("shorts/job1/short_job1_1.mp4", clip, "video/mp4")
    assert s3.objects["shorts/job1/short_job1_1.mp4"] == b"original"


@pytest.mark.asyncio
async def test_backend_errors_become_storage_errors(clip):
    storage = ObjectStorage(
        client=_FakeS3(error=_client_error("InternalError", 500, "We encountered an internal error")),
        public_base_url="https://cdn.example.com",
    )

    with pytest.raises(StorageError) as exc:
        await storage.put("shorts/job1/short_job1_1.mp4", clip, "video/mp4")

    assert not isinstance(exc.value, DuplicateKeyError)
    assert exc.value.kind == ErrorKind.STORAGE_ERROR
    assert "internal error" in str(exc.value)


@pytest.mark.asyncio
async def test_connection_errors_become_storage_errors(clip):
    storage = ObjectStorage(
        client=_FakeS3(error=EndpointConnectionError(endpoint_url="https://s3.example.com")),
        public_base_url="https://cdn.example.com",
    )

    with pytest.raises(StorageError):
        await storage.put("shorts/job1/short_job1_1.mp4", clip, "video/mp4")
