import httpx
import pytest

from services.errors import StorageMigrationError
from services.storage import CACHE_CONTROL, StorageMigrator, upload_object_key, video_object_key


class _RecordingS3:
    def __init__(self, failures=0):
        self.failures = failures
        self.uploads = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.failures:
            self.failures -= 1
            raise OSError("connection reset")
        self.uploads.append((bucket, key, fileobj.read(), ExtraArgs))


def _migrator(handler, s3, sleeps, **overrides):
    async def sleep(seconds):
        sleeps.append(seconds)

    options = dict(
        endpoint="https://r2.test",
        bucket="videos",
        access_key="ak",
        secret_key="sk",
        public_url="https://media.test/",
        max_attempts=3,
        retry_base_seconds=2.0,
        s3_client=s3,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep,
    )
    options.update(overrides)
    return StorageMigrator(**options)


def _serve(body=b"video-bytes", status=200):
    def handler(request):
        return httpx.Response(status, content=body, headers={"content-type": "video/mp4"})

    return handler


@pytest.mark.asyncio
async def test_download_and_upload_streams_into_bucket():
    s3 = _RecordingS3()
    sleeps = []
    migrator = _migrator(_serve(), s3, sleeps)

    stored = await migrator.download_and_upload("https://cdn.test/a.mp4", video_object_key("vid_1"))

    assert stored.key == "videos/vid_1/output.mp4"
    assert stored.url == "https://media.test/videos/vid_1/output.mp4"
    bucket, key, body, extra = s3.uploads[0]
    assert (bucket, key, body) == ("videos", "videos/vid_1/output.mp4", b"video-bytes")
    assert extra == {"ContentType": "video/mp4", "CacheControl": CACHE_CONTROL}
    assert sleeps == []


@pytest.mark.asyncio
async def test_upload_failure_is_retried_with_backoff():
    s3 = _RecordingS3(failures=2)
    sleeps = []
    migrator = _migrator(_serve(), s3, sleeps)

    stored = await migrator.download_and_upload("https://cdn.test/a.mp4", "videos/vid_2/output.mp4")

    assert stored.key == "videos/vid_2/output.mp4"
    assert len(s3.uploads) == 1
    assert sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_storage_error():
    s3 = _RecordingS3()
    sleeps = []
    migrator = _migrator(_serve(b"bad gateway", status=502), s3, sleeps)

    with pytest.raises(StorageMigrationError):
        await migrator.download_and_upload("https://cdn.test/a.mp4", "videos/vid_3/output.mp4")

    assert s3.uploads == []
    assert sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_unconfigured_storage_and_missing_url_fail_fast():
    sleeps = []
    unconfigured = StorageMigrator(endpoint="", bucket="", access_key="", secret_key="")
    assert not unconfigured.is_configured
    with pytest.raises(StorageMigrationError):
        await unconfigured.download_and_upload("https://cdn.test/a.mp4", "videos/x/output.mp4")

    migrator = _migrator(_serve(), _RecordingS3(), sleeps)
    with pytest.raises(StorageMigrationError):
        await migrator.download_and_upload("", "videos/x/output.mp4")


def test_public_url_falls_back_to_bucket_path():
    migrator = StorageMigrator(endpoint="https://r2.test/", bucket="videos", access_key="ak", secret_key="sk")
    assert migrator.is_configured
    assert migrator.public_url("videos/a/output.mp4") == "https://r2.test/videos/videos/a/output.mp4"


@pytest.mark.asyncio
async def test_upload_bytes_retries_and_uses_user_prefix():
    s3 = _RecordingS3(failures=1)
    sleeps = []
    migrator = _migrator(_serve(), s3, sleeps)
    key = upload_object_key("user-9", "abc123", "png")

    stored = await migrator.upload_bytes(b"png-bytes", key, "image/png")

    assert stored.key == "uploads/user-9/abc123.png"
    assert stored.url == "https://media.test/uploads/user-9/abc123.png"
    bucket, uploaded_key, body, extra = s3.uploads[0]
    assert (bucket, uploaded_key, body) == ("videos", key, b"png-bytes")
    assert extra["ContentType"] == "image/png"
    assert sleeps == [2.0]
