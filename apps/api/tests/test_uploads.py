import pytest

from config import settings
from services.session_token import create_session_token
from services.uploads import image_extension


UPLOAD_USER_ID = "upload-user"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(UPLOAD_USER_ID)['token']}"}
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.mark.asyncio
async def test_upload_stores_image_under_user_prefix(api_client, s3_client):
    response = await api_client.post(
        "/upload",
        files={"file": ("reference.png", PNG_BYTES, "image/png")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 200, response.text
    body = response.json()
    key = body["key"]
    assert key.startswith(f"uploads/{UPLOAD_USER_ID}/")
    assert key.endswith(".png")
    assert body["publicUrl"] == f"https://media.test/{key}"

    upload = s3_client.uploads[0]
    assert upload["key"] == key
    assert upload["body"] == PNG_BYTES
    assert upload["extra"]["ContentType"] == "image/png"


@pytest.mark.asyncio
async def test_upload_requires_session(api_client):
    response = await api_client.post("/upload", files={"file": ("reference.png", PNG_BYTES, "image/png")})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_upload_rejects_non_images(api_client, s3_client):
    response = await api_client.post(
        "/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "InvalidUpload"
    assert s3_client.uploads == []


@pytest.mark.asyncio
async def test_upload_rejects_oversized_files(api_client, s3_client, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_MAX_IMAGE_BYTES", 16)

    response = await api_client.post(
        "/upload",
        files={"file": ("reference.png", PNG_BYTES, "image/png")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "FileTooLarge"
    assert s3_client.uploads == []


@pytest.mark.asyncio
async def test_upload_storage_outage_returns_503(api_client, s3_client):
    s3_client.failures = 3

    response = await api_client.post(
        "/upload",
        files={"file": ("reference.png", PNG_BYTES, "image/png")},
        headers=AUTH_HEADER,
    )

    assert response.status_code == 503
    assert response.json()["detail"] == {
        "code": "StorageMigrationError",
        "message": "Upload could not be stored. Try again later.",
    }


@pytest.mark.parametrize(
    "filename, content_type, expected",
    [
        ("photo.JPEG", "image/jpeg", "jpeg"),
        ("still.webp", "image/webp", "webp"),
        (None, "image/gif", "gif"),
        ("payload.exe", "image/png", "png"),
    ],
)
def test_image_extension(filename, content_type, expected):
    assert image_extension(filename, content_type) == expected
