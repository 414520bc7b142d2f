import hashlib

import httpx
import pytest

from services.cloudinary import (
    CloudinaryConfig,
    UploadError,
    build_signed_upload_params,
    generate_upload_signature,
    get_optimized_image_url,
    get_upload_url,
    upload_image,
)

CONFIG = CloudinaryConfig(cloud_name="demo-cloud", api_key="key-123", api_secret="secret")


def test_signature_sorts_params_and_appends_secret():
    expected = hashlib.sha1(b"folder=pins&timestamp=1700000000secret").hexdigest()
    assert generate_upload_signature({"timestamp": 1700000000, "folder": "pins"}, "secret") == expected


def test_signed_upload_params():
    params = build_signed_upload_params("boards", timestamp=1700000000, config=CONFIG)
    assert params == {
        "signature": generate_upload_signature({"folder": "boards", "timestamp": 1700000000}, "secret"),
        "timestamp": 1700000000,
        "api_key": "key-123",
        "cloud_name": "demo-cloud",
        "folder": "boards",
    }


def test_signed_upload_params_requires_config():
    with pytest.raises(UploadError):
        build_signed_upload_params("pins", config=CloudinaryConfig())


def test_urls():
    assert get_upload_url("demo-cloud") == "https://api.cloudinary.com/v1_1/demo-cloud/image/upload"
    assert (
        get_optimized_image_url("pins/abc", cloud_name="demo-cloud")
        == "https://res.cloudinary.com/demo-cloud/image/upload/f_auto,q_80/pins/abc"
    )
    assert (
        get_optimized_image_url("pins/abc", cloud_name="demo-cloud", width=400, height=300, quality=60, format="webp")
        == "https://res.cloudinary.com/demo-cloud/image/upload/f_webp,q_60,w_400,h_300/pins/abc"
    )


@pytest.mark.asyncio
async def test_upload_image_posts_multipart():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(
            200,
            json={
                "secure_url": "https://res.cloudinary.com/demo-cloud/image/upload/v1/pins/abc.jpg",
                "public_id": "pins/abc",
                "width": 640,
                "height": 480,
                "format": "jpg",
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await upload_image(b"\xff\xd8\xffjpegdata", config=CONFIG, client=client)

    assert seen["url"] == "https://api.cloudinary.com/v1_1/demo-cloud/image/upload"
    assert b'name="signature"' in seen["body"]
    assert b'name="api_key"' in seen["body"]
    assert b"jpegdata" in seen["body"]
    assert result.public_id == "pins/abc"
    assert (result.width, result.height) == (640, 480)


@pytest.mark.asyncio
async def test_upload_image_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Invalid Signature"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UploadError):
            await upload_image(b"data", config=CONFIG, client=client)


@pytest.mark.asyncio
async def test_upload_image_without_config_makes_no_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UploadError):
            await upload_image(b"data", config=CloudinaryConfig(), client=client)
    assert calls == []


@pytest.mark.asyncio
async def test_upload_image_raises_on_non_json_success_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>", headers={"Content-Type": "text/html"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UploadError):
            await upload_image(b"data", config=CONFIG, client=client)


@pytest.mark.asyncio
async def test_upload_image_raises_on_non_object_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["secure_url", "public_id"])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UploadError):
            await upload_image(b"data", config=CONFIG, client=client)
