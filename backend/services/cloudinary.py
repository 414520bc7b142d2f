"""
Cloudinary upload helpers.

Normalized pin images are pushed to Cloudinary with a signed upload:
- generate_upload_signature: SHA-1 over the sorted params plus the API secret
- build_signed_upload_params: what a browser needs to upload directly
- upload_image: server-side multipart upload via httpx
"""

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_FOLDER = "pins"
UPLOAD_TIMEOUT_SECONDS = 60.0


class UploadError(Exception):
    """Raised when the media host rejects or cannot receive an upload."""


@dataclass(frozen=True)
class CloudinaryConfig:
    cloud_name: str = ""
    api_key: str = ""
    api_secret: str = ""

    @classmethod
    def from_env(cls) -> "CloudinaryConfig":
        return cls(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME", ""),
            api_key=os.getenv("CLOUDINARY_API_KEY", ""),
            api_secret=os.getenv("CLOUDINARY_API_SECRET", ""),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)


@dataclass
class UploadResult:
    secure_url: str
    public_id: str
    width: Optional[int]
    height: Optional[int]
    format: Optional[str]


def generate_upload_signature(params: Mapping[str, Any], api_secret: str) -> str:
    """
    Sign upload params: 'folder=pins&timestamp=1700000000' + secret, SHA-1 hex.
    """
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def get_upload_url(cloud_name: str) -> str:
    return f"https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"


def get_optimized_image_url(
    public_id: str,
    *,
    cloud_name: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    quality: int = 80,
    format: str = "auto",
) -> str:
    """Delivery URL with format/quality/size transformations applied by Cloudinary."""
    cloud = cloud_name or CloudinaryConfig.from_env().cloud_name
    transformation = f"f_{format},q_{quality}"
    if width:
        transformation += f",w_{width}"
    if height:
        transformation += f",h_{height}"
    return f"https://res.cloudinary.com/{cloud}/image/upload/{transformation}/{public_id}"


def build_signed_upload_params(
    folder: str = DEFAULT_FOLDER,
    *,
    timestamp: Optional[int] = None,
    config: Optional[CloudinaryConfig] = None,
) -> Dict[str, Any]:
    config = config or CloudinaryConfig.from_env()
    if not config.is_configured:
        raise UploadError("Cloudinary is not configured (CLOUDINARY_CLOUD_NAME/API_KEY/API_SECRET)")

    if timestamp is None:
        timestamp = int(round(time.time()))
    signature = generate_upload_signature({"folder": folder, "timestamp": timestamp}, config.api_secret)
    return {
        "signature": signature,
        "timestamp": timestamp,
        "api_key": config.api_key,
        "cloud_name": config.cloud_name,
        "folder": folder,
    }


async def upload_image(
    data: bytes,
    *,
    filename: str = "pin.jpg",
    media_type: str = "image/jpeg",
    folder: str = DEFAULT_FOLDER,
    config: Optional[CloudinaryConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> UploadResult:
    """
    Upload encoded image bytes to Cloudinary as multipart form data.
    Raises UploadError on missing configuration, transport failure or a non-2xx reply.
    """
    config = config or CloudinaryConfig.from_env()
    signed = build_signed_upload_params(folder, config=config)

    form = {
        "timestamp": str(signed["timestamp"]),
        "signature": signed["signature"],
        "api_key": signed["api_key"],
        "folder": signed["folder"],
    }
    files = {"file": (filename, data, media_type)}
    url = get_upload_url(config.cloud_name)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=UPLOAD_TIMEOUT_SECONDS)
    try:
        response = await client.post(url, data=form, files=files)
    except httpx.HTTPError as e:
        logger.error(f"Cloudinary upload failed: {e}")
        raise UploadError(f"Failed to reach Cloudinary: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        logger.error(f"Cloudinary API error: {response.status_code} - {response.text}")
        raise UploadError(f"Cloudinary upload failed with status {response.status_code}")

    try:
        payload = response.json()
    except ValueError as e:
        logger.error(f"Cloudinary returned a non-JSON body: {response.text[:200]}")
        raise UploadError("Unexpected non-JSON response from Cloudinary") from e
    if not isinstance(payload, dict) or "secure_url" not in payload or "public_id" not in payload:
        raise UploadError(f"Unexpected Cloudinary response: {payload}")

    logger.info(f"Uploaded {len(data)} bytes to Cloudinary: {payload['public_id']}")
    return UploadResult(
        secure_url=payload["secure_url"],
        public_id=payload["public_id"],
        width=payload.get("width"),
        height=payload.get("height"),
        format=payload.get("format"),
    )
