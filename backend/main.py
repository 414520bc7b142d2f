from fastapi import FastAPI, UploadFile, File, HTTPException, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel
from typing import Optional
import uvicorn
import os
import sys
import logging
import time
import uuid
from pathlib import Path

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

from settings import settings
from services import cloudinary
from services.image_normalize import (
    DecodeError,
    UnsupportedTypeError,
    format_file_size,
    normalize,
)
from services.previews import get_preview_registry

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pinstar API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-Id"],
    expose_headers=["X-Request-Id"],
)

_rate_buckets: dict[str, tuple[int, float]] = {}

# Requests per client IP per RATE_LIMIT_WINDOW_SECONDS.
NORMALIZE_RATE_LIMIT = 30
UPLOAD_RATE_LIMIT = 30
RATE_LIMIT_WINDOW_SECONDS = 60


def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Simple best-effort in-memory rate limiter (per-instance).
    Returns True if allowed, False if rate-limited.
    """
    now = time.time()
    count, expires_at = _rate_buckets.get(key, (0, 0.0))
    if expires_at <= now:
        _rate_buckets[key] = (1, now + window_seconds)
        return True
    if count >= limit:
        return False
    _rate_buckets[key] = (count + 1, expires_at)
    return True


def get_client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "unknown"


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


async def read_upload(image: UploadFile) -> bytes:
    """Read an uploaded file, enforcing the raw upload size limit."""
    contents = await image.read()
    if len(contents) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Image too large. Maximum size: {format_file_size(settings.max_upload_bytes)}"
        )
    return contents


async def normalize_upload(image: UploadFile):
    contents = await read_upload(image)
    try:
        return await normalize(contents, image.content_type, config=settings.normalizer_config())
    except UnsupportedTypeError:
        raise HTTPException(
            status_code=415,
            detail="Please select a valid image file (JPEG, PNG, WebP, or GIF)"
        )
    except DecodeError as e:
        logger.warning(f"Could not decode upload {image.filename!r}: {e}")
        raise HTTPException(
            status_code=422,
            detail="Failed to process image. Please try another file."
        )


class SignatureRequest(BaseModel):
    folder: str = cloudinary.DEFAULT_FOLDER


@app.get("/")
async def root():
    return {"message": "Pinstar API is running"}


@app.post("/api/images/normalize")
async def normalize_image_endpoint(request: Request, image: UploadFile = File(...)):
    """
    Resize and recompress an image for a new pin. The response references a
    preview that the client must DELETE once it is no longer displayed.
    """
    ip = get_client_ip(request)
    if not check_rate_limit(f"normalize:{ip}", limit=NORMALIZE_RATE_LIMIT, window_seconds=RATE_LIMIT_WINDOW_SECONDS):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again shortly.")

    result = await normalize_upload(image)
    return {
        "width": result.width,
        "height": result.height,
        "media_type": result.media_type,
        "bytes": result.size,
        "size_label": format_file_size(result.size),
        "quality": result.quality,
        "attempts": result.attempts,
        "over_budget": result.over_budget,
        "preview_id": result.preview.id,
        "preview_url": result.preview.url,
    }


@app.get("/api/previews/{preview_id}")
async def get_preview(preview_id: str):
    try:
        data, media_type = get_preview_registry().get(preview_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Preview not found")
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "no-store"})


@app.delete("/api/previews/{preview_id}", status_code=204)
async def release_preview(preview_id: str):
    if not get_preview_registry().release(preview_id):
        raise HTTPException(status_code=404, detail="Preview not found")
    return Response(status_code=204)


@app.post("/api/upload/signature")
async def upload_signature(body: Optional[SignatureRequest] = None):
    folder = body.folder if body else cloudinary.DEFAULT_FOLDER
    try:
        return cloudinary.build_signed_upload_params(folder)
    except cloudinary.UploadError as e:
        logger.error(f"Upload signature error: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate upload signature")


@app.post("/api/upload")
async def upload_pin_image(
    request: Request,
    image: UploadFile = File(...),
    folder: Optional[str] = Form(None),
):
    """Normalize an image and push it to Cloudinary."""
    ip = get_client_ip(request)
    if not check_rate_limit(f"upload:{ip}", limit=UPLOAD_RATE_LIMIT, window_seconds=RATE_LIMIT_WINDOW_SECONDS):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again shortly.")

    result = await normalize_upload(image)
    with result.preview:
        if result.over_budget:
            logger.warning(
                f"Uploading over-budget image ({format_file_size(result.size)}) "
                f"[request_id={request.state.request_id}]"
            )
        stem = Path(image.filename or "pin").stem or "pin"
        try:
            uploaded = await cloudinary.upload_image(
                result.data,
                filename=f"{stem}.jpg" if result.media_type == "image/jpeg" else f"{stem}.webp",
                media_type=result.media_type,
                folder=folder or settings.upload_folder,
            )
        except cloudinary.UploadError as e:
            logger.error(f"Error in upload endpoint: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail="Failed to upload image")

    return {
        "image_url": uploaded.secure_url,
        "public_id": uploaded.public_id,
        "width": uploaded.width or result.width,
        "height": uploaded.height or result.height,
        "bytes": result.size,
        "over_budget": result.over_budget,
    }


if __name__ == "__main__":
    os.environ.setdefault('PYTHONIOENCODING', 'utf-8')

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
