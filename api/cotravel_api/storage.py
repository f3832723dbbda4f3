
import io
import logging
from minio import Minio
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=False,
)


def logo_key(business_id: int, content_type: str) -> str:
    return f"businesses/{business_id}/logo.{ALLOWED_IMAGE_TYPES[content_type]}"


def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)
    logger.info("stored %s (%s bytes)", key, len(data))


def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()


def delete_object(key: str):
    _client.remove_object(MINIO_BUCKET, key)
