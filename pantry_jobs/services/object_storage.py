import asyncio
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pantry_jobs.config import get_settings
from pantry_jobs.utils.logger import logger

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


class ObjectStorageError(Exception):
    pass


def _get_s3_client():
    settings = get_settings()
    return boto3.client(
        "s3",
        region_name=settings.aws_s3_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
    )


def _put_object(data: bytes, key: str, content_type: str) -> None:
    settings = get_settings()
    _get_s3_client().put_object(
        Bucket=settings.aws_s3_bucket,
        Key=key,
        Body=data,
        ContentType=content_type,
    )


def _presigned_url(key: str, expires_in: int) -> str:
    settings = get_settings()
    return _get_s3_client().generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.aws_s3_bucket, "Key": key},
        ExpiresIn=expires_in,
    )


async def store(data: bytes, owner_id: str, content_type: str = "image/jpeg", expires_in: int = 3600) -> str:
    """Upload image bytes and return a URL the inference service can fetch.

    The URL is presigned for an hour, long enough for a job and a couple of requeues.
    """
    ext = _EXTENSIONS.get(content_type, "bin")
    key = f"uploads/{owner_id}/{uuid4()}.{ext}"
    try:
        # boto3 is blocking; keep it off the event loop
        await asyncio.to_thread(_put_object, data, key, content_type)
        url = await asyncio.to_thread(_presigned_url, key, expires_in)
    except (BotoCoreError, ClientError) as exc:
        logger.error(f"S3 upload failed for {key}: {exc}")
        raise ObjectStorageError(f"Could not store upload: {exc}") from exc
    logger.info(f"Stored upload {key} ({len(data)} bytes)")
    return url
