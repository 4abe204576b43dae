"""
Object storage for raw import files.

``storage_provider = "local"`` keeps files under ``storage_local_dir``
(development and tests); any other value uses the S3-compatible API through
boto3 (Backblaze B2, AWS S3, MinIO, ...). Callers only ever see the storage
path returned by ``upload_file``.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from event_atlas.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


def _uses_local_storage() -> bool:
    return settings.storage_provider == "local"


def _local_path(file_path: str) -> Path:
    root = Path(settings.storage_local_dir).resolve()
    candidate = (root / file_path).resolve()
    if root != candidate and root not in candidate.parents:
        raise StorageError(f"Refusing to access path outside storage root: {file_path}")
    return candidate


def get_storage_client():
    """
    Get an S3-compatible storage client.

    Raises:
        ValueError: If storage configuration is incomplete
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise ValueError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': settings.storage_max_retries, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': settings.storage_access_key_id,
        'aws_secret_access_key': settings.storage_secret_access_key,
        'config': config,
    }
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageConnectionError(f"Failed to connect to storage: {e}")


def upload_file(file_content: bytes, file_name: str, folder: str = "uploads") -> Dict[str, Any]:
    """
    Store a file and return its storage path and size.

    Raises:
        StorageUploadError: If upload fails
    """
    file_path = f"{folder}/{file_name}"

    if _uses_local_storage():
        try:
            target = _local_path(file_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(file_content)
        except OSError as e:
            logger.error("Local storage write failed for %s: %s", file_path, e)
            raise StorageUploadError(f"Upload failed: {e}")
        return {"file_path": file_path, "file_name": file_name, "size": len(file_content)}

    try:
        client = get_storage_client()
        response = client.put_object(
            Bucket=settings.storage_bucket_name,
            Key=file_path,
            Body=file_content
        )
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        logger.error("Storage upload failed: %s - %s", error_code, e)
        raise StorageUploadError(f"Upload failed: {e}")
    except (BotoCoreError, StorageConnectionError, ValueError) as e:
        logger.error("Unexpected error during upload: %s", e)
        raise StorageUploadError(f"Upload failed: {e}")

    return {
        "file_id": response.get('ETag', '').strip('"'),
        "file_path": file_path,
        "file_name": file_name,
        "size": len(file_content),
    }


def download_file(file_path: str) -> bytes:
    """
    Read a stored file.

    Raises:
        StorageDownloadError: If download fails
    """
    if _uses_local_storage():
        try:
            return _local_path(file_path).read_bytes()
        except FileNotFoundError:
            raise StorageDownloadError(f"File not found: {file_path}")
        except OSError as e:
            raise StorageDownloadError(f"Download failed: {e}")

    try:
        client = get_storage_client()
        response = client.get_object(
            Bucket=settings.storage_bucket_name,
            Key=file_path
        )
        return response['Body'].read()
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        if error_code == 'NoSuchKey':
            raise StorageDownloadError(f"File not found: {file_path}")
        logger.error("Storage download failed: %s - %s", error_code, e)
        raise StorageDownloadError(f"Download failed: {e}")
    except (BotoCoreError, StorageConnectionError, ValueError) as e:
        logger.error("Unexpected error during download: %s", e)
        raise StorageDownloadError(f"Download failed: {e}")


def delete_file(file_path: str) -> bool:
    """Delete a stored file; returns False (and logs) when it could not be removed."""
    if _uses_local_storage():
        try:
            os.remove(_local_path(file_path))
            return True
        except FileNotFoundError:
            return False
        except (OSError, StorageError) as e:
            logger.error("Error deleting file from local storage: %s", e)
            return False

    try:
        client = get_storage_client()
        client.delete_object(
            Bucket=settings.storage_bucket_name,
            Key=file_path
        )
        return True
    except (ClientError, BotoCoreError, StorageConnectionError, ValueError) as e:
        logger.error("Error deleting file from storage: %s", e)
        return False
