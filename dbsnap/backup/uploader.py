"""
Remote uploaders - post-backup hooks that push a finished dump off-host.

Uploads are best effort: an uploader reports its outcome as an UploadResult
and the backup manager only logs it. A failed upload never fails a backup.

Supports:
- S3Uploader: AWS S3 or any S3-compatible endpoint
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from dbsnap.config import RemoteStorageConfig
from .records import parse_backup_type

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class UploadError(Exception):
    """Raised by uploader internals when an upload fails."""
    pass


@dataclass
class UploadResult:
    success: bool
    remote_key: Optional[str] = None
    error: Optional[str] = None


class RemoteUploader(ABC):
    """
    Contract for post-backup upload hooks.

    Implementations must not raise from upload(); failures are returned as
    UploadResult(success=False, error=...).
    """

    name = 'remote'

    @abstractmethod
    def upload(self, local_path: str, filename: str) -> UploadResult:
        raise NotImplementedError


class S3Uploader(RemoteUploader):
    """
    Uploads dumps to S3 under {prefix}/{tier}/{filename}.
    """

    name = 's3'

    def __init__(self, bucket_name: str, access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None, prefix: str = 'backups'):
        """
        Initialize S3 uploader.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (None = default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            prefix: Key prefix for all uploads
        """
        if not bucket_name:
            raise UploadError("S3 bucket name is required")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def build_key(self, filename: str) -> str:
        tier = parse_backup_type(filename) or 'other'
        parts = [p for p in (self.prefix, tier, filename) if p]
        return '/'.join(parts)

    def upload(self, local_path: str, filename: str) -> UploadResult:
        try:
            key = self._upload(local_path, filename)
            return UploadResult(success=True, remote_key=key)
        except UploadError as e:
            return UploadResult(success=False, error=str(e))

    def _upload(self, local_path: str, filename: str) -> str:
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        s3_key = self.build_key(filename)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise UploadError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload a large file in MULTIPART_CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


def create_uploader(remote: RemoteStorageConfig) -> Optional[RemoteUploader]:
    """
    Factory function to create the configured uploader.

    Args:
        remote: Remote storage configuration

    Returns:
        RemoteUploader instance, or None if remote storage is disabled,
        the type is unknown, or the uploader cannot be initialized
    """
    if not remote.enabled:
        return None

    if remote.type == 's3':
        try:
            return S3Uploader(
                bucket_name=remote.bucket,
                access_key=remote.access_key,
                secret_key=remote.secret_key,
                region=remote.region,
                endpoint_url=remote.endpoint_url,
                prefix=remote.prefix
            )
        except UploadError as e:
            logger.error(f"Remote storage disabled: {e}")
            return None

    logger.warning(f"Unknown remote storage type: {remote.type}, uploads disabled")
    return None
