"""
Storage handlers for backup archives.

Supports:
- S3Storage: Upload to S3 or an S3-compatible store (B2, Spaces, MinIO)
- LocalStorage: The local backup directory holding sealed archives
"""

import os
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .backupset import parse_backup_timestamp
from .compression import is_archive_name, strip_archive_extension

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class S3Storage:
    """
    Handler for uploading backups to S3.

    Uploads archives with a structured key format:
    {prefix}/{YYYY}/{MM}/{filename}
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            access_key: Access key ID (default credential chain when omitted)
            secret_key: Secret access key
            endpoint_url: Endpoint of an S3-compatible provider
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url or None

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def build_key(local_path: str, prefix: str) -> str:
        """
        Remote key for an archive, dated by the backup's own timestamp.

        Falls back to the current month for archives without one.
        """
        filename = os.path.basename(local_path)
        stamp = parse_backup_timestamp(strip_archive_extension(filename)) or datetime.now()
        key = f"{stamp.year}/{stamp.month:02d}/{filename}"
        prefix = (prefix or '').strip('/')
        return f"{prefix}/{key}" if prefix else key

    def upload(self, local_path: str, prefix: str) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            prefix: Key prefix (e.g. server-backups)

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = self.build_key(local_path, prefix)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload.

        Any error, interrupts included, aborts the upload so no orphaned
        parts are left in the bucket.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
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

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Could not abort multipart upload {upload_id}: {abort_error}")
            raise


class LocalStorage:
    """
    The local backup directory: sealed archives, flat, one per BackupSet.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def list_archives(self) -> List[Dict[str, Any]]:
        """
        Archives in the backup directory, newest first.

        Returns:
            List of dicts with 'path', 'name', 'modified', and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.is_dir():
            return []

        try:
            archives = []
            for file_path in self.base_path.iterdir():
                if not file_path.is_file() or not is_archive_name(file_path.name):
                    continue
                stat = file_path.stat()
                archives.append({
                    'path': str(file_path),
                    'name': strip_archive_extension(file_path.name),
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })
        except OSError as e:
            raise StorageError(f"Failed to list local archives: {e}")

        archives.sort(key=lambda a: (a['modified'], a['name']), reverse=True)
        return archives

    def delete(self, path: str):
        """
        Delete an archive from the backup directory.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / os.path.basename(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")
