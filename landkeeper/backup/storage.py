"""
Storage handlers for backup archives.

Supports:
- LocalStorage: Flat directory of backup-*.tar.gz artifacts
- S3Storage: Upload, list, download and delete archives on S3
- download_http: Fetch an archive over HTTP(S)
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import ClientError, BotoCoreError

from .compression import ARCHIVE_EXTENSION


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024
HTTP_CHUNK_SIZE = 1024 * 1024
HTTP_TIMEOUT = 60


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class LocalStorage:
    """
    Handler for the local artifact directory.

    Artifacts live directly under base_path as backup-<timestamp>.tar.gz.
    Staging directories and downloaded archives are kept beside them, in
    <base_path>/<backup-name> and <base_path>/temp respectively.
    """

    TEMP_DIR_NAME = 'temp'

    def __init__(self, base_path: str, create: bool = True):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
            create: Create the directory if it doesn't exist
        """
        self.base_path = Path(base_path)

        if create:
            try:
                self.base_path.mkdir(parents=True, exist_ok=True)
            except Exception as e:
                raise StorageError(f"Failed to create local storage directory: {e}")

    @property
    def temp_path(self) -> Path:
        return self.base_path / self.TEMP_DIR_NAME

    def exists(self) -> bool:
        return self.base_path.is_dir()

    def list_archives(self) -> List[Dict[str, Any]]:
        """
        List artifacts, newest name first.

        Returns:
            List of dicts with 'name', 'path', 'modified' and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            return []

        try:
            archives = []
            for file_path in self.base_path.iterdir():
                if not file_path.is_file() or not file_path.name.endswith(ARCHIVE_EXTENSION):
                    continue
                stat = file_path.stat()
                archives.append({
                    'name': file_path.name,
                    'path': str(file_path),
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })

            archives.sort(key=lambda a: a['name'], reverse=True)
            return archives

        except OSError as e:
            raise StorageError(f"Failed to list local files in {self.base_path}: {e}")

    def find_archive(self, identifier: str) -> Optional[str]:
        """
        Resolve an identifier to an artifact path.

        'latest' picks the lexicographically greatest name; otherwise an exact
        name, then the name with .tar.gz appended, then the first substring
        match in descending name order.

        Returns:
            Full path of the artifact, or None
        """
        archives = self.list_archives()
        if not archives:
            return None

        if identifier == 'latest':
            return archives[0]['path']

        by_name = {a['name']: a['path'] for a in archives}
        if identifier in by_name:
            return by_name[identifier]
        if f"{identifier}{ARCHIVE_EXTENSION}" in by_name:
            return by_name[f"{identifier}{ARCHIVE_EXTENSION}"]

        for archive in archives:
            if identifier in archive['name']:
                return archive['path']

        return None

    def delete(self, name: str):
        """
        Delete an artifact from local storage.

        Args:
            name: File name (relative to base_path)

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / name

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file {full_path}: {e}")

    def remove_tree(self, path: str):
        """Remove a staging or extraction directory if present."""
        target = Path(path)
        if target.exists():
            shutil.rmtree(target)

    def get_full_path(self, name: str) -> str:
        """
        Get full filesystem path from a name relative to base_path.
        """
        return str(self.base_path / name)


class S3Storage:
    """
    Handler for backup archives on AWS S3.

    Uploads archives with a structured key format:
    {prefix}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 prefix: str = 'backups'):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (default credential chain if None)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            prefix: Key prefix for uploaded archives
        """
        if not bucket_name:
            raise StorageError("S3 bucket name is not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_config(cls, config, bucket_name: Optional[str] = None, prefix: Optional[str] = None):
        return cls(
            bucket_name=bucket_name or config.BACKUP_S3_BUCKET,
            access_key=config.AWS_ACCESS_KEY_ID,
            secret_key=config.AWS_SECRET_ACCESS_KEY,
            region=config.AWS_REGION,
            prefix=prefix if prefix is not None else config.BACKUP_S3_PREFIX
        )

    def build_key(self, filename: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return f"{self.prefix}/{now.year}/{now.month:02d}/{filename}"

    def upload(self, local_path: str) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = self.build_key(os.path.basename(local_path))

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            logger.info(f"Uploaded {local_path} to s3://{self.bucket_name}/{s3_key}")
            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                ContentType='application/gzip'
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload a large archive in 10MB parts, aborting the upload on error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            ContentType='application/gzip'
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

    def download(self, s3_key: str, local_path: str) -> str:
        """
        Download an object to a local file.

        Returns:
            Local path of the downloaded file

        Raises:
            StorageError: If download fails
        """
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket_name, s3_key, local_path)
            return local_path
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download of {s3_key} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download of {s3_key} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to write {local_path}: {e}")

    def find_backup(self, name: str) -> Optional[str]:
        """
        Find the newest archive key under the prefix whose file name matches.

        Args:
            name: Artifact name, with or without .tar.gz

        Returns:
            S3 key, or None
        """
        wanted = name if name.endswith(ARCHIVE_EXTENSION) else f"{name}{ARCHIVE_EXTENSION}"
        matches = [
            obj for obj in self.list_objects(prefix=self.prefix)
            if obj['Key'].rsplit('/', 1)[-1] == wanted
        ]
        if not matches:
            return None
        matches.sort(key=lambda obj: obj['LastModified'], reverse=True)
        return matches[0]['Key']

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str, limit: Optional[int] = None) -> list:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by
            limit: Stop after this many objects (None = all)

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })
                    if limit is not None and len(objects) >= limit:
                        return objects

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def parse_s3_url(url: str):
    """Split s3://bucket/key into (bucket, key)."""
    parsed = urlparse(url)
    bucket, key = parsed.netloc, parsed.path.lstrip('/')
    if parsed.scheme != 's3' or not bucket or not key:
        raise StorageError(f"Invalid S3 URL: {url}")
    return bucket, key


def download_http(url: str, dest_path: str, timeout: int = HTTP_TIMEOUT) -> str:
    """
    Stream an archive over HTTP(S) into dest_path.

    Returns:
        Local path of the downloaded file

    Raises:
        StorageError: If the request fails or the response is not 2xx
    """
    local_path = Path(dest_path)

    try:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(local_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=HTTP_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
    except requests.RequestException as e:
        if local_path.exists():
            local_path.unlink()
        raise StorageError(f"HTTP download of {url} failed: {e}")
    except OSError as e:
        raise StorageError(f"Failed to write {local_path}: {e}")

    logger.info(f"Downloaded {url} to {local_path}")
    return str(local_path)
