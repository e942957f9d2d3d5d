"""Cloudflare R2 artifact store using the S3-compatible API"""
import logging
from pathlib import Path
from typing import Iterator, List, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from reelhouse.core.config import settings
from reelhouse.services.media.errors import StorageError
from reelhouse.services.storage.base import DEFAULT_CHUNK_SIZE, ArtifactStore, normalize_key

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_DELETE_BATCH = 1000


def _encode_object_key_for_url(object_key: str) -> str:
    """URL-encode each path segment of an object key, keeping the slashes"""
    if not object_key:
        return ""
    return '/'.join(quote(segment, safe='') for segment in object_key.split('/'))


def _error_code(e: ClientError) -> str:
    return str(e.response.get('Error', {}).get('Code', 'Unknown'))


class R2ArtifactStore(ArtifactStore):
    """Artifact store backed by an R2 (or any S3-compatible) bucket"""

    def __init__(
        self,
        bucket: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_domain: Optional[str] = None,
        presigned_expiry: Optional[int] = None,
        client=None,
    ):
        self.bucket = bucket or settings.R2_BUCKET_NAME
        self.endpoint_url = endpoint_url or settings.R2_ENDPOINT_URL
        if not self.endpoint_url and settings.R2_ACCOUNT_ID:
            self.endpoint_url = f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        self.public_domain = (public_domain if public_domain is not None else settings.R2_PUBLIC_DOMAIN).rstrip('/')
        self.presigned_expiry = presigned_expiry or settings.R2_PRESIGNED_URL_EXPIRY

        if not self.bucket:
            raise ValueError("R2_BUCKET_NAME is not set. Set R2_BUCKET_NAME environment variable.")

        if client is None:
            access_key_id = access_key_id or settings.R2_ACCESS_KEY_ID
            secret_access_key = secret_access_key or settings.R2_SECRET_ACCESS_KEY
            if not access_key_id or not secret_access_key:
                raise ValueError("R2 configuration is missing. Set R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY environment variables.")
            if not self.endpoint_url:
                raise ValueError("Set R2_ENDPOINT_URL or R2_ACCOUNT_ID environment variable.")
            client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=Config(signature_version='s3v4')
            )
        self.s3_client = client
        logger.info(f"R2 artifact store initialized for bucket: {self.bucket}")

    def _fail(self, action: str, key: str, e: Exception) -> StorageError:
        logger.error(f"Failed to {action} {key} in R2: {e}", exc_info=True)
        return StorageError(detail=f"{action} {key}: {e}")

    def save(self, key: str, data: bytes) -> str:
        key = normalize_key(key)
        try:
            self.s3_client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            raise self._fail("save", key, e)
        return key

    def get(self, key: str) -> bytes:
        key = normalize_key(key)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise FileNotFoundError(key)
            raise self._fail("get", key, e)
        except BotoCoreError as e:
            raise self._fail("get", key, e)

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
            logger.info(f"Successfully deleted {key} from R2")
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                logger.debug(f"Object already deleted or doesn't exist: {key}")
                return
            raise self._fail("delete", key, e)
        except BotoCoreError as e:
            raise self._fail("delete", key, e)

    def _head(self, key: str) -> Optional[dict]:
        try:
            return self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise self._fail("inspect", key, e)
        except BotoCoreError as e:
            raise self._fail("inspect", key, e)

    def exists(self, key: str) -> bool:
        return self._head(normalize_key(key)) is not None

    def size(self, key: str) -> int:
        key = normalize_key(key)
        response = self._head(key)
        if response is None:
            raise FileNotFoundError(key)
        return int(response.get('ContentLength', 0))

    def copy(self, src: str, dst: str) -> str:
        src, dst = normalize_key(src), normalize_key(dst)
        try:
            self.s3_client.copy_object(
                CopySource={'Bucket': self.bucket, 'Key': src},
                Bucket=self.bucket,
                Key=dst
            )
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise FileNotFoundError(src)
            raise self._fail("copy", src, e)
        except BotoCoreError as e:
            raise self._fail("copy", src, e)
        logger.info(f"Successfully copied {src} to {dst} in R2")
        return dst

    def move(self, src: str, dst: str) -> str:
        dst = self.copy(src, dst)
        self.delete(src)
        return dst

    def get_url(self, key: str) -> str:
        key = normalize_key(key)
        if self.public_domain:
            domain = self.public_domain
            if not domain.startswith(("http://", "https://")):
                domain = f"https://{domain}"
            return f"{domain}/{_encode_object_key_for_url(key)}"
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=self.presigned_expiry
            )
        except (ClientError, BotoCoreError) as e:
            raise self._fail("sign", key, e)

    def iter_range(self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        key = normalize_key(key)
        try:
            response = self.s3_client.get_object(
                Bucket=self.bucket,
                Key=key,
                Range=f"bytes={start}-{end}"
            )
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise FileNotFoundError(key)
            raise self._fail("read", key, e)
        except BotoCoreError as e:
            raise self._fail("read", key, e)
        return response['Body'].iter_chunks(chunk_size)

    def put_file(self, local_path: Path, key: str) -> str:
        key = normalize_key(key)
        local_path = Path(local_path)
        if not local_path.is_file():
            raise FileNotFoundError(str(local_path))
        try:
            self.s3_client.upload_file(str(local_path), self.bucket, key)
        except (ClientError, BotoCoreError) as e:
            raise self._fail("upload", key, e)
        logger.info(f"Successfully uploaded {local_path.name} to R2 as {key}")
        return key

    def materialize(self, key: str, dest_path: Path) -> Path:
        key = normalize_key(key)
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.s3_client.download_file(self.bucket, key, str(dest_path))
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise FileNotFoundError(key)
            raise self._fail("download", key, e)
        except BotoCoreError as e:
            raise self._fail("download", key, e)
        return dest_path

    def list_keys(self, prefix: str) -> List[str]:
        # Prefixes name directories; "a" must not match "a1/..."
        prefix = normalize_key(prefix) + "/"
        keys = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))
        except (ClientError, BotoCoreError) as e:
            raise self._fail("list", prefix, e)
        return keys

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list_keys(prefix)
        for i in range(0, len(keys), _DELETE_BATCH):
            batch = keys[i:i + _DELETE_BATCH]
            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': True}
                )
            except (ClientError, BotoCoreError) as e:
                raise self._fail("delete", prefix, e)
            errors = response.get('Errors') or []
            if errors:
                raise StorageError(detail=f"failed to delete {len(errors)} objects under {prefix}")
        if keys:
            logger.info(f"Deleted {len(keys)} objects under {prefix} from R2")
        return len(keys)
