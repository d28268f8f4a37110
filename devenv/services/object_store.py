"""
S3-compatible object store wrapper

Used on both sides of a snapshot transfer:
- Source store: the shared snapshot bucket (AWS S3 or any S3-compatible provider)
- Destination store: the in-cluster MinIO the backup system reads from

Every blocking boto3 call runs in a worker thread so the event loop stays free.
ClientErrors are translated into the ObjectStoreError hierarchy:
- 404 / NoSuchKey -> ObjectNotFoundError
- 403 / InvalidAccessKeyId / SignatureDoesNotMatch -> ObjectStoreAuthError
- BadDigest / InvalidDigest -> ObjectIntegrityError (Content-MD5 rejected on write)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Callable, List, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import (
    ObjectIntegrityError,
    ObjectNotFoundError,
    ObjectStoreAuthError,
    ObjectStoreError,
)

logger = logging.getLogger(__name__)

# Retry configuration for S3 operations
S3_RETRY_CONFIG = Config(
    retries={
        'max_attempts': 3,
        'mode': 'adaptive'
    },
    connect_timeout=10,
    read_timeout=120,  # 2 minutes for large archives
)

NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}
AUTH_CODES = {'403', 'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch'}
INTEGRITY_CODES = {'BadDigest', 'InvalidDigest'}

# Chunk size used when streaming object bodies
STREAM_CHUNK_SIZE = 1024 * 1024


@dataclass
class ObjectInfo:
    """A listed object."""
    key: str
    size: int
    last_modified: Optional[datetime] = None


class ObjectStore:
    """
    Thin async wrapper around a boto3 S3 client bound to one bucket.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        session_token: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket

        if client is not None:
            self.client = client
            return

        client_kwargs = {
            'region_name': region or None,
            'config': S3_RETRY_CONFIG,
        }

        # Use explicit credentials if provided, otherwise rely on the default chain
        if access_key_id and secret_access_key:
            client_kwargs['aws_access_key_id'] = access_key_id
            client_kwargs['aws_secret_access_key'] = secret_access_key
            if session_token:
                client_kwargs['aws_session_token'] = session_token
            auth_method = "explicit credentials"
        else:
            auth_method = "default credential chain"

        # MinIO and friends need path-style addressing
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
            client_kwargs['config'] = S3_RETRY_CONFIG.merge(Config(s3={'addressing_style': 'path'}))
            provider = "S3-compatible"
        else:
            provider = "AWS S3"

        self.client = boto3.client('s3', **client_kwargs)

        logger.info(f"[S3] Initialized store for bucket: {bucket}")
        logger.debug(f"[S3] Provider: {provider}, Auth: {auth_method}, Endpoint: {endpoint_url or '(AWS default)'}")

    @classmethod
    def from_s3_config(cls, s3_config) -> "ObjectStore":
        """Build a store from a stager S3Config."""
        return cls(
            bucket=s3_config.bucket,
            endpoint_url=s3_config.endpoint_url,
            region=s3_config.region or None,
            access_key_id=s3_config.aws_access_key or None,
            secret_access_key=s3_config.aws_secret_key or None,
            session_token=s3_config.aws_session_token or None,
        )

    @classmethod
    def from_settings(cls, settings) -> "ObjectStore":
        """Build the shared snapshot (source) store from Settings."""
        return cls(
            bucket=settings.snapshot_bucket,
            endpoint_url=settings.snapshot_endpoint or None,
            region=settings.snapshot_region,
            access_key_id=settings.snapshot_access_key_id or None,
            secret_access_key=settings.snapshot_secret_access_key or None,
        )

    def _translate(self, e: ClientError, key: str = "") -> ObjectStoreError:
        error_code = str(e.response.get('Error', {}).get('Code', 'Unknown'))
        if error_code in NOT_FOUND_CODES:
            return ObjectNotFoundError(self.bucket, key)
        if error_code in AUTH_CODES:
            return ObjectStoreAuthError(f"access denied to bucket '{self.bucket}': {e}")
        if error_code in INTEGRITY_CODES:
            return ObjectIntegrityError(f"object store rejected '{key}': {e}")
        return ObjectStoreError(f"object store error on '{self.bucket}/{key}': {e}")

    async def get_object(self, key: str) -> bytes:
        """Read a whole object into memory. Meant for small documents."""
        try:
            response = await asyncio.to_thread(
                self.client.get_object,
                Bucket=self.bucket,
                Key=key
            )
            return await asyncio.to_thread(response['Body'].read)
        except ClientError as e:
            raise self._translate(e, key) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"failed to get '{key}': {e}") from e

    async def download_object(
        self,
        key: str,
        fileobj: IO[bytes],
        on_chunk: Optional[Callable[[bytes], None]] = None
    ) -> int:
        """
        Stream an object into fileobj.

        Args:
            key: Object key
            fileobj: Writable binary file object
            on_chunk: Called with every chunk before it is written

        Returns:
            Number of bytes written
        """
        def _stream() -> int:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            written = 0
            for chunk in response['Body'].iter_chunks(STREAM_CHUNK_SIZE):
                if on_chunk:
                    on_chunk(chunk)
                fileobj.write(chunk)
                written += len(chunk)
            return written

        try:
            written = await asyncio.to_thread(_stream)
        except ClientError as e:
            raise self._translate(e, key) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"failed to download '{key}': {e}") from e

        logger.debug(f"[S3] Downloaded {key} ({written} bytes)")
        return written

    async def put_object(
        self,
        key: str,
        body: Union[bytes, IO[bytes]],
        content_md5: Optional[str] = None
    ) -> None:
        """
        Write an object.

        Args:
            key: Object key
            body: Bytes or a readable binary file object
            content_md5: base64 MD5 of body; the store rejects the write on mismatch
        """
        kwargs = {'Bucket': self.bucket, 'Key': key, 'Body': body}
        if content_md5:
            kwargs['ContentMD5'] = content_md5

        try:
            await asyncio.to_thread(self.client.put_object, **kwargs)
        except ClientError as e:
            raise self._translate(e, key) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"failed to put '{key}': {e}") from e

        logger.debug(f"[S3] Put {self.bucket}/{key}")

    async def list_objects(self, prefix: str = "") -> List[ObjectInfo]:
        """List every object under prefix (recursive)."""
        def _list() -> List[ObjectInfo]:
            paginator = self.client.get_paginator('list_objects_v2')
            objects = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get('Contents', []):
                    objects.append(ObjectInfo(
                        key=item['Key'],
                        size=item.get('Size', 0),
                        last_modified=item.get('LastModified'),
                    ))
            return objects

        try:
            return await asyncio.to_thread(_list)
        except ClientError as e:
            raise self._translate(e, prefix) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"failed to list '{self.bucket}/{prefix}': {e}") from e

    async def remove_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.delete_object,
                Bucket=self.bucket,
                Key=key
            )
        except ClientError as e:
            raise self._translate(e, key) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"failed to remove '{key}': {e}") from e

        logger.debug(f"[S3] Removed {self.bucket}/{key}")

    async def object_exists(self, key: str) -> bool:
        """
        Check if an object exists.

        Returns:
            True if the object exists, False otherwise
        """
        try:
            await asyncio.to_thread(
                self.client.head_object,
                Bucket=self.bucket,
                Key=key
            )
            return True
        except ClientError as e:
            translated = self._translate(e, key)
            if isinstance(translated, ObjectNotFoundError):
                return False
            raise translated from e
