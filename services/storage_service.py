import io
import logging
from pathlib import Path
from typing import Optional

import boto3
import cloudinary
import cloudinary.uploader
import cloudinary.utils
import requests
from botocore.exceptions import BotoCoreError, ClientError
from cloudinary.exceptions import Error as CloudinaryError

from config import CloudinaryStorageConfig, LocalStorageConfig, R2StorageConfig, StorageConfig
from services.exceptions import BlobNotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

CLOUDINARY_TIMEOUT_SECONDS = 30


class StorageService:
    """
    Blob store used for originals, processed outputs and watermarks.
    Operates in one of three modes, chosen by the StorageConfig it is built with:
    - 'local': files under a directory on disk, served from LOCAL_URL_BASE. For development.
    - 'r2': a Cloudflare R2 bucket through its S3-compatible API.
    - 'cloudinary': Cloudinary, through its Python SDK.

    Keys are opaque paths such as ``processed/<uuid>.jpg``. Instances are safe to
    share between worker threads.
    """

    def __init__(self, storage_config: StorageConfig):
        self.config = storage_config
        self.mode = storage_config.provider

        logger.info(f"Initializing StorageService in '{self.mode}' mode.")

        if self.mode == "local":
            self._init_local(storage_config)
        elif self.mode == "r2":
            self._init_r2(storage_config)
        elif self.mode == "cloudinary":
            self._init_cloudinary(storage_config)
        else:
            raise ValueError(f"Invalid storage provider: '{self.mode}'. Must be 'local', 'r2' or 'cloudinary'.")

    def _init_local(self, cfg: LocalStorageConfig):
        self.root = Path(cfg.root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local storage initialized at: {self.root}")

    def _init_r2(self, cfg: R2StorageConfig):
        self.bucket_name = cfg.bucket
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=cfg.endpoint_url,
            aws_access_key_id=cfg.access_key_id,
            aws_secret_access_key=cfg.secret_access_key,
            region_name="auto",
        )
        logger.info(f"R2 client configured for bucket: {self.bucket_name}")

    def _init_cloudinary(self, cfg: CloudinaryStorageConfig):
        cloudinary.config(
            cloud_name=cfg.cloud_name,
            api_key=cfg.api_key,
            api_secret=cfg.api_secret,
            secure=True,
        )
        # Downloads read the delivery URL directly.
        self.http = requests.Session()
        logger.info(f"Cloudinary storage configured for cloud '{cfg.cloud_name}', folder '{cfg.folder}'")

    # --- Public API ---

    def get(self, key: str) -> bytes:
        """Returns the blob's bytes. Raises BlobNotFoundError or StorageUnavailableError."""
        if self.mode == "local":
            return self._get_local(key)
        if self.mode == "r2":
            return self._get_r2(key)
        return self._get_cloudinary(key)

    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        """Stores the bytes under key and returns the URL the blob is reachable at."""
        if self.mode == "local":
            return self._put_local(data, key)
        if self.mode == "r2":
            return self._put_r2(data, key, content_type)
        return self._put_cloudinary(data, key)

    def delete(self, key: str) -> None:
        """Deletes the blob. Deleting a missing key is not an error."""
        if self.mode == "local":
            self._delete_local(key)
        elif self.mode == "r2":
            self._delete_r2(key)
        else:
            self._delete_cloudinary(key)

    def url_for(self, key: str) -> str:
        if self.mode == "local":
            return f"{self.config.url_base.rstrip('/')}/{key}"
        if self.mode == "r2":
            return self._url_r2(key)
        return self._url_cloudinary(key)

    # --- Local Mode Implementations ---

    def _local_path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise BlobNotFoundError(f"Invalid storage key: {key}")
        return path

    def _get_local(self, key: str) -> bytes:
        path = self._local_path(key)
        if not path.is_file():
            raise BlobNotFoundError(f"File not found locally: {key}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageUnavailableError(f"Could not read local file {key}: {e}") from e

    def _put_local(self, data: bytes, key: str) -> str:
        path = self._local_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageUnavailableError(f"Could not write local file {key}: {e}") from e
        logger.info(f"Saved file locally to: {path}")
        return self.url_for(key)

    def _delete_local(self, key: str) -> None:
        path = self._local_path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Could not delete local file {key}: {e}") from e
        logger.info(f"Deleted local file: {path}")

    # --- R2 Mode Implementations ---

    def _get_r2(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BlobNotFoundError(f"File not found in R2: {key}") from e
            raise StorageUnavailableError(f"R2 download failed: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"R2 download failed: {e}") from e

    def _put_r2(self, data: bytes, key: str, content_type: Optional[str]) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"R2 upload failed: {e}") from e
        logger.info(f"Uploaded {key} to R2 bucket {self.bucket_name}")
        return self.url_for(key)

    def _delete_r2(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"R2 delete failed: {e}") from e
        logger.info(f"Deleted {key} from R2 bucket {self.bucket_name}")

    def _url_r2(self, key: str, expiration_seconds: int = 3600) -> str:
        if self.config.public_url:
            return f"{self.config.public_url.rstrip('/')}/{key}"
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expiration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"Could not generate presigned R2 URL: {e}") from e

    # --- Cloudinary Mode Implementations ---

    def _public_id(self, key: str) -> str:
        # Cloudinary appends the detected format itself, so the extension is dropped.
        stem = key.rsplit(".", 1)[0] if "." in key.rsplit("/", 1)[-1] else key
        return f"{self.config.folder}/{stem}" if self.config.folder else stem

    def _url_cloudinary(self, key: str) -> str:
        url, _ = cloudinary.utils.cloudinary_url(
            self._public_id(key), resource_type="image", secure=True, force_version=False
        )
        return url

    def _get_cloudinary(self, key: str) -> bytes:
        url = self.url_for(key)
        try:
            response = self.http.get(url, timeout=CLOUDINARY_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            raise StorageUnavailableError(f"Cloudinary download failed: {e}") from e
        if response.status_code == 404:
            raise BlobNotFoundError(f"File not found in Cloudinary: {key}")
        if not response.ok:
            raise StorageUnavailableError(f"Cloudinary download failed with status {response.status_code}")
        return response.content

    def _put_cloudinary(self, data: bytes, key: str) -> str:
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(data),
                public_id=self._public_id(key),
                resource_type="image",
                overwrite=True,
            )
        except CloudinaryError as e:
            raise StorageUnavailableError(f"Cloudinary upload failed: {e}") from e
        logger.info(f"Uploaded {key} to Cloudinary as {result.get('public_id')}")
        return result.get("secure_url") or self.url_for(key)

    def _delete_cloudinary(self, key: str) -> None:
        try:
            result = cloudinary.uploader.destroy(self._public_id(key), resource_type="image")
        except CloudinaryError as e:
            raise StorageUnavailableError(f"Cloudinary destroy failed: {e}") from e
        logger.info(f"Cloudinary destroy for {key}: {result.get('result')}")
