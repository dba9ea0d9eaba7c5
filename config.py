import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv

# config.py

load_dotenv()

# IMPORTANT: This is a default secret key for development purposes ONLY.
# Production deployments (APP_ENV=production) refuse to start with it.
SECRET_KEY_PLACEHOLDER = "your-super-secret-key-please-change-in-production"
SECRET_KEY: str = os.getenv("SECRET_KEY", SECRET_KEY_PLACEHOLDER)

ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

APP_ENV: str = os.getenv("APP_ENV", "development")

# Sentry Configuration
SENTRY_DSN: str = os.getenv("SENTRY_DSN", "your-sentry-dsn-goes-here") # Placeholder DSN

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./photo_app.db")

# --- Storage ---
# One of 'local', 'r2', 'cloudinary'. Resolved once by load_storage_config().
STORAGE_PROVIDER: str = os.getenv("STORAGE_PROVIDER", "local").lower()

LOCAL_STORAGE_PATH: str = os.getenv("LOCAL_STORAGE_PATH", "local_storage")
LOCAL_URL_BASE: str = os.getenv("LOCAL_URL_BASE", "/static")

CLOUDFLARE_ACCOUNT_ID: str = os.getenv("CLOUDFLARE_ACCOUNT_ID", "")
CLOUDFLARE_R2_ACCESS_KEY_ID: str = os.getenv("CLOUDFLARE_R2_ACCESS_KEY_ID", "")
CLOUDFLARE_R2_SECRET_ACCESS_KEY: str = os.getenv("CLOUDFLARE_R2_SECRET_ACCESS_KEY", "")
CLOUDFLARE_R2_BUCKET: str = os.getenv("CLOUDFLARE_R2_BUCKET", "realestate-imagepro")
CLOUDFLARE_R2_PUBLIC_URL: str = os.getenv("CLOUDFLARE_R2_PUBLIC_URL", "")

CLOUDINARY_CLOUD_NAME: str = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY: str = os.getenv("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET: str = os.getenv("CLOUDINARY_API_SECRET", "")
CLOUDINARY_FOLDER: str = os.getenv("CLOUDINARY_FOLDER", "realestate-imagepro")

# --- Processing ---
DEFAULT_OUTPUT_FORMAT: str = "jpeg"
DEFAULT_QUALITY: int = int(os.getenv("DEFAULT_QUALITY", "85"))
MAX_BATCH_SIZE: int = int(os.getenv("MAX_BATCH_SIZE", "50"))
MAX_CONCURRENT_PROCESSING: int = int(os.getenv("MAX_CONCURRENT_PROCESSING", "4"))
MAX_UPLOAD_SIZE_MB: int = int(os.getenv("MAX_UPLOAD_SIZE_MB", "25"))
MAX_WATERMARK_SIZE_MB: int = int(os.getenv("MAX_WATERMARK_SIZE_MB", "5"))

# Decoder allow-list. 'raw' covers camera formats decoded through rawpy.
ALLOWED_INPUT_FORMATS: List[str] = [
    fmt.strip().lower()
    for fmt in os.getenv("ALLOWED_INPUT_FORMATS", "jpeg,png,heif,raw,webp,tiff").split(",")
    if fmt.strip()
]

# Watermark defaults, applied when a user uploads a watermark without settings.
WATERMARK_DEFAULT_POSITION: str = "bottomRight"
WATERMARK_DEFAULT_OPACITY: float = 0.7
WATERMARK_DEFAULT_SIZE: float = 30
WATERMARK_DEFAULT_PADDING: int = 20


@dataclass(frozen=True)
class LocalStorageConfig:
    root: Path
    url_base: str
    provider: str = "local"


@dataclass(frozen=True)
class R2StorageConfig:
    account_id: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    public_url: Optional[str] = None
    provider: str = "r2"

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass(frozen=True)
class CloudinaryStorageConfig:
    cloud_name: str
    api_key: str
    api_secret: str
    folder: str
    provider: str = "cloudinary"


StorageConfig = Union[LocalStorageConfig, R2StorageConfig, CloudinaryStorageConfig]


def load_storage_config() -> StorageConfig:
    """
    Builds the storage configuration for the provider named by STORAGE_PROVIDER.
    Called once at startup; the result is injected into StorageService.
    """
    if STORAGE_PROVIDER == "local":
        return LocalStorageConfig(root=Path(LOCAL_STORAGE_PATH), url_base=LOCAL_URL_BASE)
    if STORAGE_PROVIDER == "r2":
        return R2StorageConfig(
            account_id=CLOUDFLARE_ACCOUNT_ID,
            access_key_id=CLOUDFLARE_R2_ACCESS_KEY_ID,
            secret_access_key=CLOUDFLARE_R2_SECRET_ACCESS_KEY,
            bucket=CLOUDFLARE_R2_BUCKET,
            public_url=CLOUDFLARE_R2_PUBLIC_URL or None,
        )
    if STORAGE_PROVIDER == "cloudinary":
        return CloudinaryStorageConfig(
            cloud_name=CLOUDINARY_CLOUD_NAME,
            api_key=CLOUDINARY_API_KEY,
            api_secret=CLOUDINARY_API_SECRET,
            folder=CLOUDINARY_FOLDER,
        )
    raise ValueError(f"Invalid STORAGE_PROVIDER: '{STORAGE_PROVIDER}'. Must be 'local', 'r2' or 'cloudinary'.")


def validate_configuration():
    """
    Validates that the selected storage provider has its credentials and that
    production deployments do not run with placeholder secrets.
    Raises ValueError listing every problem found.
    """
    required_by_provider = {
        "local": [],
        "r2": [
            "CLOUDFLARE_ACCOUNT_ID",
            "CLOUDFLARE_R2_ACCESS_KEY_ID",
            "CLOUDFLARE_R2_SECRET_ACCESS_KEY",
            "CLOUDFLARE_R2_BUCKET",
        ],
        "cloudinary": ["CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET"],
    }
    problematic_vars = []

    if STORAGE_PROVIDER not in required_by_provider:
        problematic_vars.append(
            f"STORAGE_PROVIDER (is '{STORAGE_PROVIDER}', must be one of {sorted(required_by_provider)})"
        )
    else:
        for var_name in required_by_provider[STORAGE_PROVIDER]:
            if not globals().get(var_name):
                problematic_vars.append(f"{var_name} (required when STORAGE_PROVIDER={STORAGE_PROVIDER})")

    if APP_ENV == "production" and SECRET_KEY == SECRET_KEY_PLACEHOLDER:
        problematic_vars.append(
            f"SECRET_KEY (is set to a default placeholder value: '{SECRET_KEY_PLACEHOLDER}' and must be changed)"
        )

    if not 1 <= DEFAULT_QUALITY <= 100:
        problematic_vars.append(f"DEFAULT_QUALITY (is {DEFAULT_QUALITY}, must be between 1 and 100)")

    if problematic_vars:
        raise ValueError(
            "Configuration problems found:\n - " + "\n - ".join(problematic_vars)
        )

validate_configuration()
