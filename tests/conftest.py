# tests/conftest.py
import io
import os
import tempfile

# Configure the app for tests before anything imports config.py
os.environ["STORAGE_PROVIDER"] = "local"
os.environ["LOCAL_STORAGE_PATH"] = tempfile.mkdtemp(prefix="photo_app_storage_")
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("APP_ENV", "test")

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from auth_utils import create_access_token, hash_password
from config import LocalStorageConfig
from db.database import get_db
from dependencies import get_storage_service
from models import models as db_models
from models.models import Base
from rate_limiter import limiter
from services.storage_service import StorageService

limiter.enabled = False

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_test_image(width=64, height=48, color=(128, 128, 128), fmt="JPEG", mode="RGB") -> bytes:
    """Solid-colour image encoded in the given Pillow format."""
    if mode == "RGBA" and len(color) == 3:
        color = tuple(color) + (255,)
    img = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def create_noisy_image(width=64, height=48, seed=0, fmt="JPEG") -> bytes:
    rng = np.random.default_rng(seed)
    arr = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(arr, mode="RGB").save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    return create_test_image


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def storage(tmp_path):
    return StorageService(LocalStorageConfig(root=tmp_path / "storage", url_base="/static"))


@pytest.fixture
def test_user(db_session):
    user = db_models.User(email="agent@example.com", hashed_password=hash_password("Password123"))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user):
    token = create_access_token(data={"sub": test_user.email, "user_id": str(test_user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def client(db_session, storage):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_service] = lambda: storage

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def stored_image(db_session, storage, test_user):
    """Factory: puts image bytes into storage and records an Image row for test_user."""
    def _create(data: bytes, name: str = "house.jpg", width=None, height=None) -> db_models.Image:
        key = f"originals/{test_user.id}/{name}"
        url = storage.put(data, key, "image/jpeg")
        image = db_models.Image(
            user_id=test_user.id,
            original_name=name,
            storage_key=key,
            url=url,
            size=len(data),
            width=width,
            height=height,
            mime_type="image/jpeg",
        )
        db_session.add(image)
        db_session.commit()
        db_session.refresh(image)
        return image
    return _create
