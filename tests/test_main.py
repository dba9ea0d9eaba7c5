import io

from fastapi import status
from PIL import Image

from conftest import create_test_image
from models import models as db_models


# --- App-level behaviour ---

def test_root_endpoint(client):
    response = client.get("/")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"message": "Real Estate Photo Enhancement API is running."}


def test_security_headers_present(client):
    response = client.get("/api/health/live")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "max-age=31536000" in response.headers["Strict-Transport-Security"]


def test_request_id_header_present(client):
    first = client.get("/api/health/live").headers["X-Request-ID"]
    second = client.get("/api/health/live").headers["X-Request-ID"]
    assert len(first) == 32
    assert first != second


def test_cors_preflight_options_request(client):
    response = client.options(
        "/api/images/upload",
        headers={
            "Origin": "http://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization",
        },
    )
    assert response.status_code == status.HTTP_200_OK
    assert "POST" in response.headers["access-control-allow-methods"]


# --- Uploads ---

def test_upload_valid_jpg(client, auth_headers, storage, db_session, test_user):
    data = create_test_image(120, 80)
    response = client.post(
        "/api/images/upload",
        files={"file": ("living room.jpg", data, "image/jpeg")},
        headers=auth_headers,
    )

    assert response.status_code == status.HTTP_201_CREATED, response.text
    body = response.json()
    assert body["original_name"] == "living_room.jpg"
    assert (body["width"], body["height"]) == (120, 80)
    assert body["mime_type"] == "image/jpeg"
    assert body["is_processed"] is False

    record = db_session.query(db_models.Image).one()
    assert record.storage_key.startswith(f"originals/{test_user.id}/")
    assert record.storage_key.endswith(".jpg")
    assert storage.get(record.storage_key) == data


def test_upload_valid_png_keeps_alpha_format(client, auth_headers):
    data = create_test_image(30, 20, color=(0, 0, 0, 0), fmt="PNG", mode="RGBA")
    response = client.post(
        "/api/images/upload",
        files={"file": ("plan.png", data, "image/png")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["mime_type"] == "image/png"


def test_upload_requires_authentication(client):
    response = client.post("/api/images/upload", files={"file": ("a.jpg", create_test_image(), "image/jpeg")})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_upload_text_content_is_rejected(client, auth_headers):
    response = client.post(
        "/api/images/upload",
        files={"file": ("fake.jpg", b"this is not an image", "image/jpeg")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


def test_upload_format_outside_allow_list(client, auth_headers):
    response = client.post(
        "/api/images/upload",
        files={"file": ("old.bmp", create_test_image(fmt="BMP"), "image/bmp")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


def test_upload_too_large(client, auth_headers, mocker):
    mocker.patch("routers.images.MAX_FILE_SIZE_BYTES", 100)
    response = client.post(
        "/api/images/upload",
        files={"file": ("big.jpg", create_test_image(), "image/jpeg")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


def test_upload_storage_failure(client, auth_headers, storage, mocker):
    from services.exceptions import StorageUnavailableError
    mocker.patch.object(storage, "put", side_effect=StorageUnavailableError("bucket offline"))
    response = client.post(
        "/api/images/upload",
        files={"file": ("a.jpg", create_test_image(), "image/jpeg")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


def test_upload_malicious_filename_path_traversal(client, auth_headers):
    response = client.post(
        "/api/images/upload",
        files={"file": ("../../etc/passwd.jpg", create_test_image(), "image/jpeg")},
        headers=auth_headers,
    )
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["original_name"] == "etc_passwd.jpg"


def test_upload_jpeg_with_exif_orientation(client, auth_headers):
    img = Image.new("RGB", (120, 80), "red")
    exif = img.getexif()
    exif[0x0112] = 6
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", exif=exif.tobytes())

    response = client.post(
        "/api/images/upload",
        files={"file": ("rotated.jpg", buffer.getvalue(), "image/jpeg")},
        headers=auth_headers,
    )

    assert response.status_code == status.HTTP_201_CREATED
    assert (response.json()["width"], response.json()["height"]) == (80, 120)


def test_get_image(client, auth_headers, stored_image):
    image = stored_image(create_test_image(), width=64, height=48)
    response = client.get(f"/api/images/{image.id}", headers=auth_headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["id"] == str(image.id)


def test_get_image_of_another_user_is_not_found(client, stored_image, db_session):
    from auth_utils import create_access_token
    image = stored_image(create_test_image())
    other = db_models.User(email="other@example.com", hashed_password="x")
    db_session.add(other)
    db_session.commit()
    token = create_access_token(data={"sub": other.email, "user_id": str(other.id)})

    response = client.get(f"/api/images/{image.id}", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == status.HTTP_404_NOT_FOUND
