import io
import json
import uuid

import pytest
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from conftest import create_noisy_image, create_test_image
from models import models as db_models
from schemas.processing_schemas import AutoProcessRequest
from schemas.settings_schemas import ManualAdjustments, Settings, WatermarkSettingsUpdate
from services.exceptions import DependencyFailureError, InvalidInputError
from services.presets import SqlPresetStore
from services.processing_service import ProcessingService, processed_name
from services.watermark import WatermarkService


@pytest.fixture
def service(db_session, storage):
    return ProcessingService(db_session, storage, max_workers=2)


def image_count(db_session):
    return db_session.query(db_models.Image).count()


def test_processed_name():
    assert processed_name("kitchen.HEIC", "jpeg") == "kitchen-processed.jpg"
    assert processed_name("plan.final.png", "webp") == "plan.final-processed.webp"


def test_auto_with_builtin_preset(service, storage, stored_image, test_user):
    source = stored_image(create_noisy_image(1000, 800), name="house.jpg")

    result, record = service.process_auto(source, AutoProcessRequest(preset="professional"), test_user.id)

    assert result.success
    assert result.format == "jpeg"
    assert (result.width, result.height) == (1000, 800)
    assert result.applied_settings["sharpness"] == 1.4
    assert record.parent_image_id == source.id
    assert record.is_processed is True
    assert record.processing_type == "auto"
    assert record.original_name == "house-processed.jpg"
    assert json.loads(record.processing_settings_json)["noiseReduction"] == 0.7
    with Image.open(io.BytesIO(storage.get(record.storage_key))) as img:
        assert img.size == (1000, 800)


def test_request_overrides_win_over_preset(service, stored_image, test_user):
    source = stored_image(create_test_image(80, 60))
    request = AutoProcessRequest.model_validate({"preset": "bright", "brightness": 1.0, "output": {"format": "png"}})

    result, record = service.process_auto(source, request, test_user.id)

    assert result.applied_settings["brightness"] == 1.0
    assert result.applied_settings["contrast"] == 1.15
    assert result.content_type == "image/png"
    assert record.storage_key.endswith(".png")


def test_unknown_preset_falls_back_to_defaults(service, stored_image, test_user):
    source = stored_image(create_test_image(80, 60))
    result, _ = service.process_auto(source, AutoProcessRequest(preset="no-such-preset"), test_user.id)
    assert result.success
    assert result.applied_settings["brightness"] == 1.05


def test_preview_stores_nothing(service, storage, stored_image, test_user, db_session, tmp_path):
    source = stored_image(create_test_image(80, 60))

    result, record = service.process_auto(source, AutoProcessRequest(), test_user.id, preview=True)

    assert result.success
    assert result.data[:3] == b"\xff\xd8\xff"
    assert record is None
    assert image_count(db_session) == 1
    assert not (tmp_path / "storage" / "processed").exists()


def test_manual_crop(service, stored_image, test_user):
    source = stored_image(create_test_image(200, 200))
    adjustments = ManualAdjustments.model_validate({
        "cropEnabled": True,
        "crop": {"left": 0, "top": 0, "width": 100, "height": 50},
        "color": {"brightness": 10},
    })

    result, record = service.process_manual(source, adjustments, test_user.id)

    assert result.success
    assert (record.width, record.height) == (100, 50)
    assert record.processing_type == "manual"


def test_failed_run_creates_no_record(service, stored_image, test_user, db_session):
    source = stored_image(b"this is not an image", name="broken.jpg")

    result, record = service.process_auto(source, AutoProcessRequest(), test_user.id)

    assert not result.success
    assert result.error_type == "unsupported_image"
    assert record is None
    assert image_count(db_session) == 1


def test_record_failure_discards_output_blob(service, stored_image, test_user, mocker, tmp_path):
    source = stored_image(create_test_image(60, 40))
    mocker.patch("services.processing_service.crud.create_image", side_effect=SQLAlchemyError("db down"))
    rollback = mocker.spy(service.db, "rollback")

    with pytest.raises(DependencyFailureError, match="Could not record processed image"):
        service.process_auto(source, AutoProcessRequest(), test_user.id)

    rollback.assert_called_once()
    assert list((tmp_path / "storage" / "processed").rglob("*.jpg")) == []


def test_failed_usage_increment_does_not_stop_the_run(stored_image, test_user, db_session, storage, mocker):
    SqlPresetStore(db_session).save(test_user.id, "Sunny", Settings(brightness=1.2))
    source = stored_image(create_test_image(60, 40))
    mocker.patch("services.presets.crud.increment_preset_usage", side_effect=SQLAlchemyError("write failed"))
    rollback = mocker.spy(db_session, "rollback")
    notices = []
    service = ProcessingService(db_session, storage, notify=notices.append)

    result, record = service.process_auto(source, AutoProcessRequest(preset="Sunny"), test_user.id)

    assert result.success
    assert result.applied_settings["brightness"] == 1.2
    assert record is not None
    rollback.assert_called_once()
    assert [n.kind for n in notices] == ["preset_usage_not_recorded"]


def test_missing_watermark_blob_degrades_to_notice(service, storage, stored_image, test_user):
    watermarks = WatermarkService(service.db, storage)
    mark_buffer = io.BytesIO()
    Image.new("RGBA", (20, 10), (255, 255, 255, 255)).save(mark_buffer, format="PNG")
    mark = watermarks.save(test_user.id, mark_buffer.getvalue(), "logo.png", WatermarkSettingsUpdate(position="center"))
    storage.delete(mark.storage_key)
    source = stored_image(create_test_image(80, 60))

    request = AutoProcessRequest.model_validate({"watermark": {"enabled": True}})
    result, record = service.process_auto(source, request, test_user.id)

    assert result.success
    assert record is not None
    assert [n.kind for n in result.notices] == ["watermark_skipped"]


def test_watermark_is_applied(service, storage, stored_image, test_user):
    watermarks = WatermarkService(service.db, storage)
    mark_buffer = io.BytesIO()
    Image.new("RGBA", (20, 10), (255, 255, 255, 255)).save(mark_buffer, format="PNG")
    watermarks.save(test_user.id, mark_buffer.getvalue(), "logo.png",
                    WatermarkSettingsUpdate(position="topLeft", opacity=1.0, size=50, padding=0))
    source = stored_image(create_test_image(100, 100, color=(0, 0, 0), fmt="PNG"))

    adjustments = ManualAdjustments.model_validate({"watermarkEnabled": True, "output": {"format": "png"}})
    result, _ = service.process_manual(source, adjustments, test_user.id, preview=True)

    assert result.notices == []
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.getpixel((5, 5)) == (255, 255, 255)
        assert img.getpixel((90, 90)) == (0, 0, 0)


# --- Batch ---

def test_batch_isolates_failures(service, stored_image, test_user, db_session):
    SqlPresetStore(db_session).save(test_user.id, "Sunny", Settings(brightness=1.2))
    first = stored_image(create_test_image(60, 40), name="a.jpg")
    second = stored_image(create_noisy_image(60, 40), name="b.jpg")
    broken = stored_image(b"corrupt", name="c.jpg")
    missing_id = uuid.uuid4()

    results = service.process_batch(
        [first.id, second.id, missing_id, broken.id], "auto", {"preset": "Sunny"}, test_user.id
    )

    assert sorted(item["original_id"] for item in results["success"]) == sorted([first.id, second.id])
    failed = {item["id"]: item for item in results["failed"]}
    assert failed[missing_id]["error_type"] == "not_found"
    assert failed[broken.id]["error_type"] == "unsupported_image"
    # Counted once for each image that was run
    preset = db_session.query(db_models.Preset).filter_by(name="Sunny").one()
    assert preset.usage_count == 3
    assert image_count(db_session) == 5


def test_batch_ignores_duplicate_ids(service, stored_image, test_user):
    source = stored_image(create_test_image(60, 40))
    results = service.process_batch([source.id, source.id], "manual", {}, test_user.id)
    assert len(results["success"]) == 1
    assert results["failed"] == []


def test_batch_only_touches_own_images(service, stored_image, test_user, db_session):
    source = stored_image(create_test_image(60, 40))
    other = db_models.User(email="other@example.com", hashed_password="x")
    db_session.add(other)
    db_session.commit()

    results = service.process_batch([source.id], "auto", {}, other.id)

    assert results["success"] == []
    assert results["failed"][0]["error_type"] == "not_found"


def test_batch_record_failure_discards_blob(service, stored_image, test_user, mocker, tmp_path):
    source = stored_image(create_test_image(60, 40))
    mocker.patch("services.processing_service.crud.create_image", side_effect=SQLAlchemyError("db down"))

    results = service.process_batch([source.id], "auto", {}, test_user.id)

    assert results["success"] == []
    assert results["failed"][0]["error_type"] == "dependency_failure"
    assert list((tmp_path / "storage" / "processed").rglob("*.jpg")) == []


def test_batch_too_large(service, test_user):
    with pytest.raises(InvalidInputError):
        service.process_batch([uuid.uuid4() for _ in range(51)], "auto", {}, test_user.id)


@pytest.mark.parametrize("mode, options", [
    ("auto", {"brightness": "very bright"}),
    ("manual", {"color": {"brightness": 500}}),
    ("magic", {}),
])
def test_batch_rejects_bad_options(service, test_user, mode, options):
    with pytest.raises(InvalidInputError):
        service.process_batch([uuid.uuid4()], mode, options, test_user.id)
