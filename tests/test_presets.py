import uuid
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from models import models as db_models
from schemas.settings_schemas import OutputSettings, Settings, WatermarkOptions, merge_settings
from services.exceptions import DependencyFailureError
from services.presets import (
    AUTO_DEFAULTS,
    BUILTIN_PRESETS,
    PresetResolver,
    SqlPresetStore,
    format_preset_name,
    list_presets,
)

# --- merge_settings ---

def test_later_layers_win_for_fields_they_set():
    merged = merge_settings(
        Settings(brightness=1.0, contrast=1.0, sharpness=1.0),
        Settings(brightness=1.2, contrast=1.3),
        Settings(brightness=1.5),
    )
    assert merged.brightness == 1.5
    assert merged.contrast == 1.3
    assert merged.sharpness == 1.0

def test_unset_override_fields_do_not_clear_preset_values():
    merged = merge_settings(AUTO_DEFAULTS, BUILTIN_PRESETS["hdr"], Settings())
    assert merged.shadows == 15
    assert merged.highlights == -15

def test_nested_objects_merge_field_by_field():
    merged = merge_settings(
        Settings(output=OutputSettings(format="jpeg", quality=85), watermark=WatermarkOptions(enabled=False, opacity=0.7)),
        None,
        Settings(output=OutputSettings(format="png"), watermark=WatermarkOptions(enabled=True)),
    )
    assert merged.output.format == "png"
    assert merged.output.quality == 85
    assert merged.watermark.enabled is True
    assert merged.watermark.opacity == 0.7

def test_merge_does_not_mutate_defaults():
    merge_settings(AUTO_DEFAULTS, Settings(brightness=2.0))
    assert AUTO_DEFAULTS.brightness == 1.05

# --- PresetResolver with a stub store ---

def make_preset(name="Listing", settings_json='{"brightness": 1.3, "sharpness": 0.9}'):
    return db_models.Preset(id=uuid.uuid4(), name=name, settings_json=settings_json, usage_count=0)

def test_builtin_preset_is_not_counted():
    store = Mock()
    resolved = PresetResolver(store).resolve("bright", uuid.uuid4())
    assert resolved == BUILTIN_PRESETS["bright"]
    store.find_by_user_and_name_or_id.assert_not_called()
    store.increment_usage.assert_not_called()

def test_user_preset_is_counted_once():
    preset = make_preset()
    store = Mock()
    store.find_by_user_and_name_or_id.return_value = preset
    resolved = PresetResolver(store).resolve("Listing", uuid.uuid4())
    assert resolved.brightness == 1.3
    assert resolved.sharpness == 0.9
    store.increment_usage.assert_called_once_with(preset.id)

def test_unknown_preset_resolves_to_none():
    store = Mock()
    store.find_by_user_and_name_or_id.return_value = None
    assert PresetResolver(store).resolve("nope", uuid.uuid4()) is None
    store.increment_usage.assert_not_called()

def test_no_preset_requested():
    store = Mock()
    assert PresetResolver(store).resolve(None, uuid.uuid4()) is None
    assert PresetResolver(store).resolve("", uuid.uuid4()) is None
    store.find_by_user_and_name_or_id.assert_not_called()

def test_failed_usage_increment_is_a_notice():
    notices = []
    store = Mock()
    store.find_by_user_and_name_or_id.return_value = make_preset()
    store.increment_usage.side_effect = SQLAlchemyError("write failed")
    resolved = PresetResolver(store, notify=notices.append).resolve("Listing", uuid.uuid4())
    assert resolved.brightness == 1.3
    assert [n.kind for n in notices] == ["preset_usage_not_recorded"]

def test_lookup_failure_is_a_dependency_failure(mocker, db_session):
    mocker.patch("services.presets.crud.get_preset_by_name_or_id", side_effect=SQLAlchemyError("db down"))
    with pytest.raises(DependencyFailureError):
        PresetResolver(SqlPresetStore(db_session)).resolve("Listing", uuid.uuid4())

def test_format_preset_name():
    assert format_preset_name("hdr") == "HDR Effect"
    assert format_preset_name("custom") == "Custom"

# --- SqlPresetStore against the test database ---

def test_saved_preset_resolves_by_name_and_id(db_session, test_user):
    store = SqlPresetStore(db_session)
    preset = store.save(test_user.id, "Sunny", Settings(brightness=1.2, saturation=1.1), "For sunny days")
    resolver = PresetResolver(store)

    by_name = resolver.resolve("Sunny", test_user.id)
    by_id = resolver.resolve(str(preset.id), test_user.id)

    assert by_name.brightness == 1.2
    assert by_id.saturation == 1.1
    db_session.refresh(preset)
    assert preset.usage_count == 2

def test_saving_same_name_replaces_settings(db_session, test_user):
    store = SqlPresetStore(db_session)
    first = store.save(test_user.id, "Sunny", Settings(brightness=1.2))
    second = store.save(test_user.id, "Sunny", Settings(brightness=1.4))
    assert first.id == second.id
    assert PresetResolver(store).resolve("Sunny", test_user.id).brightness == 1.4

def test_presets_are_scoped_to_their_owner(db_session, test_user):
    store = SqlPresetStore(db_session)
    store.save(test_user.id, "Sunny", Settings(brightness=1.2))
    assert PresetResolver(store).resolve("Sunny", uuid.uuid4()) is None

def test_list_presets_includes_builtins_and_user_presets(db_session, test_user):
    SqlPresetStore(db_session).save(test_user.id, "Sunny", Settings(brightness=1.2))
    presets = list_presets(db_session, test_user.id)
    ids = [p["id"] for p in presets]
    assert ids[:len(BUILTIN_PRESETS)] == list(BUILTIN_PRESETS)
    assert presets[-1]["name"] == "Sunny"
    assert presets[-1]["is_default"] is False
    assert presets[-1]["settings"] == {"brightness": 1.2}
