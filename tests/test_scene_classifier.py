import io

import pytest
from PIL import Image

from conftest import create_test_image
from services.scene_classifier import classify_scene, suggested_preset


@pytest.mark.parametrize("gray, scene", [
    (30, "twilight"),
    (100, "interior"),
    (200, "exterior"),
])
def test_brightness_bands(gray, scene):
    assert classify_scene(create_test_image(color=(gray, gray, gray))) == scene


def test_png_with_alpha_is_classified():
    data = create_test_image(color=(200, 200, 200, 255), fmt="PNG", mode="RGBA")
    assert classify_scene(data) == "exterior"


def test_grayscale_alpha_is_counted():
    buffer = io.BytesIO()
    Image.new("LA", (20, 20), (60, 255)).save(buffer, format="PNG")
    # (60 * 3 + 255) / 4 is interior; the gray level alone would be twilight
    assert classify_scene(buffer.getvalue()) == "interior"


def test_unreadable_image_is_default():
    assert classify_scene(b"garbage") == "default"


@pytest.mark.parametrize("scene, preset", [
    ("interior", "interior"),
    ("exterior", "exterior"),
    ("twilight", "twilight"),
    ("default", "natural"),
    ("unknown", "natural"),
])
def test_suggested_preset(scene, preset):
    assert suggested_preset(scene) == preset
