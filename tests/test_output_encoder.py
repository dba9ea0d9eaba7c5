import io

import pytest
from PIL import Image

from services.exceptions import UnsupportedFormatError
from services.output_encoder import encode, normalize_format, png_compress_level


@pytest.fixture
def rgb_image():
    return Image.new("RGB", (40, 30), (200, 120, 40))


@pytest.fixture
def rgba_image():
    return Image.new("RGBA", (40, 30), (200, 120, 40, 100))


def test_jpeg_output(rgb_image):
    encoded = encode(rgb_image, "jpeg", 85)
    assert encoded.data[:3] == b"\xff\xd8\xff"
    assert encoded.content_type == "image/jpeg"
    assert encoded.extension == "jpg"


def test_jpeg_drops_alpha(rgba_image):
    encoded = encode(rgba_image, "jpeg", 90)
    with Image.open(io.BytesIO(encoded.data)) as img:
        assert img.mode == "RGB"
        assert img.size == (40, 30)


def test_jpg_alias_is_jpeg(rgb_image):
    encoded = encode(rgb_image, "JPG", 80)
    assert encoded.format == "jpeg"


def test_png_keeps_alpha(rgba_image):
    encoded = encode(rgba_image, "png", 85)
    assert encoded.data[:8] == b"\x89PNG\r\n\x1a\n"
    with Image.open(io.BytesIO(encoded.data)) as img:
        assert img.mode == "RGBA"
        assert img.getpixel((0, 0))[3] == 100


def test_webp_output(rgb_image):
    encoded = encode(rgb_image, "webp", 75)
    assert encoded.data[:4] == b"RIFF"
    assert encoded.data[8:12] == b"WEBP"
    assert encoded.content_type == "image/webp"


@pytest.mark.parametrize("fixture_name", ["rgb_image", "rgba_image"])
def test_tiff_output(request, fixture_name):
    img = request.getfixturevalue(fixture_name)
    encoded = encode(img, "tiff", 85)
    assert encoded.content_type == "image/tiff"
    with Image.open(io.BytesIO(encoded.data)) as decoded:
        assert decoded.format == "TIFF"
        assert decoded.mode == img.mode


@pytest.mark.parametrize("quality, level", [(1, 0), (50, 5), (85, 8), (100, 9)])
def test_png_compress_level(quality, level):
    assert png_compress_level(quality) == level


def test_unknown_format_raises(rgb_image):
    with pytest.raises(UnsupportedFormatError):
        encode(rgb_image, "bmp", 85)


@pytest.mark.parametrize("quality", [0, 101, -5])
def test_quality_out_of_range_raises(rgb_image, quality):
    with pytest.raises(UnsupportedFormatError):
        encode(rgb_image, "jpeg", quality)


def test_normalize_format():
    assert normalize_format(" TIF ") == "tiff"
    with pytest.raises(UnsupportedFormatError):
        normalize_format("gif")
