# services/scene_classifier.py
import io
import logging

import numpy as np
from PIL import Image

from services.presets import SCENE_PRESET_SUGGESTIONS

logger = logging.getLogger(__name__)

TWILIGHT_MAX_BRIGHTNESS = 75
INTERIOR_MAX_BRIGHTNESS = 128


def average_brightness(img: Image.Image) -> float:
    """Mean of the per-channel means, alpha included when present."""
    arr = np.asarray(img, dtype=np.float32)
    if arr.ndim == 2:
        return float(arr.mean())
    return float(arr.reshape(-1, arr.shape[-1]).mean(axis=0).mean())


def classify_scene(image_bytes: bytes) -> str:
    """
    Brightness heuristic: 'twilight', 'interior' or 'exterior'.
    Returns 'default' when the image cannot be read.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.mode not in ("L", "RGB", "RGBA"):
                keep_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
                img = img.convert("RGBA" if keep_alpha else "RGB")
            brightness = average_brightness(img)
    except Exception as e:
        logger.warning(f"Scene detection failed, using default: {e}")
        return "default"

    if brightness < TWILIGHT_MAX_BRIGHTNESS:
        scene = "twilight"
    elif brightness < INTERIOR_MAX_BRIGHTNESS:
        scene = "interior"
    else:
        scene = "exterior"
    logger.debug(f"Scene classified as {scene} (average brightness {brightness:.1f})")
    return scene


def suggested_preset(scene: str) -> str:
    return SCENE_PRESET_SUGGESTIONS.get(scene, SCENE_PRESET_SUGGESTIONS["default"])
