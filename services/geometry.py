# services/geometry.py
import math


def round_half_up(value: float) -> int:
    """Rounds .5 away from zero for positive values (2.5 -> 3), unlike round()."""
    return int(math.floor(value + 0.5))
