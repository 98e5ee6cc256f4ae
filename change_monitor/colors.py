# change_monitor/colors.py
# Per-run display colours for point categories.

import random
from typing import Mapping, Optional

MAX_ATTEMPTS = 16


def random_color(rng: random.Random) -> str:
    return f"{rng.randrange(0x1000000):06x}"


def color_for(label: str, existing: Mapping[str, str], rng: random.Random) -> str:
    """Colour for `label`: the existing one if known, else a fresh random one.

    A fresh colour avoids those already in use for up to MAX_ATTEMPTS draws,
    after which a collision is accepted. `existing` is not modified.
    """
    if label in existing:
        return existing[label]
    used = set(existing.values())
    color = random_color(rng)
    for _ in range(MAX_ATTEMPTS - 1):
        if color not in used:
            break
        color = random_color(rng)
    return color


class CategoryColorMap:
    """Label -> 6-hex-digit colour, stable for the lifetime of one run."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = random.Random(seed)
        self._colors = {}

    def color_for(self, label: str) -> str:
        if label not in self._colors:
            self._colors[label] = color_for(label, self._colors, self._rng)
        return self._colors[label]

    def as_dict(self):
        return dict(self._colors)

    def __contains__(self, label):
        return label in self._colors

    def __len__(self):
        return len(self._colors)
