import random
import re

from change_monitor.colors import MAX_ATTEMPTS, CategoryColorMap, color_for


class ScriptedRng:
    def __init__(self, values):
        self.values = list(values)

    def randrange(self, stop):
        return self.values.pop(0)


def test_colours_are_six_hex_digits():
    colors = CategoryColorMap(seed=0)
    assert re.fullmatch(r"[0-9a-f]{6}", colors.color_for("school"))


def test_label_keeps_its_colour():
    colors = CategoryColorMap(seed=0)
    first = colors.color_for("school")
    colors.color_for("hospital")
    assert colors.color_for("school") == first
    assert len(colors) == 2
    assert "hospital" in colors


def test_seeded_maps_agree():
    labels = ["school", "hospital", "depot", "school"]
    a = CategoryColorMap(seed=42)
    b = CategoryColorMap(seed=42)
    assert [a.color_for(x) for x in labels] == [b.color_for(x) for x in labels]
    assert a.as_dict() == b.as_dict()


def test_color_for_does_not_modify_existing():
    existing = {"school": "ff0000"}
    color_for("hospital", existing, random.Random(1))
    assert existing == {"school": "ff0000"}
    assert color_for("school", existing, random.Random(1)) == "ff0000"


def test_colour_in_use_is_redrawn():
    existing = {"school": "000005"}
    assert color_for("hospital", existing, ScriptedRng([5, 5, 7])) == "000007"


def test_collision_accepted_after_max_attempts():
    existing = {"school": "000005"}
    assert color_for("hospital", existing, ScriptedRng([5] * MAX_ATTEMPTS)) == "000005"
