"""Canvas palette: the 63 paintable colors and the two sentinel values.

Color ids 1..31 are free for every account. Ids 32..63 are premium colors that
an account may only use when the matching bit of its extra-colors bitmap is set.
"""
from typing import Dict, List, Optional, Sequence, Set, Tuple

UNSET = 0
CLEAR = -1
FREE_COLOR_LIMIT = 32

PALETTE: Dict[int, Tuple[int, int, int]] = {
    1: (0, 0, 0),
    2: (60, 60, 60),
    3: (120, 120, 120),
    4: (210, 210, 210),
    5: (255, 255, 255),
    6: (96, 0, 24),
    7: (237, 28, 36),
    8: (255, 127, 39),
    9: (246, 170, 9),
    10: (249, 221, 59),
    11: (255, 250, 188),
    12: (14, 185, 104),
    13: (19, 230, 123),
    14: (135, 255, 94),
    15: (12, 129, 110),
    16: (16, 174, 166),
    17: (19, 225, 190),
    18: (40, 80, 158),
    19: (64, 147, 228),
    20: (96, 247, 242),
    21: (107, 80, 246),
    22: (153, 177, 251),
    23: (120, 12, 153),
    24: (170, 56, 185),
    25: (224, 159, 249),
    26: (203, 0, 122),
    27: (236, 31, 128),
    28: (243, 141, 169),
    29: (104, 70, 52),
    30: (149, 104, 42),
    31: (248, 178, 119),
    32: (170, 170, 170),
    33: (165, 14, 30),
    34: (250, 128, 114),
    35: (228, 92, 26),
    36: (214, 181, 148),
    37: (156, 132, 49),
    38: (197, 173, 49),
    39: (232, 212, 95),
    40: (74, 107, 58),
    41: (90, 148, 74),
    42: (132, 197, 115),
    43: (15, 121, 159),
    44: (187, 250, 242),
    45: (125, 199, 255),
    46: (77, 49, 184),
    47: (74, 66, 132),
    48: (122, 113, 196),
    49: (181, 174, 241),
    50: (219, 164, 99),
    51: (209, 128, 81),
    52: (255, 197, 165),
    53: (155, 82, 73),
    54: (209, 128, 120),
    55: (250, 182, 164),
    56: (123, 99, 82),
    57: (156, 132, 107),
    58: (51, 57, 65),
    59: (109, 117, 141),
    60: (179, 185, 209),
    61: (109, 100, 63),
    62: (148, 140, 107),
    63: (205, 197, 158),
}

COLOR_IDS: Dict[Tuple[int, int, int], int] = {rgb: color_id for color_id, rgb in PALETTE.items()}
VALID_VALUES: Set[int] = {CLEAR, UNSET, *PALETTE.keys()}


def color_id_for_rgb(r: int, g: int, b: int) -> int:
    """Palette id for an RGB triple, UNSET when the color is not on the palette"""
    return COLOR_IDS.get((r, g, b), UNSET)


def rgb_for_color_id(color_id: int) -> Optional[Tuple[int, int, int]]:
    return PALETTE.get(color_id)


def color_allowed(color_id: int, extra_colors_bitmap: int) -> bool:
    """Whether an account owning extra_colors_bitmap may paint color_id"""
    if color_id not in PALETTE:
        return False
    if color_id < FREE_COLOR_LIMIT:
        return True
    return bool((extra_colors_bitmap >> (color_id - FREE_COLOR_LIMIT)) & 1)


def sanitize_value(value) -> int:
    """Coerce a matrix cell to a valid palette value; anything unknown becomes UNSET"""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return UNSET
    return value if value in VALID_VALUES else UNSET


def sanitize_matrix(data: Sequence[Sequence[int]]) -> List[List[int]]:
    return [[sanitize_value(v) for v in column] for column in data]


def colors_in_matrix(data: Sequence[Sequence[int]]) -> List[int]:
    """Distinct real colors used by a matrix, in ascending id order"""
    found = set()
    for column in data:
        for value in column:
            if value in PALETTE:
                found.add(value)
    return sorted(found)


def palette_entries() -> List[dict]:
    return [
        {"id": color_id, "rgb": list(rgb), "premium": color_id >= FREE_COLOR_LIMIT}
        for color_id, rgb in PALETTE.items()
    ]
