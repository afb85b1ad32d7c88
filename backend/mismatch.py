from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from canvas import TILE_SIZE, Anchor, TemplateImage, TileCoord, TileData
from palette import CLEAR, UNSET, color_allowed


@dataclass(frozen=True)
class MismatchPixel:
    tile: TileCoord
    pixel: Tuple[int, int]
    local_x: int
    local_y: int
    color: int
    is_edge: bool


@dataclass(frozen=True)
class PaintModes:
    erase_mode: bool = False
    outline_mode: bool = False
    skip_painted_pixels: bool = False


NEIGHBOURS = ((0, -1), (0, 1), (-1, 0), (1, 0))


def is_edge(image: TemplateImage, x: int, y: int) -> bool:
    """True when any 4-neighbour is outside the image or unset"""
    for dx, dy in NEIGHBOURS:
        nx, ny = x + dx, y + dy
        if not image.in_bounds(nx, ny) or image.get(nx, ny) == UNSET:
            return True
    return False


def compute_mismatches(
    image: TemplateImage,
    anchor: Anchor,
    tiles: Dict[TileCoord, TileData],
    skip_stride: int = 1,
    color_filter: Optional[int] = None,
    modes: PaintModes = PaintModes(),
    extra_colors_bitmap: int = 0,
    tile_size: int = TILE_SIZE,
) -> List[MismatchPixel]:
    """Pixels where the live canvas differs from the template, row by row.

    Cells falling on a tile missing from `tiles` are skipped. Pure: identical
    inputs give identical output in identical order.
    """
    stride = max(1, skip_stride)
    out: List[MismatchPixel] = []

    for x, y, desired in image.cells():
        if (x + y) % stride != 0:
            continue
        if color_filter is not None and desired != color_filter:
            continue

        tile_coord, (px, py) = anchor.locate(x, y, tile_size)
        tile = tiles.get(tile_coord)
        if tile is None or px >= tile.width or py >= tile.height:
            continue
        current = tile.get(px, py)

        if modes.erase_mode and desired == UNSET:
            if current != UNSET:
                out.append(MismatchPixel(tile_coord, (px, py), x, y, UNSET, False))
            continue

        if desired == CLEAR:
            if current != UNSET:
                out.append(MismatchPixel(tile_coord, (px, py), x, y, UNSET, is_edge(image, x, y)))
            continue

        if desired > UNSET and color_allowed(desired, extra_colors_bitmap):
            if modes.skip_painted_pixels:
                needs_paint = current == UNSET
            else:
                needs_paint = current != desired
            if needs_paint:
                out.append(MismatchPixel(tile_coord, (px, py), x, y, desired, is_edge(image, x, y)))

    return out
