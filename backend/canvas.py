"""Canvas geometry and the in-memory image/tile types shared by the engine."""
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple

from config import settings
from palette import UNSET

TILE_SIZE = settings.tile_size

TileCoord = Tuple[int, int]


@dataclass(frozen=True)
class Anchor:
    tile_x: int
    tile_y: int
    pixel_x: int
    pixel_y: int

    def locate(self, x: int, y: int, tile_size: int = TILE_SIZE) -> Tuple[TileCoord, Tuple[int, int]]:
        """Remote (tile, pixel-in-tile) coordinates of image cell (x, y)"""
        gx = self.pixel_x + x
        gy = self.pixel_y + y
        tile = (self.tile_x + gx // tile_size, self.tile_y + gy // tile_size)
        return tile, (gx % tile_size, gy % tile_size)

    def tiles_for(self, width: int, height: int, tile_size: int = TILE_SIZE) -> List[TileCoord]:
        """Every remote tile intersecting a width x height image placed at this anchor"""
        end_x = self.tile_x + (self.pixel_x + width - 1) // tile_size
        end_y = self.tile_y + (self.pixel_y + height - 1) // tile_size
        return [
            (tx, ty)
            for tx in range(self.tile_x, end_x + 1)
            for ty in range(self.tile_y, end_y + 1)
        ]

    def as_list(self) -> List[int]:
        return [self.tile_x, self.tile_y, self.pixel_x, self.pixel_y]


@dataclass
class TemplateImage:
    """Palette-indexed image stored column-major: data[x][y]"""
    width: int
    height: int
    data: List[List[int]]

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Image dimensions must be positive")
        if len(self.data) != self.width or any(len(column) != self.height for column in self.data):
            raise ValueError("Image data does not match its dimensions")

    def get(self, x: int, y: int) -> int:
        return self.data[x][y]

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    @property
    def total_pixels(self) -> int:
        return sum(1 for column in self.data for value in column if value != UNSET)

    def cells(self) -> Iterator[Tuple[int, int, int]]:
        """Yield (x, y, value) rows first, left to right"""
        for y in range(self.height):
            for x in range(self.width):
                yield x, y, self.data[x][y]


@dataclass
class TileData:
    """Decoded remote tile: palette ids, row-major"""
    width: int
    height: int
    pixels: bytearray = field(default_factory=bytearray)

    def __post_init__(self):
        if not self.pixels:
            self.pixels = bytearray(self.width * self.height)

    def get(self, x: int, y: int) -> int:
        return self.pixels[y * self.width + x]

    def set(self, x: int, y: int, color_id: int):
        self.pixels[y * self.width + x] = color_id

    @classmethod
    def blank(cls, size: int = TILE_SIZE) -> "TileData":
        return cls(size, size)
