"""Share codes: compact text export of a template image.

Layout before base64url (no padding):

    'W' 'T' 0x01 | varint width | varint height | varint run count | runs

Each run is one value byte (255 stands for the clear sentinel -1) followed by a
varint repeat count. Cells are flattened row by row (y outer, x inner).
"""
import base64
from typing import Iterator, List, Sequence, Tuple

from canvas import TemplateImage
from palette import CLEAR, sanitize_value

MAGIC = b"WT\x01"
MAX_DIMENSION = 3000


class ShareCodeError(ValueError):
    pass


def _write_varint(out: bytearray, value: int):
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)


def _read_varint(buf: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    value = 0
    while True:
        if pos >= len(buf):
            raise ShareCodeError("truncated varint")
        byte = buf[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7


def _encode_value(value: int) -> int:
    if value == CLEAR:
        return 255
    if not 0 <= value <= 255:
        raise ShareCodeError(f"invalid pixel value {value}")
    return value


def _runs(values: Sequence[int]) -> Iterator[Tuple[int, int]]:
    if not values:
        return
    current = values[0]
    count = 1
    for value in values[1:]:
        if value == current:
            count += 1
        else:
            yield current, count
            current = value
            count = 1
    yield current, count


def ensure_x_major(width: int, height: int, data: Sequence[Sequence[int]]) -> List[List[int]]:
    """Return data as data[x][y]; row-major input (height rows of width) is transposed"""
    if len(data) == width and all(len(column) == height for column in data):
        return [list(column) for column in data]
    if len(data) == height and all(len(row) == width for row in data):
        return [[data[y][x] for y in range(height)] for x in range(width)]
    raise ShareCodeError("size mismatch")


def encode_share_code(width: int, height: int, data: Sequence[Sequence[int]]) -> str:
    if width <= 0 or height <= 0:
        raise ShareCodeError("zero dimension")
    matrix = ensure_x_major(width, height, data)
    flat = [_encode_value(int(matrix[x][y])) for y in range(height) for x in range(width)]

    runs = list(_runs(flat))
    out = bytearray(MAGIC)
    _write_varint(out, width)
    _write_varint(out, height)
    _write_varint(out, len(runs))
    for value, count in runs:
        out.append(value)
        _write_varint(out, count)

    return base64.urlsafe_b64encode(bytes(out)).decode("ascii").rstrip("=")


def decode_share_code(code: str) -> TemplateImage:
    code = code.strip()
    try:
        buf = base64.urlsafe_b64decode(code + "=" * (-len(code) % 4))
    except (ValueError, TypeError) as e:
        raise ShareCodeError(f"invalid base64: {e}") from e

    if buf[:3] != MAGIC:
        raise ShareCodeError("bad magic/version")

    pos = 3
    width, pos = _read_varint(buf, pos)
    height, pos = _read_varint(buf, pos)
    if width == 0 or height == 0:
        raise ShareCodeError("zero dimension")
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise ShareCodeError(f"image larger than {MAX_DIMENSION}px")
    total = width * height
    run_count, pos = _read_varint(buf, pos)

    flat: List[int] = []
    for _ in range(run_count):
        if pos >= len(buf):
            raise ShareCodeError("truncated run")
        raw = buf[pos]
        pos += 1
        count, pos = _read_varint(buf, pos)
        value = CLEAR if raw == 255 else raw
        if len(flat) + count > total:
            raise ShareCodeError("size mismatch")
        flat.extend([sanitize_value(value)] * count)

    if len(flat) != total:
        raise ShareCodeError("size mismatch")

    data = [[flat[y * width + x] for y in range(height)] for x in range(width)]
    return TemplateImage(width, height, data)
