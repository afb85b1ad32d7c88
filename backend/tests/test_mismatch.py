from canvas import Anchor, TemplateImage, TileData
from mismatch import PaintModes, compute_mismatches, is_edge
from palette import CLEAR

SIZE = 4


def diagonal_image():
    # (0,0)=1 and (1,1)=2, other cells unset
    return TemplateImage(2, 2, [[1, 0], [0, 2]])


def tiles(*coords):
    return {coord: TileData.blank(SIZE) for coord in coords}


def cells(mismatches):
    return [(m.local_x, m.local_y, m.color) for m in mismatches]


def test_blank_canvas_needs_every_set_pixel():
    result = compute_mismatches(diagonal_image(), Anchor(0, 0, 0, 0), tiles((0, 0)), tile_size=SIZE)
    assert cells(result) == [(0, 0, 1), (1, 1, 2)]
    assert result[0].tile == (0, 0)
    assert result[1].pixel == (1, 1)


def test_matching_canvas_has_no_mismatches():
    canvas = tiles((0, 0))
    canvas[(0, 0)].set(0, 0, 1)
    canvas[(0, 0)].set(1, 1, 2)
    assert compute_mismatches(diagonal_image(), Anchor(0, 0, 0, 0), canvas, tile_size=SIZE) == []


def test_image_crossing_tile_boundary_uses_neighbouring_tile():
    image = TemplateImage(2, 1, [[3], [4]])
    result = compute_mismatches(image, Anchor(5, 7, 3, 2), tiles((5, 7), (6, 7)), tile_size=SIZE)
    assert [(m.tile, m.pixel, m.color) for m in result] == [((5, 7), (3, 2), 3), ((6, 7), (0, 2), 4)]


def test_missing_tile_is_skipped():
    image = TemplateImage(2, 1, [[3], [4]])
    result = compute_mismatches(image, Anchor(0, 0, 3, 0), tiles((0, 0)), tile_size=SIZE)
    assert cells(result) == [(0, 0, 3)]


def test_erase_mode_clears_pixels_outside_template():
    canvas = tiles((0, 0))
    canvas[(0, 0)].set(1, 0, 5)
    anchor = Anchor(0, 0, 0, 0)

    plain = compute_mismatches(diagonal_image(), anchor, canvas, tile_size=SIZE)
    assert (1, 0, 0) not in cells(plain)

    erased = compute_mismatches(diagonal_image(), anchor, canvas, modes=PaintModes(erase_mode=True), tile_size=SIZE)
    assert (1, 0, 0) in cells(erased)
    assert not [m for m in erased if m.color == 0][0].is_edge


def test_clear_cells_erase_painted_pixels():
    image = TemplateImage(1, 2, [[CLEAR, CLEAR]])
    canvas = tiles((0, 0))
    canvas[(0, 0)].set(0, 1, 9)
    result = compute_mismatches(image, Anchor(0, 0, 0, 0), canvas, tile_size=SIZE)
    assert cells(result) == [(0, 1, 0)]


def test_skip_painted_pixels_only_targets_unset_canvas():
    canvas = tiles((0, 0))
    canvas[(0, 0)].set(0, 0, 7)
    modes = PaintModes(skip_painted_pixels=True)
    result = compute_mismatches(diagonal_image(), Anchor(0, 0, 0, 0), canvas, modes=modes, tile_size=SIZE)
    assert cells(result) == [(1, 1, 2)]


def test_locked_colors_need_the_bitmap_bit():
    image = TemplateImage(2, 1, [[33], [1]])
    canvas = tiles((0, 0))
    assert cells(compute_mismatches(image, Anchor(0, 0, 0, 0), canvas, tile_size=SIZE)) == [(1, 0, 1)]
    unlocked = compute_mismatches(image, Anchor(0, 0, 0, 0), canvas, extra_colors_bitmap=0b10, tile_size=SIZE)
    assert cells(unlocked) == [(0, 0, 33), (1, 0, 1)]


def test_color_filter_and_stride():
    image = TemplateImage(2, 2, [[1, 2], [2, 1]])
    canvas = tiles((0, 0))
    anchor = Anchor(0, 0, 0, 0)
    assert cells(compute_mismatches(image, anchor, canvas, color_filter=2, tile_size=SIZE)) == [(1, 0, 2), (0, 1, 2)]
    assert cells(compute_mismatches(image, anchor, canvas, skip_stride=2, tile_size=SIZE)) == [(0, 0, 1), (1, 1, 1)]


def test_result_is_deterministic():
    image = TemplateImage(3, 3, [[1, 2, 3], [4, 5, 6], [7, 8, 9]])
    canvas = tiles((0, 0))
    first = compute_mismatches(image, Anchor(0, 0, 1, 1), canvas, tile_size=SIZE)
    second = compute_mismatches(image, Anchor(0, 0, 1, 1), canvas, tile_size=SIZE)
    assert first == second


def test_edge_detection():
    image = TemplateImage(3, 3, [[1, 1, 1], [1, 1, 1], [1, 1, 0]])
    assert is_edge(image, 0, 0)
    assert not is_edge(image, 1, 1)
    # neighbour (2, 2) is unset
    assert is_edge(image, 2, 1)
