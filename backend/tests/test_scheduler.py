import asyncio
import random

import pytest

from errors import RefreshTokenError
from mismatch import MismatchPixel
from scheduler import group_by_tile, order_pixels, plan_and_execute, wait_for_token
from tokens import TokenBroker


def pixel(x, y, color=1, tile=(0, 0), edge=False):
    return MismatchPixel(tile, (x, y), x, y, color, edge)


def coords(pixels):
    return [(p.local_x, p.local_y) for p in pixels]


GRID = [pixel(x, y) for y in range(3) for x in range(3)]


def test_top_to_bottom_is_stable_within_rows():
    shuffled = list(reversed(GRID))
    ordered = order_pixels(shuffled, 3, 3, "ttb")
    assert [p.local_y for p in ordered] == [0, 0, 0, 1, 1, 1, 2, 2, 2]
    assert coords(ordered)[:3] == [(2, 0), (1, 0), (0, 0)]


@pytest.mark.parametrize("direction, key", [
    ("btt", lambda p: -p.local_y),
    ("ltr", lambda p: p.local_x),
    ("rtl", lambda p: -p.local_x),
])
def test_axis_directions(direction, key):
    ordered = order_pixels(GRID, 3, 3, direction)
    keys = [key(p) for p in ordered]
    assert keys == sorted(keys)


def test_center_out_starts_nearest_the_center():
    ordered = order_pixels(GRID, 2, 2, "center_out")
    assert coords(ordered)[0] == (1, 1)
    assert coords(ordered)[-1] == (2, 2)


def test_random_order_is_a_permutation():
    ordered = order_pixels(GRID, 3, 3, "random", rng=random.Random(5))
    assert sorted(coords(ordered)) == sorted(coords(GRID))


def test_color_order_groups_by_first_seen_color():
    pixels = [pixel(0, 0, 4), pixel(1, 0, 2), pixel(2, 0, 4), pixel(0, 1, 2), pixel(1, 1, 9)]
    ordered = order_pixels(pixels, 3, 2, "ttb", "color")
    assert [p.color for p in ordered] == [4, 4, 2, 2, 9]
    assert coords(ordered) == [(0, 0), (2, 0), (1, 0), (0, 1), (1, 1)]


def test_outline_mode_keeps_edges_and_falls_back():
    pixels = [pixel(0, 0, edge=True), pixel(1, 1), pixel(2, 2, edge=True)]
    assert coords(order_pixels(pixels, 3, 3, outline_mode=True)) == [(0, 0), (2, 2)]
    interior = [pixel(1, 1), pixel(1, 2)]
    assert coords(order_pixels(interior, 3, 3, outline_mode=True)) == [(1, 1), (1, 2)]


def test_group_by_tile_preserves_order():
    pixels = [pixel(0, 0, tile=(1, 0)), pixel(1, 0, tile=(0, 0)), pixel(2, 0, tile=(1, 0))]
    groups = group_by_tile(pixels)
    assert list(groups) == [(1, 0), (0, 0)]
    assert coords(groups[(1, 0)]) == [(0, 0), (2, 0)]


class RecordingClient:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    async def paint_batch(self, tile, colors, coords, token, fingerprint=None, pawtect=None):
        self.calls.append((tile, list(colors), list(coords), token, fingerprint, pawtect))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise RefreshTokenError()
        return len(colors)


@pytest.mark.asyncio
async def test_plan_and_execute_uses_one_token_per_tile_group(clock):
    tokens = TokenBroker(clock=clock)
    tokens.supply_token("t1", fingerprint="fp", pawtect="paw")
    tokens.supply_token("t2")
    client = RecordingClient()
    pixels = [pixel(0, 0, 3, tile=(0, 0)), pixel(1, 0, 4, tile=(1, 0)), pixel(2, 0, 5, tile=(0, 0))]

    painted = await plan_and_execute(pixels, client, tokens, width=3, height=1, budget=10)

    assert painted == 3
    assert client.calls == [
        ((0, 0), [3, 5], [0, 0, 2, 0], "t1", "fp", "paw"),
        ((1, 0), [4], [1, 0], "t2", "fp", "paw"),
    ]


@pytest.mark.asyncio
async def test_plan_and_execute_respects_budget(clock):
    tokens = TokenBroker(clock=clock)
    tokens.supply_token("t1")
    client = RecordingClient()
    painted = await plan_and_execute(GRID, client, tokens, width=3, height=3, budget=4)
    assert painted == 4
    assert client.calls[0][2] == [0, 0, 1, 0, 2, 0, 0, 1]


@pytest.mark.asyncio
async def test_zero_budget_paints_nothing(clock):
    client = RecordingClient()
    assert await plan_and_execute(GRID, client, TokenBroker(clock=clock), width=3, height=3, budget=0) == 0
    assert client.calls == []


@pytest.mark.asyncio
async def test_rejected_token_is_invalidated_and_reports_progress(clock):
    tokens = TokenBroker(clock=clock)
    for value in ("t1", "t2", "t3"):
        tokens.supply_token(value)
    client = RecordingClient(fail_on=2)
    pixels = [pixel(0, 0, tile=(0, 0)), pixel(1, 0, tile=(1, 0))]

    with pytest.raises(RefreshTokenError) as info:
        await plan_and_execute(pixels, client, tokens, width=2, height=1, budget=5)

    assert info.value.painted == 1
    # t1 and t2 were consumed, then the oldest remaining token was dropped
    assert tokens.status()["queue_size"] == 0


@pytest.mark.asyncio
async def test_wait_for_token_returns_none_when_stopped(clock):
    tokens = TokenBroker(clock=clock)
    stop = asyncio.Event()
    waiter = asyncio.create_task(wait_for_token(tokens, "test", stop))
    await asyncio.sleep(0)
    assert tokens.token_needed
    stop.set()
    assert await asyncio.wait_for(waiter, 1) is None


@pytest.mark.asyncio
async def test_wait_for_token_receives_supplied_token(clock):
    tokens = TokenBroker(clock=clock)
    waiter = asyncio.create_task(wait_for_token(tokens, "test", asyncio.Event()))
    await asyncio.sleep(0)
    tokens.supply_token("late")
    assert await asyncio.wait_for(waiter, 1) == "late"
