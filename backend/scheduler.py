"""Ordering and submission of paint work for one account turn."""
import asyncio
import logging
import random
from typing import Dict, List, Optional, Sequence

from canvas import TileCoord
from errors import RefreshTokenError
from mismatch import MismatchPixel
from tokens import TokenBroker

logger = logging.getLogger(__name__)


def order_pixels(
    mismatches: Sequence[MismatchPixel],
    width: int,
    height: int,
    direction: str = "ttb",
    drawing_order: str = "linear",
    outline_mode: bool = False,
    rng: random.Random = None,
) -> List[MismatchPixel]:
    pixels = list(mismatches)

    if outline_mode:
        edges = [p for p in pixels if p.is_edge]
        if edges:
            pixels = edges

    if direction == "btt":
        pixels.sort(key=lambda p: -p.local_y)
    elif direction == "ltr":
        pixels.sort(key=lambda p: p.local_x)
    elif direction == "rtl":
        pixels.sort(key=lambda p: -p.local_x)
    elif direction == "center_out":
        cx, cy = width / 2, height / 2
        pixels.sort(key=lambda p: (p.local_x - cx) ** 2 + (p.local_y - cy) ** 2)
    elif direction == "random":
        (rng or random).shuffle(pixels)
    else:
        pixels.sort(key=lambda p: p.local_y)

    if drawing_order == "color":
        buckets: Dict[int, List[MismatchPixel]] = {}
        for p in pixels:
            buckets.setdefault(p.color, []).append(p)
        pixels = [p for bucket in buckets.values() for p in bucket]

    return pixels


def group_by_tile(pixels: Sequence[MismatchPixel]) -> Dict[TileCoord, List[MismatchPixel]]:
    groups: Dict[TileCoord, List[MismatchPixel]] = {}
    for p in pixels:
        groups.setdefault(p.tile, []).append(p)
    return groups


async def wait_for_token(tokens: TokenBroker, label: str, stop_event: Optional[asyncio.Event] = None) -> Optional[str]:
    """Wait for a paint token; None when stop_event fires first"""
    future = tokens.request_token(label)
    if future.done() or stop_event is None:
        return await future

    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({future, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
    if future.done() and not future.cancelled():
        return future.result()
    return None


async def plan_and_execute(
    mismatches: Sequence[MismatchPixel],
    client,
    tokens: TokenBroker,
    *,
    width: int,
    height: int,
    direction: str = "ttb",
    drawing_order: str = "linear",
    outline_mode: bool = False,
    budget: int = 0,
    label: str = "",
    stop_event: Optional[asyncio.Event] = None,
    rng: random.Random = None,
) -> int:
    """Paint up to `budget` pixels, one tile group at a time.

    A rejected token raises RefreshTokenError with `painted` set to the pixels
    already painted in this call; the caller decides whether to retry.
    """
    budget = max(0, int(budget))
    if budget == 0 or not mismatches:
        return 0

    ordered = order_pixels(mismatches, width, height, direction, drawing_order, outline_mode, rng)
    todo = ordered[:budget]
    logger.info(f"[{label}] Painting {len(todo)} of {len(mismatches)} pending pixels.")

    painted = 0
    for tile, group in group_by_tile(todo).items():
        if stop_event is not None and stop_event.is_set():
            break

        token = await wait_for_token(tokens, label, stop_event)
        if token is None:
            break

        colors = [p.color for p in group]
        coords = [c for p in group for c in p.pixel]
        try:
            painted += await client.paint_batch(
                tile, colors, coords, token,
                fingerprint=tokens.fingerprint, pawtect=tokens.pawtect,
            )
        except RefreshTokenError as e:
            tokens.invalidate()
            e.painted = painted
            raise

    return painted
