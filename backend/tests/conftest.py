import asyncio
import sys
from pathlib import Path
from typing import Dict, List

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

import pytest

from canvas import TILE_SIZE, TileData
from charges import ChargePredictor
from engine import TemplateOptions, TemplateRunner
from models import AccountInfo, PainterSettings
from registry import Account, AccountRegistry
from settings_store import SettingsStore
from tokens import TokenBroker


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRemote:
    """In-memory stand-in for the remote canvas service"""

    def __init__(self):
        self.tiles: Dict[tuple, TileData] = {}
        self.profiles: Dict[str, dict] = {}
        self.login_errors: Dict[str, Exception] = {}
        self.paint_errors: Dict[int, List[Exception]] = {}
        self.purchase_errors: Dict[int, List[Exception]] = {}
        self.logins: List[int] = []
        self.batches: List[dict] = []
        self.purchases: List[tuple] = []
        self.closed = 0

    def add_account(self, account_id: int, name: str, count: float = 100, max_count: int = 100,
                    droplets: int = 0, bitmap: int = 0) -> Account:
        cookie = f"cookie-{account_id}"
        self.profiles[cookie] = {
            "id": account_id,
            "name": name,
            "charges": {"count": count, "max": max_count},
            "droplets": droplets,
            "extraColorsBitmap": bitmap,
        }
        return Account(account_id, name, {"j": cookie})

    def blank_tile(self, coord=(0, 0)) -> TileData:
        tile = TileData.blank(TILE_SIZE)
        self.tiles[coord] = tile
        return tile

    def painted_pixels(self) -> int:
        return sum(len(b["colors"]) for b in self.batches if b["ok"])

    def factory(self, **kwargs):
        return FakeCanvasClient(self, **kwargs)


class FakeCanvasClient:
    def __init__(self, remote: FakeRemote, label: str = "", sleep=None):
        self.remote = remote
        self.label = label
        self.sleep = sleep
        self.cookie = None
        self.user_info = None
        self.tiles = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        self.remote.closed += 1

    async def login(self, cookies):
        self.cookie = cookies["j"]
        error = self.remote.login_errors.get(self.cookie)
        if error is not None:
            raise error
        info = await self.load_user_info()
        self.remote.logins.append(info.id)
        return info

    async def load_user_info(self):
        self.user_info = AccountInfo.model_validate(self.remote.profiles[self.cookie])
        return self.user_info

    async def load_tiles(self, anchor, width, height):
        self.tiles = {
            coord: TileData(tile.width, tile.height, bytearray(tile.pixels))
            for coord, tile in self.remote.tiles.items()
            if coord in anchor.tiles_for(width, height)
        }
        return self.tiles

    async def paint_batch(self, tile, colors, coords, token, fingerprint=None, pawtect=None):
        account_id = self.user_info.id
        batch = {"account": account_id, "tile": tile, "colors": list(colors), "coords": list(coords),
                 "token": token, "fp": fingerprint, "pawtect": pawtect, "ok": False}
        self.remote.batches.append(batch)
        errors = self.remote.paint_errors.get(account_id)
        if errors:
            raise errors.pop(0)
        for i, color in enumerate(colors):
            x, y = coords[i * 2], coords[i * 2 + 1]
            self.remote.tiles[tile].set(x, y, color)
            self.tiles[tile].set(x, y, color)
        batch["ok"] = True
        return len(colors)

    async def buy_product(self, product_id, amount):
        account_id = self.user_info.id
        self.remote.purchases.append((account_id, product_id, amount))
        errors = self.remote.purchase_errors.get(account_id)
        if errors:
            raise errors.pop(0)
        return True


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def painter_settings():
    return PainterSettings(account_cooldown=0, purchase_cooldown=0, charge_threshold=0)


@pytest.fixture()
def make_runner(remote, clock, painter_settings):
    """Build a runner wired to the fake remote with fresh shared services"""
    def _make(image, anchor, accounts, options=None, tokens=None, settings_store=None):
        registry = AccountRegistry(clock)
        for account in accounts:
            registry.add(account)
        runner = TemplateRunner(
            "t1", "test", image, anchor, [a.id for a in accounts], options or TemplateOptions(),
            accounts=registry,
            settings_store=settings_store or SettingsStore(painter_settings),
            tokens=tokens or TokenBroker(clock=clock),
            charges=ChargePredictor(clock=clock),
            client_factory=remote.factory,
            clock=clock,
        )
        runner.refresh_delay = 0
        return runner
    return _make
