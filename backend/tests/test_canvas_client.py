import io
import json
import threading

import httpx
import pytest
from PIL import Image

import canvas_client
from canvas import Anchor, TileData
from canvas_client import CanvasClient, decode_tile
from config import settings
from errors import AuthError, NetworkError, RefreshTokenError, SuspensionError, UnexpectedResponseError
from palette import rgb_for_color_id

PROFILE = {"id": 7, "name": "alice", "charges": {"count": 12.5, "max": 40}, "droplets": 900,
           "extraColorsBitmap": 3, "level": 4}


def tile_png(pixels: dict, size: int = 4) -> bytes:
    image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    for (x, y), rgba in pixels.items():
        image.putpixel((x, y), rgba)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_client(handler, sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return CanvasClient(
        label="test",
        base_url="https://canvas.test",
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
        tile_size=4,
    )


def test_decode_tile_maps_opaque_palette_colors():
    white = rgb_for_color_id(5)
    content = tile_png({(1, 0): white + (255,), (2, 0): white + (128,), (3, 3): (1, 2, 3, 255)})
    tile = decode_tile(content)
    assert (tile.width, tile.height) == (4, 4)
    assert tile.get(1, 0) == 5
    assert tile.get(2, 0) == 0
    assert tile.get(3, 3) == 0
    assert tile.get(0, 0) == 0


@pytest.mark.asyncio
async def test_login_sends_cookie_and_parses_profile():
    seen = {}

    def handler(request):
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, json=PROFILE)

    async with make_client(handler) as client:
        info = await client.login({"j": "abc"})

    assert seen["cookie"] == "j=abc"
    assert (info.id, info.name, info.droplets) == (7, "alice", 900)
    assert info.charges.count == 12.5
    assert info.extra_colors_bitmap == 3
    assert client.context == "(alice#7) [test]"


@pytest.mark.asyncio
@pytest.mark.parametrize("response, error", [
    (httpx.Response(200, text="<!DOCTYPE html><html>challenge</html>"), NetworkError),
    (httpx.Response(429, text="error code: Error 1015"), NetworkError),
    (httpx.Response(502, text="502 Bad Gateway"), NetworkError),
    (httpx.Response(401, json={"error": "Unauthorized"}), NetworkError),
    (httpx.Response(500, json={"error": "session expired"}), AuthError),
    (httpx.Response(200, json={"status": "ok"}), UnexpectedResponseError),
    (httpx.Response(200, text="garbage"), UnexpectedResponseError),
])
async def test_login_classifies_failures(response, error):
    async with make_client(lambda request: response) as client:
        with pytest.raises(error):
            await client.login({"j": "abc"})


@pytest.mark.asyncio
async def test_transport_failure_is_a_network_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    async with make_client(handler) as client:
        with pytest.raises(NetworkError):
            await client.load_user_info()


@pytest.mark.asyncio
async def test_load_tiles_treats_404_as_blank_and_drops_failures():
    content = tile_png({(0, 0): rgb_for_color_id(2) + (255,)})

    def handler(request):
        path = request.url.path
        if path.endswith("/tiles/1/1.png"):
            return httpx.Response(200, content=content)
        if path.endswith("/tiles/2/1.png"):
            return httpx.Response(404)
        return httpx.Response(500)

    async with make_client(handler) as client:
        # a 6x2 image at pixel 2 of tile (1,1) spans tiles x=1..2 and y=1
        tiles = await client.load_tiles(Anchor(1, 1, 2, 0), 6, 2)
    assert set(tiles) == {(1, 1), (2, 1)}
    assert tiles[(1, 1)].get(0, 0) == 2
    assert tiles[(2, 1)].pixels == bytearray(16)

    async with make_client(handler) as client:
        tiles = await client.load_tiles(Anchor(1, 1, 0, 0), 1, 5)
    assert set(tiles) == {(1, 1)}


@pytest.mark.asyncio
async def test_load_tiles_decodes_off_the_event_loop_thread(monkeypatch):
    threads = []

    def recording_decode(content):
        threads.append(threading.get_ident())
        return decode_tile(content)

    monkeypatch.setattr(canvas_client, "decode_tile", recording_decode)
    content = tile_png({(0, 0): rgb_for_color_id(2) + (255,)})

    async with make_client(lambda request: httpx.Response(200, content=content)) as client:
        tiles = await client.load_tiles(Anchor(0, 0, 0, 0), 1, 1)

    assert tiles[(0, 0)].get(0, 0) == 2
    assert threads and threading.get_ident() not in threads


@pytest.mark.asyncio
async def test_paint_batch_success_updates_cached_tile():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"painted": 2})

    async with make_client(handler) as client:
        client.tiles[(3, 4)] = TileData.blank(4)
        painted = await client.paint_batch((3, 4), [5, 6], [0, 1, 2, 3], "tok", fingerprint="fp", pawtect="paw")

    assert painted == 2
    assert seen["path"] == "/s0/pixel/3/4"
    assert seen["body"] == {"colors": [5, 6], "coords": [0, 1, 2, 3], "t": "tok", "fp": "fp"}
    assert seen["headers"]["x-pawtect-token"] == "paw"
    assert seen["headers"]["content-type"].startswith("text/plain")
    assert client.tiles[(3, 4)].get(0, 1) == 5
    assert client.tiles[(3, 4)].get(2, 3) == 6


@pytest.mark.asyncio
async def test_paint_batch_without_fingerprint_omits_it():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["headers"] = request.headers
        return httpx.Response(200, json={"painted": 1})

    async with make_client(handler) as client:
        await client.paint_batch((0, 0), [1], [0, 0], "tok")
    assert "fp" not in seen["body"]
    assert "x-pawtect-token" not in seen["headers"]


@pytest.mark.asyncio
@pytest.mark.parametrize("response, error", [
    (httpx.Response(403, json={"error": "refresh"}), RefreshTokenError),
    (httpx.Response(403, json={"error": "Unauthorized"}), RefreshTokenError),
    (httpx.Response(401, json={"error": "Unauthorized"}), NetworkError),
    (httpx.Response(429, json={"error": "slow down"}), NetworkError),
    (httpx.Response(400, json={"error": "Error 1015"}), NetworkError),
    (httpx.Response(400, json={"error": "bad request"}), UnexpectedResponseError),
])
async def test_paint_batch_classifies_failures(response, error):
    async with make_client(lambda request: response) as client:
        with pytest.raises(error):
            await client.paint_batch((0, 0), [1], [0, 0], "tok")


@pytest.mark.asyncio
async def test_paint_batch_suspension_carries_duration():
    response = httpx.Response(451, json={"suspension": True, "durationMs": 60000})
    async with make_client(lambda request: response) as client:
        with pytest.raises(SuspensionError) as info:
            await client.paint_batch((0, 0), [1], [0, 0], "tok")
    assert info.value.duration_ms == 60000


@pytest.mark.asyncio
async def test_paint_batch_suspension_without_duration_uses_default_bench():
    response = httpx.Response(451, json={"suspension": True})
    async with make_client(lambda request: response) as client:
        with pytest.raises(SuspensionError) as info:
            await client.paint_batch((0, 0), [1], [0, 0], "tok")
    assert info.value.duration_ms == settings.suspension_default_seconds * 1000
    assert info.value.duration_ms > 0


@pytest.mark.asyncio
async def test_paint_batch_server_error_backs_off_and_paints_nothing():
    sleeps = []
    async with make_client(lambda request: httpx.Response(503, text="down"), sleeps) as client:
        assert await client.paint_batch((0, 0), [1], [0, 0], "tok") == 0
    assert sleeps == [40]


@pytest.mark.asyncio
async def test_buy_product():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    async with make_client(handler) as client:
        assert await client.buy_product(80, 2)
    assert seen["body"] == {"product": {"id": 80, "amount": 2}}

    async with make_client(lambda request: httpx.Response(400, json={"error": "nope"})) as client:
        with pytest.raises(UnexpectedResponseError):
            await client.buy_product(80, 2)
