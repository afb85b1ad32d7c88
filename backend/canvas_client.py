import asyncio
import io
import json
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
from PIL import Image

from canvas import Anchor, TileCoord, TileData
from config import settings
from errors import AuthError, NetworkError, RefreshTokenError, SuspensionError, UnexpectedResponseError
from models import AccountInfo
from palette import COLOR_IDS, UNSET

logger = logging.getLogger(__name__)

PRODUCT_MAX_CHARGE = 70
PRODUCT_CHARGES = 80
DROPLETS_PER_PRODUCT = 500
CHARGES_PER_PRODUCT = 30

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
)


def decode_tile(content: bytes) -> TileData:
    """Decode a tile PNG into palette ids; anything not fully opaque is UNSET"""
    with Image.open(io.BytesIO(content)) as image:
        rgba = image.convert("RGBA")
    width, height = rgba.size
    raw = rgba.tobytes()
    pixels = bytearray(width * height)
    for i, alpha in enumerate(raw[3::4]):
        if alpha == 255:
            offset = i * 4
            pixels[i] = COLOR_IDS.get((raw[offset], raw[offset + 1], raw[offset + 2]), UNSET)
    return TileData(width, height, pixels)


class CanvasClient:
    """Authenticated session against the remote canvas for one account.

    Created per attempt. `login` must succeed before tiles are painted; tiles
    loaded by `load_tiles` are kept in memory and updated in place after every
    successful paint batch.
    """

    def __init__(
        self,
        label: str = "",
        base_url: Optional[str] = None,
        proxy: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        tile_size: Optional[int] = None,
    ):
        self.label = label
        self.sleep = sleep
        self.tile_size = tile_size or settings.tile_size
        self.referer = settings.canvas_referer
        self.user_info: Optional[AccountInfo] = None
        self.tiles: Dict[TileCoord, TileData] = {}

        client_args = {
            "base_url": base_url or settings.canvas_api_url,
            "timeout": timeout or settings.request_timeout_seconds,
            "headers": {"User-Agent": USER_AGENT},
        }
        proxy = proxy or settings.proxy_url
        if transport is not None:
            client_args["transport"] = transport
        elif proxy:
            client_args["proxy"] = proxy
        self.http = httpx.AsyncClient(**client_args)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    @property
    def context(self) -> str:
        if self.user_info is None:
            return f"[{self.label}]"
        return f"({self.user_info.name}#{self.user_info.id}) [{self.label}]"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"Request to {url} failed: {e!r}") from e

    @staticmethod
    def _json_body(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {"error": response.text[:150]}
        return data if isinstance(data, dict) else {"error": str(data)[:150]}

    async def login(self, cookies: Dict[str, str]) -> AccountInfo:
        self.http.cookies = httpx.Cookies(cookies)
        return await self.load_user_info()

    async def load_user_info(self) -> AccountInfo:
        response = await self._request("GET", "/me")
        text = response.text

        if text.strip().startswith("<!DOCTYPE html>"):
            raise NetworkError("Cloudflare interruption detected.")

        try:
            data = response.json()
        except ValueError:
            if "Error 1015" in text:
                raise NetworkError("(1015) Rate-limited.")
            if "502" in text and "gateway" in text.lower():
                raise NetworkError("(502) Bad Gateway. The server is temporarily unavailable.")
            raise UnexpectedResponseError(f'Failed to parse server response: "{text[:150]}..."')

        if not isinstance(data, dict):
            raise UnexpectedResponseError(f"Unexpected response from /me: {text[:150]}")

        error = data.get("error")
        if error == "Unauthorized":
            raise NetworkError("(401) Unauthorized. The cookie may be invalid or the current IP/proxy is rate-limited.")
        if error:
            raise AuthError(f'(500) Failed to authenticate: "{error}". The cookie is likely invalid or expired.')

        if data.get("id") is not None and data.get("name") is not None:
            self.user_info = AccountInfo.model_validate(data)
            return self.user_info

        raise UnexpectedResponseError(f"Unexpected response from /me: {text[:150]}")

    async def _load_tile(self, tx: int, ty: int) -> Optional[TileData]:
        try:
            response = await self._request(
                "GET", f"/files/s0/tiles/{tx}/{ty}.png", params={"t": int(time.time() * 1000)}
            )
        except NetworkError as e:
            logger.warning(f"{self.context} Tile {tx},{ty} unavailable: {e}")
            return None

        if response.status_code == 404:
            # nothing has been painted on this tile yet
            return TileData.blank(self.tile_size)
        if response.status_code != 200:
            logger.warning(f"{self.context} Tile {tx},{ty} returned {response.status_code}")
            return None

        try:
            return await asyncio.to_thread(decode_tile, response.content)
        except (OSError, ValueError) as e:
            logger.warning(f"{self.context} Tile {tx},{ty} could not be decoded: {e}")
            return None

    async def load_tiles(self, anchor: Anchor, width: int, height: int) -> Dict[TileCoord, TileData]:
        """Fetch every tile under the template; failed tiles are left out"""
        coords = anchor.tiles_for(width, height, self.tile_size)
        results = await asyncio.gather(*(self._load_tile(tx, ty) for tx, ty in coords))
        self.tiles = {coord: tile for coord, tile in zip(coords, results) if tile is not None}
        return self.tiles

    def _paint_headers(self, pawtect: Optional[str]) -> dict:
        headers = {
            "Accept": "*/*",
            "Content-Type": "text/plain;charset=UTF-8",
            "Referer": self.referer,
        }
        if pawtect:
            headers["x-pawtect-token"] = pawtect
        return headers

    async def paint_batch(
        self,
        tile: TileCoord,
        colors: List[int],
        coords: List[int],
        token: str,
        fingerprint: Optional[str] = None,
        pawtect: Optional[str] = None,
    ) -> int:
        """Paint up to len(colors) pixels inside one tile; coords are flattened [x0, y0, x1, y1, ...]"""
        if not colors:
            return 0

        tx, ty = tile
        body = {"colors": colors, "coords": coords, "t": token}
        if fingerprint:
            body["fp"] = fingerprint

        response = await self._request(
            "POST", f"/s0/pixel/{tx}/{ty}", content=json.dumps(body), headers=self._paint_headers(pawtect)
        )
        data = self._json_body(response)
        status = response.status_code
        error = data.get("error")

        if data.get("painted") == len(colors):
            cached = self.tiles.get(tile)
            if cached is not None:
                for i, color in enumerate(colors):
                    cached.set(coords[i * 2], coords[i * 2 + 1], color)
            logger.info(f"{self.context} Painted {len(colors)} px at {tx},{ty}.")
            return len(colors)

        if status == 401 and error == "Unauthorized":
            raise NetworkError("(401) Unauthorized during paint. The cookie may be invalid or the current IP/proxy is rate-limited.")
        if status == 403 and error in ("refresh", "Unauthorized"):
            raise RefreshTokenError()
        if status == 451 and data.get("suspension"):
            duration_ms = int(data.get("durationMs") or 0)
            if duration_ms <= 0:
                duration_ms = int(settings.suspension_default_seconds * 1000)
                logger.warning(f"{self.context} Suspension without a duration, benching for {duration_ms // 1000}s.")
            raise SuspensionError("Account is suspended.", duration_ms)
        if status >= 500:
            backoff = settings.server_error_backoff_seconds
            logger.warning(f"{self.context} Server error ({status}). Waiting {backoff:.0f}s.")
            await self.sleep(backoff)
            return 0
        if status == 429 or (isinstance(error, str) and "Error 1015" in error):
            raise NetworkError("(1015) Rate-limited.")

        raise UnexpectedResponseError(f"Unexpected response for tile {tx},{ty}: ({status}) {json.dumps(data)[:300]}")

    async def buy_product(self, product_id: int, amount: int) -> bool:
        body = {"product": {"id": product_id, "amount": amount}}
        response = await self._request(
            "POST", "/purchase", content=json.dumps(body), headers=self._paint_headers(None)
        )
        data = self._json_body(response)
        error = data.get("error")

        if data.get("success"):
            logger.info(f"{self.context} Purchased product #{product_id} x{amount}.")
            return True
        if response.status_code == 429 or (isinstance(error, str) and "Error 1015" in error):
            raise NetworkError("(1015) Rate-limited during purchase.")

        raise UnexpectedResponseError(
            f"Unexpected response during purchase: ({response.status_code}) {json.dumps(data)[:300]}"
        )
