"""Template execution engine.

A TemplateRunner owns the run loop of one template: it checks the live canvas
with the first working account, then gives every account in the rotation a
paint turn, sleeps through the account cooldown and starts over. It finishes
when the canvas matches the image, or keeps monitoring when anti-grief mode is
on. Every sleep can be interrupted so live settings changes apply immediately.
"""
import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, List, Optional

from canvas import Anchor, TemplateImage
from canvas_client import (
    CanvasClient, DROPLETS_PER_PRODUCT, PRODUCT_CHARGES, PRODUCT_MAX_CHARGE, CHARGES_PER_PRODUCT,
)
from charges import ChargePredictor
from config import settings
from errors import NetworkError, RefreshTokenError, SuspensionError, log_account_error
from mismatch import MismatchPixel, PaintModes, compute_mismatches
from models import AccountInfo
from registry import Account, AccountRegistry
from scheduler import plan_and_execute
from settings_store import SettingsStore
from tokens import TokenBroker

logger = logging.getLogger(__name__)


class TemplateStatus(str, Enum):
    WAITING = "Waiting to be started."
    STARTED = "Started."
    QUEUED = "Queued."
    CHECKING = "Checking for pixels..."
    PAINTING = "Painting..."
    COOLDOWN = "Cooldown."
    MONITORING = "Monitoring for changes."
    FINISHED = "Finished."
    STOPPED = "Stopped."


@dataclass
class TemplateOptions:
    can_buy_charges: bool = False
    can_buy_max_charges: bool = False
    anti_grief_mode: bool = False
    erase_mode: bool = False
    outline_mode: bool = False
    skip_painted_pixels: bool = False
    enable_autostart: bool = False

    @property
    def modes(self) -> PaintModes:
        return PaintModes(self.erase_mode, self.outline_mode, self.skip_painted_pixels)

    def to_dict(self) -> dict:
        return asdict(self)


ClientFactory = Callable[..., CanvasClient]


class TemplateRunner:
    def __init__(
        self,
        template_id: str,
        name: str,
        image: TemplateImage,
        anchor: Anchor,
        user_ids: List[int],
        options: Optional[TemplateOptions] = None,
        *,
        accounts: AccountRegistry,
        settings_store: SettingsStore,
        tokens: TokenBroker,
        charges: ChargePredictor,
        client_factory: ClientFactory = CanvasClient,
        clock: Callable[[], float] = time.time,
    ):
        self.id = template_id
        self.name = name
        self.image = image
        self.anchor = anchor
        self.options = options or TemplateOptions()
        self.user_ids = list(user_ids)
        self.user_queue = list(user_ids)
        self.master_id = self.user_ids[0] if self.user_ids else None

        self.accounts = accounts
        self.settings_store = settings_store
        self.tokens = tokens
        self.charges = charges
        self.client_factory = client_factory
        self.clock = clock

        self.running = False
        self.status = TemplateStatus.WAITING
        self.total_pixels = image.total_pixels
        self.pixels_remaining = self.total_pixels
        self.pixel_skip = settings_store.current.pixel_skip

        self.initial_retry_delay = settings.retry_initial_seconds
        self.max_retry_delay = settings.retry_max_seconds
        self.current_retry_delay = self.initial_retry_delay
        self.max_refresh_attempts = settings.token_refresh_attempts
        self.refresh_delay = settings.token_refresh_delay_seconds

        self._wake = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._sleeping = False
        self.in_loop = False

    # -- lifecycle -------------------------------------------------------

    async def start(self):
        self.in_loop = True
        self.running = True
        self._stop_event.clear()
        self.status = TemplateStatus.STARTED
        logger.info(f"[{self.name}] Starting template...")
        try:
            while self.running:
                await self.run_cycle()
        finally:
            if self.status != TemplateStatus.FINISHED:
                self.status = TemplateStatus.STOPPED
            self.running = False
            self.in_loop = False
            logger.info(f"[{self.name}] Run loop exited: {self.status.value}")

    def stop(self):
        self.running = False
        self._stop_event.set()
        self._wake.set()

    def interrupt_sleep(self):
        if self._sleeping:
            logger.info(f"[{self.name}] Settings changed, waking.")
            self._wake.set()

    async def _sleep(self, seconds: float):
        """Sleep that returns early on stop or interrupt"""
        if seconds <= 0 or not self.running:
            return
        self._wake.clear()
        self._sleeping = True
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._sleeping = False

    # -- cycle -----------------------------------------------------------

    def _new_client(self) -> CanvasClient:
        return self.client_factory(label=self.name, sleep=self._sleep)

    def _sync_charges(self, account: Account, info: AccountInfo):
        self.charges.mark_from_authoritative(account.id, info.charges.count, info.charges.max, self.clock())

    async def _login_and_load(self, client: CanvasClient, account: Account) -> AccountInfo:
        info = await client.login(account.cookies)
        self._sync_charges(account, info)
        tiles = await client.load_tiles(self.anchor, self.image.width, self.image.height)
        if not tiles:
            raise NetworkError("No canvas tiles could be loaded.")
        return info

    async def _check_canvas(self) -> Optional[List[MismatchPixel]]:
        """Full mismatch set from the first account that can log in and load tiles"""
        for _ in range(len(self.user_queue)):
            if not self.running:
                return None
            account_id = self.user_queue.pop(0)
            self.user_queue.append(account_id)

            account = self.accounts.get(account_id)
            if account is None:
                continue
            if account.is_suspended(self.clock()):
                logger.info(f"({account.name}#{account.id}) [{self.name}] Suspended, skipping pixel check.")
                continue

            client = self._new_client()
            try:
                info = await self._login_and_load(client, account)
                mismatches = compute_mismatches(
                    self.image, self.anchor, client.tiles,
                    modes=self.options.modes,
                    extra_colors_bitmap=info.extra_colors_bitmap,
                )
                logger.info(f"[{self.name}] Check complete. Found {len(mismatches)} mismatched pixels.")
                return mismatches
            except Exception as e:
                log_account_error(logger, e, account.id, account.name, f"[{self.name}] pixel check")
            finally:
                await client.aclose()
        return None

    async def run_cycle(self):
        config = self.settings_store.current
        self.pixel_skip = config.pixel_skip
        self.status = TemplateStatus.CHECKING
        logger.info(f"[{self.name}] Starting new check cycle...")

        mismatches = await self._check_canvas()
        if not self.running:
            return
        if mismatches is None:
            delay = self.current_retry_delay
            logger.warning(f"[{self.name}] No working accounts found for pixel check. Retrying in {delay:.0f}s.")
            self.current_retry_delay = min(self.max_retry_delay, delay * 2)
            await self._sleep(delay)
            return

        self.pixels_remaining = len(mismatches)
        if not mismatches:
            if self.options.anti_grief_mode:
                self.status = TemplateStatus.MONITORING
                standby = self.settings_store.current.anti_grief_standby
                logger.info(f"[{self.name}] Template complete. Monitoring, recheck in {standby / 1000:.0f}s.")
                await self._sleep(standby / 1000)
            else:
                logger.info(f"[{self.name}] Template finished.")
                self.status = TemplateStatus.FINISHED
                self.running = False
            return

        self.current_retry_delay = self.initial_retry_delay
        self.status = TemplateStatus.PAINTING

        for account_id in list(self.user_queue):
            if not self.running:
                break
            account = self.accounts.get(account_id)
            if account is None or account.is_suspended(self.clock()):
                continue
            await self._run_account_turn(account)

        cooldown = self.settings_store.current.account_cooldown
        if self.running and cooldown > 0:
            self.status = TemplateStatus.COOLDOWN
            logger.info(f"[{self.name}] Waiting for cooldown ({cooldown / 1000:.0f}s).")
            await self._sleep(cooldown / 1000)

    # -- account turn ----------------------------------------------------

    async def _run_account_turn(self, account: Account):
        client = self._new_client()
        try:
            info = await self._login_and_load(client, account)
            await self._paint_turn(client, account, info)
            await self._run_purchases(client, account)
        except SuspensionError as e:
            until = self.clock() + e.duration_ms / 1000
            self.accounts.mark_suspended(account.id, until)
            log_account_error(logger, e, account.id, account.name, f"[{self.name}] paint turn")
        except Exception as e:
            log_account_error(logger, e, account.id, account.name, f"[{self.name}] paint turn")
        finally:
            await client.aclose()

    def _turn_mismatches(self, client: CanvasClient, info: AccountInfo) -> List[MismatchPixel]:
        stride = max(1, self.pixel_skip)
        while True:
            mismatches = compute_mismatches(
                self.image, self.anchor, client.tiles,
                skip_stride=stride,
                modes=self.options.modes,
                extra_colors_bitmap=info.extra_colors_bitmap,
            )
            if mismatches or stride == 1:
                return mismatches
            # sampled cells are done; densify
            stride = max(1, stride // 2)
            self.pixel_skip = stride

    def _charge_budget(self, account: Account, info: AccountInfo) -> tuple:
        prediction = self.charges.predict(account.id, self.clock())
        if prediction is None:
            return math.floor(info.charges.count), info.charges.max
        return prediction["count"], prediction["max"]

    async def _paint_turn(self, client: CanvasClient, account: Account, info: AccountInfo) -> int:
        config = self.settings_store.current
        context = f"({account.name}#{account.id}) [{self.name}]"
        painted_total = 0
        attempts = 0

        while self.running:
            if self.charges.is_stale(account.id, self.clock()):
                logger.info(f"{context} Charge prediction is stale, re-reading account.")
                info = await client.login(account.cookies)
                self._sync_charges(account, info)

            mismatches = self._turn_mismatches(client, info)
            if not mismatches:
                logger.info(f"{context} Nothing left to paint for this account.")
                return painted_total

            budget, max_charges = self._charge_budget(account, info)
            if attempts == 0:
                threshold = max(1, math.floor(max_charges * config.charge_threshold))
                if budget < threshold and budget < len(mismatches):
                    logger.info(f"{context} Waiting for charges ({budget}/{max_charges}, need {threshold}).")
                    return painted_total

            try:
                painted = await plan_and_execute(
                    mismatches, client, self.tokens,
                    width=self.image.width,
                    height=self.image.height,
                    direction=config.drawing_direction,
                    drawing_order=config.drawing_order,
                    outline_mode=self.options.outline_mode,
                    budget=budget,
                    label=self.name,
                    stop_event=self._stop_event,
                )
            except RefreshTokenError as e:
                painted_total += e.painted
                self.charges.consume(account.id, e.painted, self.clock())
                attempts += 1
                if attempts >= self.max_refresh_attempts:
                    logger.warning(f"{context} Token rejected {attempts} times, moving on.")
                    return painted_total
                logger.info(f"{context} Token expired. Next token...")
                await self._sleep(self.refresh_delay)
                continue

            painted_total += painted
            self.charges.consume(account.id, painted, self.clock())
            return painted_total

        return painted_total

    # -- purchases -------------------------------------------------------

    async def _run_purchases(self, client: CanvasClient, account: Account):
        purchases = (
            (self.options.can_buy_max_charges, self._buy_max_charges, "purchase max charge upgrades"),
            (self.options.can_buy_charges, self._buy_charges, "purchase charges"),
        )
        for enabled, purchase, context in purchases:
            if not enabled or not self.running:
                continue
            try:
                await purchase(client, account)
            except Exception as e:
                log_account_error(logger, e, account.id, account.name, f"[{self.name}] {context}")

    async def _after_purchase(self, client: CanvasClient, account: Account):
        await self._sleep(self.settings_store.current.purchase_cooldown / 1000)
        self._sync_charges(account, await client.load_user_info())

    async def _buy_max_charges(self, client: CanvasClient, account: Account):
        info = await client.load_user_info()
        self._sync_charges(account, info)
        amount = (info.droplets - self.settings_store.current.droplet_reserve) // DROPLETS_PER_PRODUCT
        if amount <= 0:
            return
        await client.buy_product(PRODUCT_MAX_CHARGE, amount)
        logger.info(f"({account.name}#{account.id}) [{self.name}] Bought {amount} max charge upgrades "
                    f"for {amount * DROPLETS_PER_PRODUCT} droplets.")
        await self._after_purchase(client, account)

    async def _buy_charges(self, client: CanvasClient, account: Account):
        info = await client.load_user_info()
        self._sync_charges(account, info)
        reserve = self.settings_store.current.droplet_reserve
        if info.charges.count >= info.charges.max or info.droplets <= reserve:
            return
        amount = (info.droplets - reserve) // DROPLETS_PER_PRODUCT
        if amount <= 0:
            return
        await client.buy_product(PRODUCT_CHARGES, amount)
        logger.info(f"({account.name}#{account.id}) [{self.name}] Bought {amount * CHARGES_PER_PRODUCT} charges "
                    f"for {amount * DROPLETS_PER_PRODUCT} droplets.")
        await self._after_purchase(client, account)

    # -- edits and reporting ---------------------------------------------

    def apply_edit(self, name: str, anchor: Anchor, user_ids: List[int], options: TemplateOptions,
                   image: Optional[TemplateImage] = None):
        self.name = name
        self.anchor = anchor
        self.options = options
        self.user_ids = list(user_ids)
        self.user_queue = list(user_ids)
        self.master_id = self.user_ids[0] if self.user_ids else None
        if image is not None:
            self.image = image
            self.total_pixels = image.total_pixels
            self.pixels_remaining = self.total_pixels

    def remove_user(self, account_id: int) -> bool:
        """Drop an account from this template; True when it was assigned"""
        if account_id not in self.user_ids:
            return False
        self.user_ids = [a for a in self.user_ids if a != account_id]
        self.user_queue = [a for a in self.user_queue if a != account_id]
        if self.master_id == account_id:
            self.master_id = self.user_ids[0] if self.user_ids else None
        return True

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "anchor": {
                "tile_x": self.anchor.tile_x,
                "tile_y": self.anchor.tile_y,
                "pixel_x": self.anchor.pixel_x,
                "pixel_y": self.anchor.pixel_y,
            },
            "width": self.image.width,
            "height": self.image.height,
            "user_ids": list(self.user_ids),
            "master_id": self.master_id,
            "running": self.running,
            "status": self.status.value,
            "total_pixels": self.total_pixels,
            "pixels_remaining": self.pixels_remaining,
            "pixel_skip": self.pixel_skip,
            **self.options.to_dict(),
        }
