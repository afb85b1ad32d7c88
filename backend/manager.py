import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from canvas_client import CanvasClient
from charges import ChargePredictor
from config import settings
from engine import TemplateRunner, TemplateStatus
from errors import log_account_error
from models import AccountInfo, PainterSettings
from registry import Account, AccountClaims, AccountRegistry
from settings_store import SettingsStore
from tokens import TokenBroker

logger = logging.getLogger(__name__)

START_STARTED = "started"
START_QUEUED = "queued"
START_RUNNING = "running"


class PlacerManager:
    """Process-wide owner of templates, accounts and the shared token/charge state"""

    def __init__(
        self,
        settings_store: Optional[SettingsStore] = None,
        client_factory: Callable[..., CanvasClient] = CanvasClient,
        clock: Callable[[], float] = time.time,
    ):
        self.clock = clock
        self.client_factory = client_factory
        self.settings_store = settings_store or SettingsStore()
        self.accounts = AccountRegistry(clock)
        self.claims = AccountClaims()
        self.tokens = TokenBroker(clock=clock)
        self.charges = ChargePredictor(clock=clock)
        self.templates: Dict[str, TemplateRunner] = {}
        self.queue: List[str] = []
        self.tasks: Dict[str, asyncio.Task] = {}
        self.checking_accounts: set = set()
        self.restart_requested: set = set()
        self._keep_alive_task: Optional[asyncio.Task] = None

        self.settings_store.subscribe(self._on_settings_changed)

    # -- templates -------------------------------------------------------

    def create_runner(self, template_id: str, name: str, image, anchor, user_ids, options) -> TemplateRunner:
        return TemplateRunner(
            template_id, name, image, anchor, user_ids, options,
            accounts=self.accounts,
            settings_store=self.settings_store,
            tokens=self.tokens,
            charges=self.charges,
            client_factory=self.client_factory,
            clock=self.clock,
        )

    def add_template(self, runner: TemplateRunner):
        self.templates[runner.id] = runner

    def get_template(self, template_id: str) -> Optional[TemplateRunner]:
        return self.templates.get(template_id)

    def name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        return any(t.name == name and t.id != exclude_id for t in self.templates.values())

    def remove_template(self, template_id: str) -> bool:
        runner = self.templates.get(template_id)
        if runner is None or runner.running:
            return False
        if template_id in self.queue:
            self.queue.remove(template_id)
        del self.templates[template_id]
        return True

    def snapshot_templates(self) -> List[dict]:
        return [t.snapshot() for t in self.templates.values()]

    def is_active(self, template_id: str) -> bool:
        task = self.tasks.get(template_id)
        return task is not None and not task.done()

    # -- start / stop / queue ---------------------------------------------

    def start_template(self, template_id: str) -> str:
        runner = self.templates[template_id]
        if runner.running:
            return START_RUNNING
        if self.is_active(template_id):
            # stopped but its loop has not exited yet
            self.restart_requested.add(template_id)
            logger.info(f"[{runner.name}] Restart requested, waiting for the previous run to exit.")
            return START_QUEUED
        if not runner.user_ids:
            raise ValueError("Template has no accounts assigned")

        if not self.claims.try_claim(runner.id, runner.user_ids):
            if template_id not in self.queue:
                self.queue.append(template_id)
            runner.status = TemplateStatus.QUEUED
            logger.info(f"[{runner.name}] Accounts busy, template queued (position {self.queue.index(template_id) + 1}).")
            return START_QUEUED

        if template_id in self.queue:
            self.queue.remove(template_id)
        runner.running = True
        runner.status = TemplateStatus.STARTED
        self.tasks[template_id] = asyncio.create_task(self._run(runner))
        return START_STARTED

    async def _run(self, runner: TemplateRunner):
        try:
            await runner.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{runner.name}] Template crashed: {e}", exc_info=e)
        finally:
            self.claims.release(runner.id)
            if self.tasks.get(runner.id) is asyncio.current_task():
                del self.tasks[runner.id]
            if runner.id in self.restart_requested:
                self.restart_requested.discard(runner.id)
                self._restart(runner)
            self.process_queue()

    def _restart(self, runner: TemplateRunner):
        if runner.id not in self.templates:
            return
        try:
            self.start_template(runner.id)
        except ValueError as e:
            logger.warning(f"[{runner.name}] Restart skipped: {e}")

    def stop_template(self, template_id: str):
        runner = self.templates[template_id]
        self.restart_requested.discard(template_id)
        if template_id in self.queue:
            self.queue.remove(template_id)
        runner.stop()
        task = self.tasks.get(template_id)
        logger.info(f"[{runner.name}] Stop requested.")
        if runner.in_loop:
            # the run loop releases its accounts when it exits
            return
        if task is not None and not task.done():
            task.cancel()
        runner.status = TemplateStatus.STOPPED
        self.claims.release(runner.id)
        self.process_queue()

    def process_queue(self):
        """Start the first queued template whose accounts are all free"""
        for template_id in list(self.queue):
            runner = self.templates.get(template_id)
            if runner is None:
                self.queue.remove(template_id)
                continue
            if self.is_active(template_id):
                continue
            if self.claims.can_claim(runner.id, runner.user_ids):
                logger.info(f"[{runner.name}] Starting from queue.")
                self.start_template(template_id)
                return

    def queue_status(self) -> dict:
        return {
            "queue": [
                {"id": tid, "name": self.templates[tid].name, "position": i + 1}
                for i, tid in enumerate(self.queue) if tid in self.templates
            ],
            "busy_accounts": sorted(self.claims.busy_ids()),
            "running": [t.id for t in self.templates.values() if t.running],
        }

    def interrupt_all(self):
        for runner in self.templates.values():
            runner.interrupt_sleep()

    def _on_settings_changed(self, old: PainterSettings, new: PainterSettings):
        self.interrupt_all()

    # -- accounts --------------------------------------------------------

    def add_account(self, account: Account):
        self.accounts.add(account)

    def remove_account(self, account_id: int) -> List[str]:
        """Remove an account everywhere; returns ids of templates that lost it"""
        self.accounts.remove(account_id)
        self.charges.clear(account_id)
        affected = []
        for runner in list(self.templates.values()):
            if not runner.remove_user(account_id):
                continue
            affected.append(runner.id)
            self.claims.release(runner.id, [account_id])
            if not runner.user_ids:
                logger.warning(f"[{runner.name}] No accounts left, stopping template.")
                if runner.running or runner.id in self.queue:
                    self.stop_template(runner.id)
        return affected

    def account_busy(self, account_id: int) -> bool:
        return self.claims.is_busy(account_id) or account_id in self.checking_accounts

    async def check_account(self, account: Account) -> AccountInfo:
        """Log in once with the stored credentials and resync charges"""
        async with self.client_factory(label="account check") as client:
            info = await asyncio.wait_for(
                client.login(account.cookies), timeout=settings.account_check_timeout_seconds
            )
        self.charges.mark_from_authoritative(account.id, info.charges.count, info.charges.max)
        if info.name != account.name:
            account.name = info.name
        return info

    # -- keep-alive ------------------------------------------------------

    def _actively_painting(self) -> set:
        ids = set()
        for runner in self.templates.values():
            if runner.running and runner.status != TemplateStatus.MONITORING:
                ids.update(runner.user_ids)
        return ids

    async def run_keep_alive(self, stagger: Optional[float] = None):
        """Log every idle account in once so its session stays fresh"""
        stagger = settings.keep_alive_stagger_seconds if stagger is None else stagger
        painting = self._actively_painting()
        candidates = [
            a for a in self.accounts.all()
            if a.id not in painting and not a.is_suspended(self.clock())
        ]
        if not candidates:
            return
        logger.info(f"Keep-alive: checking {len(candidates)} idle accounts.")
        for i, account in enumerate(candidates):
            try:
                await self.check_account(account)
                logger.info(f"({account.name}#{account.id}) Keep-alive ok.")
            except Exception as e:
                log_account_error(logger, e, account.id, account.name, "keep-alive")
            if stagger > 0 and i < len(candidates) - 1:
                await asyncio.sleep(stagger)

    async def _keep_alive_loop(self):
        while True:
            await asyncio.sleep(self.settings_store.current.keep_alive_cooldown / 1000)
            await self.run_keep_alive()

    def start_keep_alive(self):
        if self._keep_alive_task is None or self._keep_alive_task.done():
            self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

    # -- shutdown --------------------------------------------------------

    async def shutdown(self, timeout: float = 5.0):
        self.restart_requested.clear()
        for runner in self.templates.values():
            if runner.running:
                runner.stop()
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
        pending = [t for t in self.tasks.values() if not t.done()]
        if self._keep_alive_task is not None:
            pending.append(self._keep_alive_task)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        self.tasks.clear()
