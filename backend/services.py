from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database import TemplateRecord, AccountRecord, SettingsRecord, async_session
from models import (
    TemplateCreate, TemplateEdit, TemplateImport, TemplateImagePayload, AccountCreate, AccountStatus,
    PainterSettings,
)
from canvas import Anchor, TemplateImage
from codec import ShareCodeError, decode_share_code, encode_share_code, ensure_x_major
from engine import TemplateOptions, TemplateRunner, TemplateStatus
from errors import PlacerError
from manager import PlacerManager
from palette import colors_in_matrix, sanitize_matrix
from registry import Account
from config import settings
import asyncio
import logging
import time
from typing import Optional, List, Tuple
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

NAME_TAKEN = "name_taken"
NOT_FOUND = "not_found"
BUSY = "busy"

_background_tasks = set()

def _options_from(data) -> TemplateOptions:
    return TemplateOptions(
        can_buy_charges=bool(data.can_buy_charges),
        can_buy_max_charges=bool(data.can_buy_max_charges),
        anti_grief_mode=bool(data.anti_grief_mode),
        erase_mode=bool(data.erase_mode),
        outline_mode=bool(data.outline_mode),
        skip_painted_pixels=bool(data.skip_painted_pixels),
        enable_autostart=bool(data.enable_autostart),
    )

def _anchor_from(data) -> Anchor:
    return Anchor(data.tile_x, data.tile_y, data.pixel_x, data.pixel_y)

class TemplateService:
    @staticmethod
    def image_from_payload(payload: TemplateImagePayload) -> Tuple[Optional[TemplateImage], Optional[str]]:
        """Build a template image from a share code or a raw matrix in either orientation"""
        try:
            if payload.share_code:
                return decode_share_code(payload.share_code), None
            data = ensure_x_major(payload.width, payload.height, payload.data)
            return TemplateImage(payload.width, payload.height, sanitize_matrix(data)), None
        except (ShareCodeError, ValueError) as e:
            return None, f"Invalid image: {e}"

    @staticmethod
    def share_code(runner: TemplateRunner) -> str:
        return encode_share_code(runner.image.width, runner.image.height, runner.image.data)

    @staticmethod
    def _unknown_accounts(manager: PlacerManager, user_ids: List[int]) -> Optional[str]:
        missing = [str(a) for a in user_ids if a not in manager.accounts]
        if missing:
            return f"Unknown accounts: {', '.join(missing)}"
        return None

    @staticmethod
    def _new_id(manager: PlacerManager) -> str:
        template_id = str(int(time.time() * 1000))
        while template_id in manager.templates:
            template_id = str(int(template_id) + 1)
        return template_id

    @staticmethod
    def _apply_to_record(record: TemplateRecord, runner: TemplateRunner):
        record.name = runner.name
        record.tile_x = runner.anchor.tile_x
        record.tile_y = runner.anchor.tile_y
        record.pixel_x = runner.anchor.pixel_x
        record.pixel_y = runner.anchor.pixel_y
        record.width = runner.image.width
        record.height = runner.image.height
        record.share_code = TemplateService.share_code(runner)
        record.user_ids = list(runner.user_ids)
        for key, value in runner.options.to_dict().items():
            setattr(record, key, value)

    @staticmethod
    async def _create(db: AsyncSession, manager: PlacerManager, name: str, image: TemplateImage,
                      anchor: Anchor, user_ids: List[int], options: TemplateOptions) -> Tuple[Optional[TemplateRunner], Optional[str]]:
        if manager.name_taken(name):
            return None, NAME_TAKEN
        error = TemplateService._unknown_accounts(manager, user_ids)
        if error:
            return None, error

        runner = manager.create_runner(TemplateService._new_id(manager), name, image, anchor, user_ids, options)
        record = TemplateRecord(id=runner.id)
        TemplateService._apply_to_record(record, runner)
        try:
            db.add(record)
            await db.commit()
        except Exception as e:
            await db.rollback()
            return None, f"Database error: {str(e)}"

        manager.add_template(runner)
        logger.info(f"[{name}] Template created ({image.width}x{image.height}, {runner.total_pixels} px).")
        return runner, None

    @staticmethod
    async def create_template(db: AsyncSession, manager: PlacerManager, data: TemplateCreate) -> Tuple[Optional[TemplateRunner], Optional[str]]:
        image, error = TemplateService.image_from_payload(data.image)
        if error:
            return None, error
        return await TemplateService._create(
            db, manager, data.name, image, _anchor_from(data.anchor), data.user_ids, _options_from(data)
        )

    @staticmethod
    async def import_template(db: AsyncSession, manager: PlacerManager, data: TemplateImport) -> Tuple[Optional[TemplateRunner], Optional[str]]:
        try:
            image = decode_share_code(data.share_code)
        except ShareCodeError as e:
            return None, f"Invalid share code: {e}"
        return await TemplateService._create(
            db, manager, data.name, image, _anchor_from(data.anchor), data.user_ids, _options_from(data)
        )

    @staticmethod
    async def update_template(db: AsyncSession, manager: PlacerManager, template_id: str, data: TemplateEdit) -> Tuple[Optional[TemplateRunner], Optional[str]]:
        """Replace every mutable field of a stopped template"""
        runner = manager.get_template(template_id)
        if runner is None:
            return None, NOT_FOUND
        if runner.running or manager.is_active(template_id):
            return None, "Stop the template before editing it"
        if manager.name_taken(data.name, exclude_id=template_id):
            return None, NAME_TAKEN
        error = TemplateService._unknown_accounts(manager, data.user_ids)
        if error:
            return None, error

        image = None
        if data.image is not None:
            image, error = TemplateService.image_from_payload(data.image)
            if error:
                return None, error

        result = await db.execute(select(TemplateRecord).where(TemplateRecord.id == template_id))
        record = result.scalar_one_or_none()
        if record is None:
            return None, NOT_FOUND

        if template_id in manager.queue:
            manager.queue.remove(template_id)
            runner.status = TemplateStatus.WAITING
        runner.apply_edit(data.name, _anchor_from(data.anchor), data.user_ids, _options_from(data), image)
        TemplateService._apply_to_record(record, runner)
        try:
            await db.commit()
        except Exception as e:
            await db.rollback()
            return None, f"Database error: {str(e)}"
        logger.info(f"[{runner.name}] Template edited.")
        return runner, None

    @staticmethod
    async def delete_template(db: AsyncSession, manager: PlacerManager, template_id: str) -> Tuple[bool, Optional[str]]:
        runner = manager.get_template(template_id)
        if runner is None:
            return False, NOT_FOUND
        if not manager.remove_template(template_id):
            return False, "Cannot delete a running template"

        result = await db.execute(select(TemplateRecord).where(TemplateRecord.id == template_id))
        record = result.scalar_one_or_none()
        try:
            if record is not None:
                await db.delete(record)
            await db.commit()
        except Exception as e:
            await db.rollback()
            return False, f"Database error: {str(e)}"
        logger.info(f"[{runner.name}] Template deleted.")
        return True, None

    @staticmethod
    def colors_in_template(runner: TemplateRunner) -> List[int]:
        return colors_in_matrix(runner.image.data)

    @staticmethod
    async def load_templates(db: AsyncSession, manager: PlacerManager) -> int:
        result = await db.execute(select(TemplateRecord).order_by(TemplateRecord.created_at))
        loaded = 0
        for record in result.scalars().all():
            try:
                image = decode_share_code(record.share_code)
            except ShareCodeError as e:
                logger.error(f"[{record.name}] Stored image is corrupt, skipping: {e}")
                continue
            user_ids = [a for a in (record.user_ids or []) if a in manager.accounts]
            runner = manager.create_runner(
                record.id, record.name, image,
                Anchor(record.tile_x, record.tile_y, record.pixel_x, record.pixel_y),
                user_ids, _options_from(record),
            )
            manager.add_template(runner)
            loaded += 1
        return loaded

class AccountService:
    @staticmethod
    async def add_account(db: AsyncSession, manager: PlacerManager, data: AccountCreate) -> Tuple[Optional[Account], Optional[str]]:
        """Store credentials after they log in successfully; raises PlacerError on login failure"""
        async with manager.client_factory(label="add account") as client:
            info = await client.login(data.cookies)

        result = await db.execute(select(AccountRecord).where(AccountRecord.id == info.id))
        record = result.scalar_one_or_none()
        if record is None:
            record = AccountRecord(id=info.id)
            db.add(record)
        record.name = info.name
        record.cookies = dict(data.cookies)
        record.expiration_date = data.expiration_date
        try:
            await db.commit()
        except Exception as e:
            await db.rollback()
            return None, f"Database error: {str(e)}"

        account = manager.accounts.get(info.id)
        if account is None:
            account = Account(info.id, info.name)
            manager.add_account(account)
        account.name = info.name
        account.cookies = dict(data.cookies)
        account.expiration_date = data.expiration_date
        manager.charges.mark_from_authoritative(info.id, info.charges.count, info.charges.max)
        logger.info(f"({info.name}#{info.id}) Account added.")
        return account, None

    @staticmethod
    async def delete_account(db: AsyncSession, manager: PlacerManager, account_id: int) -> Tuple[bool, Optional[str]]:
        account = manager.accounts.get(account_id)
        if account is None:
            return False, NOT_FOUND

        result = await db.execute(select(AccountRecord).where(AccountRecord.id == account_id))
        record = result.scalar_one_or_none()
        templates = await db.execute(select(TemplateRecord))
        try:
            if record is not None:
                await db.delete(record)
            for template in templates.scalars().all():
                if account_id in (template.user_ids or []):
                    template.user_ids = [u for u in template.user_ids if u != account_id]
            await db.commit()
        except Exception as e:
            await db.rollback()
            return False, f"Database error: {str(e)}"

        # in-memory cascade only once the rows are gone
        affected = manager.remove_account(account_id)
        logger.info(f"({account.name}#{account.id}) Account deleted, removed from {len(affected)} templates.")
        return True, None

    @staticmethod
    async def save_suspension(account: Account):
        async with async_session() as db:
            result = await db.execute(select(AccountRecord).where(AccountRecord.id == account.id))
            record = result.scalar_one_or_none()
            if record is None:
                return
            record.suspended_until = account.suspended_until
            await db.commit()

    @staticmethod
    def schedule_suspension_save(account: Account):
        task = asyncio.create_task(AccountService.save_suspension(account))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    @staticmethod
    async def check_account(manager: PlacerManager, account_id: int) -> Tuple[Optional[AccountStatus], Optional[str]]:
        account = manager.accounts.get(account_id)
        if account is None:
            return None, NOT_FOUND
        if manager.account_busy(account_id):
            return None, BUSY

        manager.checking_accounts.add(account_id)
        try:
            info = await manager.check_account(account)
            return AccountStatus(id=account_id, success=True, data=info.model_dump(by_alias=True)), None
        except (PlacerError, asyncio.TimeoutError) as e:
            message = str(e) or "Timed out"
            return AccountStatus(id=account_id, success=False, error=message), None
        finally:
            manager.checking_accounts.discard(account_id)

    @staticmethod
    async def check_all(manager: PlacerManager) -> List[AccountStatus]:
        statuses = []
        for account in manager.accounts.all():
            status, error = await AccountService.check_account(manager, account.id)
            if error == BUSY:
                statuses.append(AccountStatus(id=account.id, success=False, error="Account is busy"))
            elif status is not None:
                statuses.append(status)
        return statuses

    @staticmethod
    async def load_accounts(db: AsyncSession, manager: PlacerManager) -> int:
        result = await db.execute(select(AccountRecord))
        records = result.scalars().all()
        for record in records:
            manager.add_account(Account(
                id=record.id,
                name=record.name,
                cookies=dict(record.cookies or {}),
                expiration_date=record.expiration_date,
                suspended_until=record.suspended_until,
            ))
        return len(records)

class SettingsService:
    @staticmethod
    async def load_settings(db: AsyncSession) -> PainterSettings:
        result = await db.execute(select(SettingsRecord).where(SettingsRecord.id == 1))
        record = result.scalar_one_or_none()
        if record is None:
            return PainterSettings()
        return PainterSettings(**{**record.data, "version": record.version})

    @staticmethod
    async def save_settings(db: AsyncSession, painter_settings: PainterSettings):
        result = await db.execute(select(SettingsRecord).where(SettingsRecord.id == 1))
        record = result.scalar_one_or_none()
        data = painter_settings.model_dump(exclude={"version"})
        if record is None:
            db.add(SettingsRecord(id=1, data=data, version=painter_settings.version))
        else:
            record.data = data
            record.version = painter_settings.version
        await db.commit()

# Operator authentication
class AuthService:
    _admin_hash: Optional[str] = None

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        return pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def get_password_hash(password: str) -> str:
        return pwd_context.hash(password)

    @staticmethod
    def authenticate_operator(password: str) -> bool:
        if AuthService._admin_hash is None:
            AuthService._admin_hash = AuthService.get_password_hash(settings.admin_password)
        return AuthService.verify_password(password, AuthService._admin_hash)

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
        to_encode.update({"exp": expire})
        encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)
        return encoded_jwt

    @staticmethod
    def verify_token(token: str) -> Optional[str]:
        """Subject of a valid operator token"""
        try:
            payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        except JWTError:
            return None
        return payload.get("sub")
