from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import ValidationError
from database import get_db
from models import *
from services import TemplateService, AccountService, SettingsService, AuthService, NAME_TAKEN, NOT_FOUND, BUSY
from errors import PlacerError
from logging_config import read_log_tail, LOG_FILE, ERROR_FILE
from manager import PlacerManager
from palette import palette_entries
from config import settings
import time
import logging
import psutil
from typing import Optional, List
from sqlalchemy import text

logger = logging.getLogger(__name__)

router = APIRouter()
security = HTTPBearer(auto_error=False)

def get_manager(request: Request) -> PlacerManager:
    return request.app.state.manager

async def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """Operator identity from the bearer token (required)"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Authentication required")

    subject = AuthService.verify_token(credentials.credentials)
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    return subject

def raise_for_error(error: str, what: str = "Template"):
    if error == NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    if error == NAME_TAKEN:
        raise HTTPException(status_code=409, detail="A template with this name already exists")
    if error == BUSY:
        raise HTTPException(status_code=409, detail="Account is busy with a running template")
    raise HTTPException(status_code=400, detail=error)

def register_error_handlers(app):
    @app.exception_handler(PlacerError)
    async def placer_error_handler(request: Request, exc: PlacerError):
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# Operator authentication
@router.post("/auth/login", response_model=Token)
async def login(login_data: LoginRequest):
    """Exchange the operator password for a bearer token"""
    if not AuthService.authenticate_operator(login_data.password):
        raise HTTPException(status_code=401, detail="Invalid password")

    access_token = AuthService.create_access_token(data={"sub": "operator"})

    return Token(
        access_token=access_token,
        token_type="bearer",
        expires_in=settings.access_token_expire_minutes * 60
    )

# Templates
@router.get("/templates", response_model=List[TemplateResponse])
async def list_templates(
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    return manager.snapshot_templates()

@router.post("/templates", response_model=dict)
async def create_template(
    template_data: TemplateCreate,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    runner, error = await TemplateService.create_template(db, manager, template_data)

    if error:
        raise_for_error(error)

    return {"success": True, "id": runner.id, "template": runner.snapshot()}

@router.post("/templates/import", response_model=dict)
async def import_template(
    import_data: TemplateImport,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    """Create a template from a share code"""
    runner, error = await TemplateService.import_template(db, manager, import_data)

    if error:
        raise_for_error(error)

    return {"success": True, "id": runner.id, "template": runner.snapshot()}

@router.put("/templates/edit/{template_id}", response_model=dict)
async def edit_template(
    template_id: str,
    template_data: TemplateEdit,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    runner, error = await TemplateService.update_template(db, manager, template_id, template_data)

    if error:
        raise_for_error(error)

    return {"success": True, "template": runner.snapshot()}

@router.put("/templates/{template_id}", response_model=dict)
async def set_template_running(
    template_id: str,
    update: TemplateRunningUpdate,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    """Start or stop a template"""
    if manager.get_template(template_id) is None:
        raise HTTPException(status_code=404, detail="Template not found")

    if not update.running:
        manager.stop_template(template_id)
        return {"success": True, "result": "stopped"}

    try:
        result = manager.start_template(template_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "result": result}

@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: str,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    success, error = await TemplateService.delete_template(db, manager, template_id)

    if not success:
        raise_for_error(error)

    return {"success": True, "message": "Template deleted"}

@router.get("/templates/{template_id}/share")
async def get_share_code(
    template_id: str,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    runner = manager.get_template(template_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Template not found")

    return {"share_code": TemplateService.share_code(runner)}

@router.get("/templates/{template_id}/colors")
async def get_template_colors(
    template_id: str,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    runner = manager.get_template(template_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Template not found")

    return {"colors": TemplateService.colors_in_template(runner)}

# Accounts
@router.get("/users", response_model=List[AccountResponse])
async def list_users(
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    return [
        AccountResponse(**account.to_dict(), busy=manager.account_busy(account.id))
        for account in manager.accounts.all()
    ]

@router.post("/users", response_model=AccountResponse)
async def add_user(
    account_data: AccountCreate,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    """Add an account; its cookies must log in successfully"""
    account, error = await AccountService.add_account(db, manager, account_data)

    if error:
        raise HTTPException(status_code=400, detail=error)

    return AccountResponse(**account.to_dict(), busy=manager.account_busy(account.id))

@router.delete("/users/{account_id}")
async def delete_user(
    account_id: int,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    success, error = await AccountService.delete_account(db, manager, account_id)

    if not success:
        raise_for_error(error, "Account")

    return {"success": True, "message": "Account deleted"}

@router.get("/users/status/{account_id}", response_model=AccountStatus)
async def check_user(
    account_id: int,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    status, error = await AccountService.check_account(manager, account_id)

    if error:
        raise_for_error(error, "Account")

    return status

@router.post("/users/status", response_model=List[AccountStatus])
async def check_all_users(
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    return await AccountService.check_all(manager)

# Token supply channel (polled by the capture agent, no operator token)
@router.get("/token-needed")
async def token_needed(manager: PlacerManager = Depends(get_manager)):
    status = manager.tokens.status()
    return {"needed": status["token_needed"], **status}

@router.post("/token")
async def submit_token(
    token_data: TokenSubmit,
    manager: PlacerManager = Depends(get_manager)
):
    manager.tokens.supply_token(token_data.t, fingerprint=token_data.fp, pawtect=token_data.pawtect)
    return {"success": True}

# Settings
@router.get("/settings", response_model=PainterSettings)
async def get_settings(
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    return manager.settings_store.current

@router.put("/settings", response_model=PainterSettings)
async def update_settings(
    settings_data: SettingsUpdate,
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db)
):
    """Apply a partial settings change and wake sleeping templates"""
    try:
        new_settings = manager.settings_store.update(settings_data.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await SettingsService.save_settings(db, new_settings)
    return new_settings

# Utility endpoints
@router.get("/queue")
async def get_queue(
    manager: PlacerManager = Depends(get_manager),
    operator: str = Depends(require_operator)
):
    return manager.queue_status()

@router.get("/palette")
async def get_palette():
    return {"colors": palette_entries()}

@router.get("/logs", response_model=LogTail)
async def get_logs(
    last_size: Optional[int] = Query(None, ge=0),
    operator: str = Depends(require_operator)
):
    return read_log_tail(LOG_FILE, last_size)

@router.get("/errors", response_model=LogTail)
async def get_errors(
    last_size: Optional[int] = Query(None, ge=0),
    operator: str = Depends(require_operator)
):
    return read_log_tail(ERROR_FILE, last_size)

@router.get("/monitor", response_model=HealthResponse)
async def monitor(
    manager: PlacerManager = Depends(get_manager),
    db: AsyncSession = Depends(get_db)
):
    """System health monitoring"""
    try:
        # Test database connection
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception:
        db_status = "unhealthy"

    # Get system info
    memory = psutil.virtual_memory()
    uptime = time.time() - psutil.boot_time()

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        uptime=uptime,
        memory_usage={
            "total": memory.total,
            "available": memory.available,
            "percent": memory.percent
        },
        database_status=db_status,
        running_templates=sum(1 for t in manager.templates.values() if t.running)
    )
