from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, List, Any
from config import settings

# Remote canvas profile
class ChargeInfo(BaseModel):
    count: float = 0
    max: int = 0

class AccountInfo(BaseModel):
    id: int
    name: str
    charges: ChargeInfo = Field(default_factory=ChargeInfo)
    droplets: int = 0
    extra_colors_bitmap: int = Field(0, alias="extraColorsBitmap")

    class Config:
        populate_by_name = True
        extra = "allow"

# Runtime painter settings (durations in milliseconds)
DRAWING_DIRECTIONS = ("ttb", "btt", "ltr", "rtl", "center_out", "random")
DRAWING_ORDERS = ("linear", "color")

class PainterSettings(BaseModel):
    account_cooldown: int = Field(20000, ge=0, le=300000)
    purchase_cooldown: int = Field(5000, ge=0, le=60000)
    keep_alive_cooldown: int = Field(3600000, ge=300000, le=86400000)
    droplet_reserve: int = Field(0, ge=0)
    anti_grief_standby: int = Field(600000, ge=0, le=3600000)
    drawing_direction: str = Field("ttb", pattern="^(ttb|btt|ltr|rtl|center_out|random)$")
    drawing_order: str = Field("linear", pattern="^(linear|color)$")
    charge_threshold: float = Field(0.5, ge=0, le=1)
    pixel_skip: int = Field(1, ge=1, le=100)
    version: int = Field(1, ge=1)

    class Config:
        frozen = True

class SettingsUpdate(BaseModel):
    account_cooldown: Optional[int] = None
    purchase_cooldown: Optional[int] = None
    keep_alive_cooldown: Optional[int] = None
    droplet_reserve: Optional[int] = None
    anti_grief_standby: Optional[int] = None
    drawing_direction: Optional[str] = None
    drawing_order: Optional[str] = None
    charge_threshold: Optional[float] = None
    pixel_skip: Optional[int] = None

    class Config:
        extra = "forbid"

# Templates
class AnchorPayload(BaseModel):
    tile_x: int = Field(..., ge=0)
    tile_y: int = Field(..., ge=0)
    pixel_x: int = Field(..., ge=0, lt=settings.tile_size)
    pixel_y: int = Field(..., ge=0, lt=settings.tile_size)

class TemplateImagePayload(BaseModel):
    width: Optional[int] = Field(None, ge=1)
    height: Optional[int] = Field(None, ge=1)
    data: Optional[List[List[int]]] = None
    share_code: Optional[str] = None

    @model_validator(mode="after")
    def check_source(self):
        if self.share_code:
            return self
        if self.data is None or self.width is None or self.height is None:
            raise ValueError("Provide either share_code or width, height and data")
        return self

class TemplateFlagFields(BaseModel):
    can_buy_charges: bool = False
    can_buy_max_charges: bool = False
    anti_grief_mode: bool = False
    erase_mode: bool = False
    outline_mode: bool = False
    skip_painted_pixels: bool = False
    enable_autostart: bool = False

class TemplateFlags(TemplateFlagFields):

    @model_validator(mode="after")
    def check_purchase_flags(self):
        if self.can_buy_charges and self.can_buy_max_charges:
            raise ValueError("can_buy_charges and can_buy_max_charges cannot both be enabled")
        return self

class TemplateCreate(TemplateFlags):
    name: str = Field(..., min_length=1, max_length=100)
    anchor: AnchorPayload
    image: TemplateImagePayload
    user_ids: List[int] = Field(..., min_length=1)

    @field_validator("user_ids")
    @classmethod
    def unique_users(cls, value: List[int]) -> List[int]:
        return list(dict.fromkeys(value))

class TemplateEdit(TemplateCreate):
    image: Optional[TemplateImagePayload] = None

class TemplateImport(TemplateFlags):
    name: str = Field(..., min_length=1, max_length=100)
    share_code: str = Field(..., min_length=4)
    anchor: AnchorPayload
    user_ids: List[int] = Field(..., min_length=1)

class TemplateRunningUpdate(BaseModel):
    running: bool

class TemplateResponse(TemplateFlagFields):
    id: str
    name: str
    anchor: AnchorPayload
    width: int
    height: int
    user_ids: List[int]
    master_id: Optional[int] = None
    running: bool
    status: str
    total_pixels: int
    pixels_remaining: Optional[int] = None
    pixel_skip: int = 1

# Accounts
class AccountCreate(BaseModel):
    cookies: Dict[str, str]
    expiration_date: Optional[float] = None

    @field_validator("cookies")
    @classmethod
    def require_session_cookie(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value.get("j"):
            raise ValueError("cookies must include the 'j' session cookie")
        return value

class AccountResponse(BaseModel):
    id: int
    name: str
    expiration_date: Optional[float] = None
    suspended_until: Optional[float] = None
    busy: bool = False

class AccountStatus(BaseModel):
    id: int
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

# Token supply channel
class TokenSubmit(BaseModel):
    t: str = Field(..., min_length=1)
    pawtect: Optional[str] = None
    fp: Optional[str] = None

# Operator authentication
class LoginRequest(BaseModel):
    password: str

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

class HealthResponse(BaseModel):
    status: str
    uptime: float
    memory_usage: Dict[str, float]
    database_status: str
    running_templates: int = 0

class LogTail(BaseModel):
    content: str
    size: int
