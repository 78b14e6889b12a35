from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from schooldesk.security import require_session
from database.db import SchoolSettings, get_school_settings, update_school_settings

router = APIRouter(dependencies=[Depends(require_session)])

SECRET_FIELDS = ("whatsapp_api_key", "whatsapp_access_token")


class SettingsUpdate(BaseModel):
    school_name: str | None = Field(default=None, min_length=1, max_length=200)
    school_phone: str | None = None
    owner_phone: str | None = None
    whatsapp_provider: Literal["none", "ultramsg", "official"] | None = None
    whatsapp_api_url: str | None = None
    whatsapp_api_key: str | None = None
    whatsapp_priority: str | None = None
    whatsapp_phone_number_id: str | None = None
    whatsapp_access_token: str | None = None


def _public_settings(settings: SchoolSettings) -> dict:
    # Never echo credentials back; report whether they are set.
    public = {k: v for k, v in settings.items() if k not in SECRET_FIELDS}
    for key in SECRET_FIELDS:
        public[f"{key}_set"] = bool(settings.get(key))
    return public


@router.get("/settings")
def read_settings():
    return _public_settings(get_school_settings())


@router.put("/settings")
def write_settings(payload: SettingsUpdate):
    changes = {k: v.strip() if isinstance(v, str) else v for k, v in payload.model_dump(exclude_none=True).items()}
    return _public_settings(update_school_settings(changes))
