# schemas/person.py
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from services.questrade.questrade_config import MIN_REFRESH_TOKEN_LENGTH


def _normalize_person_name(value: str) -> str:
    name = (value or "").strip()
    if not name or len(name) > 120:
        raise ValueError("person_name must be 1-120 characters")
    return name


def _normalize_refresh_token(value: str) -> str:
    token = (value or "").strip()
    if len(token) < MIN_REFRESH_TOKEN_LENGTH:
        raise ValueError("Invalid refresh token format")
    return token


class PersonCreate(BaseModel):
    person_name: str
    refresh_token: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None

    @field_validator("person_name")
    @classmethod
    def validate_person_name(cls, value: str) -> str:
        return _normalize_person_name(value)

    @field_validator("refresh_token")
    @classmethod
    def validate_refresh_token(cls, value: str) -> str:
        return _normalize_refresh_token(value)


class PersonUpdate(BaseModel):
    person_name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: Optional[bool] = None
    preferences: Optional[Dict[str, Any]] = None

    @field_validator("person_name")
    @classmethod
    def validate_person_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_person_name(value)


class TokenUpdate(BaseModel):
    refresh_token: str

    @field_validator("refresh_token")
    @classmethod
    def validate_refresh_token(cls, value: str) -> str:
        return _normalize_refresh_token(value)


class TokenValidate(BaseModel):
    refresh_token: str


class PersonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_name: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    is_active: bool
    has_valid_token: bool
    last_token_refresh: Optional[datetime] = None
    last_sync_time: Optional[datetime] = None
    last_successful_sync: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
