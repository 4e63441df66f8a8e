import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def _check_url(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return value


def _check_headers(value: dict | None) -> dict | None:
    if value is None:
        return value
    for key, header in value.items():
        if not isinstance(header, str):
            raise ValueError(f"header {key!r} must be a string")
    return value


class WebhookBase(BaseModel):
    event_name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1, max_length=2048)
    secret: str | None = Field(default=None, max_length=255)
    headers: dict[str, str] | None = None

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("headers", mode="before")
    @classmethod
    def _validate_headers(cls, value):
        return _check_headers(value)


class WebhookCreate(WebhookBase):
    pass


class WebhookUpdate(BaseModel):
    event_name: str | None = Field(default=None, min_length=1, max_length=255)
    url: str | None = Field(default=None, min_length=1, max_length=2048)
    secret: str | None = Field(default=None, max_length=255)
    headers: dict[str, str] | None = None
    active: bool | None = None

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        return _check_url(value)

    @field_validator("headers", mode="before")
    @classmethod
    def _validate_headers(cls, value):
        return _check_headers(value)


class WebhookRead(WebhookBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_uuid: str
    active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime

    @field_validator("headers", mode="before")
    @classmethod
    def _validate_headers(cls, value):
        # Stored headers may be JSON text; unreadable ones are shown as absent
        if isinstance(value, (bytes, str)):
            try:
                value = json.loads(value)
            except ValueError:
                return None
        if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
            return None
        return value

    @field_serializer("secret")
    def _mask_secret(self, value: str | None):
        if not value:
            return value
        return "********"
