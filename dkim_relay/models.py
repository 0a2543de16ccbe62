"""Request payloads accepted by the HTTP API and the CLI."""

from __future__ import annotations

import re
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domains import MAX_DOMAIN_LENGTH, normalise_domain_name
from .errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_RECIPIENTS = 50
MAX_SUBJECT_LENGTH = 998
MAX_BODY_LENGTH = 10_000_000

ExpiresIn = Literal["30d", "90d", "180d", "365d", "never"]


def _check_email(value: str, field: str) -> str:
    if not EMAIL_RE.match(value or ""):
        raise ValueError(f"Invalid {field} email address")
    return value


class SendRequest(BaseModel):
    """Body of ``POST /send``."""

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: Union[str, List[str]]
    subject: str = Field(min_length=1, max_length=MAX_SUBJECT_LENGTH)
    html: Optional[str] = Field(default=None, max_length=MAX_BODY_LENGTH)
    text: Optional[str] = Field(default=None, max_length=MAX_BODY_LENGTH)
    reply_to: Optional[str] = Field(default=None, alias="replyTo")

    @field_validator("from_")
    @classmethod
    def _from_is_email(cls, value: str) -> str:
        return _check_email(value, "from")

    @field_validator("to")
    @classmethod
    def _to_is_email(cls, value: Union[str, List[str]]) -> Union[str, List[str]]:
        if isinstance(value, str):
            return _check_email(value, "to")
        if not 1 <= len(value) <= MAX_RECIPIENTS:
            raise ValueError(f"Between 1 and {MAX_RECIPIENTS} recipients are required")
        return [_check_email(item, "to") for item in value]

    @field_validator("subject")
    @classmethod
    def _subject_is_single_line(cls, value: str) -> str:
        if "\r" in value or "\n" in value:
            raise ValueError("Subject must not contain line breaks")
        return value

    @field_validator("reply_to")
    @classmethod
    def _reply_to_is_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_email(value, "replyTo")

    @model_validator(mode="after")
    def _has_body(self) -> "SendRequest":
        if not (self.html or self.text):
            raise ValueError("Either html or text content is required")
        return self

    def to_payload(self) -> dict:
        """Return the dict consumed by :meth:`DeliveryEngine.send`."""
        return {
            "from": self.from_,
            "to": self.to,
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
            "reply_to": self.reply_to,
        }


class DomainCreate(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_DOMAIN_LENGTH)
    selector: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        try:
            return normalise_domain_name(value)
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc


class DomainUpdate(BaseModel):
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_verified: Optional[bool] = Field(default=None, alias="isVerified")

    model_config = ConfigDict(populate_by_name=True)


class CredentialCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    expires_in: ExpiresIn = Field(default="never", alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class CredentialUpdate(BaseModel):
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class RotatePayload(BaseModel):
    expires_in: Optional[ExpiresIn] = Field(default=None, alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class CommandStatus(BaseModel):
    """Base schema shared by the admin command responses."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass
