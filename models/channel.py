"""Delivery channel models.

A channel is a tagged variant over its delivery type. Each variant carries
its own typed configuration and validates the fields its backend needs at
construction time, so a channel that could never send is rejected when it
is saved rather than when a batch is already rendered.

Channel Types:
    email:   SMTP relay, one message to every configured recipient
    ntfy:    ntfy server topic, one JSON publish request
    webhook: arbitrary HTTP endpoint, one JSON POST
"""

import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def _new_id() -> str:
    return uuid.uuid4().hex


def _require_http(value: str) -> str:
    value = value.strip().rstrip("/")
    if not value.startswith(("http://", "https://")):
        raise ValueError("must be an http:// or https:// URL")
    return value


class EmailChannelConfig(BaseModel):
    """SMTP settings for an email channel."""

    smtp_host: str = Field(min_length=1, description="Mail relay hostname")
    smtp_port: int = Field(default=587, ge=1, le=65535, description="Mail relay port")
    username: str = Field(default="", description="SMTP login (empty = no auth)")
    password: str = Field(default="", description="SMTP password")
    from_address: str = Field(min_length=3, description="Envelope and header sender")
    from_name: str = Field(default="", description="Display name for the sender")
    to_addresses: list[str] = Field(min_length=1, description="Recipients")
    security: Literal["starttls", "ssl", "none"] = Field(
        default="starttls",
        description="Transport security: STARTTLS upgrade, implicit SSL, or plain",
    )

    @field_validator("to_addresses", mode="before")
    @classmethod
    def split_addresses(cls, value):
        # The admin panel stores recipients as one comma separated string
        if isinstance(value, str):
            value = value.split(",")
        return [addr.strip() for addr in value if addr and addr.strip()]

    @field_validator("from_address", "to_addresses")
    @classmethod
    def check_addresses(cls, value):
        addresses = value if isinstance(value, list) else [value]
        for addr in addresses:
            if "@" not in addr:
                raise ValueError(f"invalid email address: {addr!r}")
        return value


class NtfyChannelConfig(BaseModel):
    """ntfy server and topic for an HTTP push channel."""

    server_url: str = Field(min_length=1, description="ntfy server base URL")
    topic: str = Field(min_length=1, description="Topic to publish to")
    token: str = Field(default="", description="Access token (optional)")

    @field_validator("server_url")
    @classmethod
    def check_server_url(cls, value: str) -> str:
        return _require_http(value)


class WebhookChannelConfig(BaseModel):
    """Endpoint for a generic JSON webhook channel."""

    url: str = Field(min_length=1, description="Endpoint receiving the batch payload")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _require_http(value)


class _ChannelBase(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1)
    enabled: bool = True


class EmailChannel(_ChannelBase):
    type: Literal["email"] = "email"
    config: EmailChannelConfig


class NtfyChannel(_ChannelBase):
    type: Literal["ntfy"] = "ntfy"
    config: NtfyChannelConfig


class WebhookChannel(_ChannelBase):
    type: Literal["webhook"] = "webhook"
    config: WebhookChannelConfig


Channel = Annotated[
    Union[EmailChannel, NtfyChannel, WebhookChannel],
    Field(discriminator="type"),
]

channel_adapter: TypeAdapter[Channel] = TypeAdapter(Channel)


def parse_channel(data: dict) -> Channel:
    """Build the channel variant selected by ``data["type"]``.

    Raises:
        pydantic.ValidationError: If the type is unknown or a required
            field for that type is missing or malformed
    """
    return channel_adapter.validate_python(data)
