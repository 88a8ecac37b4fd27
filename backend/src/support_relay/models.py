from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

NO_MESSAGE_CONTENT = "No message content"


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("expected a string identifier")
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError("expected a string identifier")
    stripped = value.strip()
    return stripped or None


class SlackMessageEvent(BaseModel):
    type: str | None = None
    subtype: str | None = None
    ts: str | None = None
    channel: str | None = None
    user: str | None = None
    bot_id: str | None = None
    text: str | None = None
    thread_ts: str | None = None

    @field_validator("ts", "thread_ts", "channel", "user", "bot_id", mode="before")
    @classmethod
    def _normalize_identifier(cls, value: Any) -> str | None:
        return _optional_str(value)

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.ts


class SlackEventEnvelope(BaseModel):
    type: str | None = None
    challenge: Any = None
    event: SlackMessageEvent | None = None


class IntercomAuthor(BaseModel):
    type: str | None = None
    id: str | None = None
    name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        return _optional_str(value)


class IntercomConversationPart(BaseModel):
    id: str | None = None
    part_type: str | None = None
    body: str | None = None
    author: IntercomAuthor | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        return _optional_str(value)

    @property
    def reply_text(self) -> str:
        return self.body or NO_MESSAGE_CONTENT


class IntercomConversationParts(BaseModel):
    conversation_parts: list[IntercomConversationPart] = Field(default_factory=list)


class IntercomSource(BaseModel):
    id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        return _optional_str(value)


class IntercomConversationItem(BaseModel):
    type: str | None = None
    id: str | None = None
    source: IntercomSource | None = None
    conversation_parts: IntercomConversationParts | None = None
    custom_attributes: dict[str, Any] | None = None
    external_id: str | None = None

    @field_validator("id", "external_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        return _optional_str(value)


class IntercomWebhookData(BaseModel):
    item: IntercomConversationItem | None = None


class IntercomWebhookPayload(BaseModel):
    type: str | None = None
    id: str | None = None
    topic: str | None = None
    data: IntercomWebhookData | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str | None:
        return _optional_str(value)

    @property
    def item(self) -> IntercomConversationItem | None:
        return self.data.item if self.data is not None else None

    @property
    def is_ping(self) -> bool:
        item = self.item
        if item is not None and item.type == "ping":
            return True
        return self.topic == "ping"

    @property
    def remote_conversation_id(self) -> str | None:
        item = self.item
        return item.id if item is not None else None

    def latest_part(self) -> IntercomConversationPart | None:
        # The first listed part is taken as the newest. Intercom does not
        # document this ordering.
        item = self.item
        if item is None or item.conversation_parts is None:
            return None
        parts = item.conversation_parts.conversation_parts
        return parts[0] if parts else None
