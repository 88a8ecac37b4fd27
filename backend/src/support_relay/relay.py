from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .config import Settings
from .intercom import ConversationCreateRequest, IntercomClient
from .models import IntercomWebhookPayload, SlackEventEnvelope, SlackMessageEvent
from .slack import SlackClient, ThreadPostRequest
from .store import DuplicateKeyError, MappingNotFoundError, MappingStore, MappingStoreError

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class MalformedPayloadError(ValueError):
    """Raised when a webhook body does not have the expected structure."""


@dataclass(frozen=True)
class RelayOutcome:
    status_code: int
    body: dict[str, Any] | str


SLACK_OK = RelayOutcome(200, "OK")
SLACK_IGNORED = RelayOutcome(200, "Ignored")
SLACK_CREATE_FAILED = RelayOutcome(500, "Error creating Intercom conversation")
SLACK_LOOKUP_FAILED = RelayOutcome(500, "Error looking up thread mapping")

INTERCOM_PING = RelayOutcome(200, {"message": "Webhook test received successfully"})
INTERCOM_DUPLICATE = RelayOutcome(200, {"message": "Webhook already processed"})
INTERCOM_RELAYED = RelayOutcome(200, {"success": True})
INTERCOM_MALFORMED = RelayOutcome(400, {"error": "Malformed webhook payload"})
INTERCOM_MISSING_ID = RelayOutcome(400, {"error": "Missing webhook id"})
INTERCOM_MISSING_PART = RelayOutcome(400, {"error": "No conversation part found"})
INTERCOM_MISSING_CONVERSATION = RelayOutcome(400, {"error": "Missing conversation id"})
INTERCOM_UNMAPPED = RelayOutcome(400, {"error": "Conversation mapping not found"})
INTERCOM_DELIVERY_FAILED = RelayOutcome(500, {"error": "Failed to deliver reply to Slack"})
INTERCOM_STORE_FAILED = RelayOutcome(500, {"error": "Failed to process webhook"})


def _parse(model: type[_ModelT], payload: Any) -> _ModelT:
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"expected a JSON object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayloadError(str(exc)) from exc


class RelayService:
    """Correlates Slack threads with Intercom conversations.

    ``handle_slack_event`` opens one Intercom conversation per top-level Slack
    message and records the mapping. ``handle_intercom_webhook`` routes replies
    back to the mapped thread, delivering each webhook id at most once. Both
    return a ``RelayOutcome`` and never raise for remote or storage failures.
    """

    def __init__(
        self,
        *,
        store: MappingStore,
        slack: SlackClient,
        intercom: IntercomClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._slack = slack
        self._intercom = intercom
        self._settings = settings

    def reset(self) -> None:
        self._store.reset()

    def handle_slack_event(self, payload: Any) -> RelayOutcome:
        try:
            envelope = _parse(SlackEventEnvelope, payload)
        except MalformedPayloadError as exc:
            logger.warning("ignoring malformed slack event: %s", exc)
            return SLACK_IGNORED

        if envelope.challenge is not None:
            return RelayOutcome(200, {"challenge": envelope.challenge})

        event = envelope.event
        skip_reason = self._skip_reason(event)
        if skip_reason is not None or event is None:
            logger.debug("ignoring slack event: %s", skip_reason)
            return SLACK_IGNORED

        thread_id = event.ts or ""
        channel_id = self._settings.resolve_channel(event.channel)
        if channel_id is None:
            logger.warning("ignoring slack message %s: no channel and no default channel configured", thread_id)
            return SLACK_IGNORED

        try:
            existing = self._store.find_by_thread_id(thread_id)
        except MappingStoreError:
            logger.exception("failed to look up mapping for slack thread %s", thread_id)
            return SLACK_LOOKUP_FAILED
        if existing is not None:
            logger.info(
                "slack thread %s already mapped to intercom conversation %s; skipping redelivery",
                thread_id,
                existing.remote_conversation_id,
            )
            return SLACK_OK

        result = self._intercom.create_conversation(
            ConversationCreateRequest(
                thread_id=thread_id,
                channel_id=channel_id,
                author_id=event.user,
                body=event.text or "",
            )
        )
        if result.status != "created" or result.conversation_id is None:
            logger.error(
                "failed to create intercom conversation for slack thread %s: %s (%s)",
                thread_id,
                result.error_code,
                result.error_message,
            )
            return SLACK_CREATE_FAILED

        conversation_id = result.conversation_id
        logger.info("intercom conversation %s created for slack thread %s", conversation_id, thread_id)
        try:
            self._store.create_mapping(
                thread_id=thread_id,
                channel_id=channel_id,
                remote_conversation_id=conversation_id,
            )
        except DuplicateKeyError:
            logger.warning(
                "mapping for slack thread %s or intercom conversation %s already exists",
                thread_id,
                conversation_id,
            )
        except MappingStoreError:
            # The conversation exists remotely but replies to it cannot be routed.
            logger.exception(
                "orphaned intercom conversation %s: failed to persist mapping for slack thread %s",
                conversation_id,
                thread_id,
            )
        return SLACK_OK

    def handle_intercom_webhook(self, payload: Any) -> RelayOutcome:
        try:
            webhook = _parse(IntercomWebhookPayload, payload)
        except MalformedPayloadError as exc:
            logger.warning("rejecting malformed intercom webhook: %s", exc)
            return INTERCOM_MALFORMED

        if webhook.is_ping:
            logger.info("intercom webhook test received")
            return INTERCOM_PING

        if webhook.id is None:
            return INTERCOM_MISSING_ID

        try:
            return self._relay_reply(webhook.id, webhook)
        except MappingStoreError:
            logger.exception("mapping store failure while processing intercom webhook %s", webhook.id)
            return INTERCOM_STORE_FAILED

    def _relay_reply(self, webhook_id: str, webhook: IntercomWebhookPayload) -> RelayOutcome:
        if self._store.has_processed_webhook(webhook_id):
            logger.info("intercom webhook %s already processed", webhook_id)
            return INTERCOM_DUPLICATE

        part = webhook.latest_part()
        if part is None:
            return INTERCOM_MISSING_PART
        conversation_id = webhook.remote_conversation_id
        if conversation_id is None:
            return INTERCOM_MISSING_CONVERSATION

        try:
            mapping = self._store.find_by_remote_conversation_id(conversation_id)
        except MappingNotFoundError:
            logger.warning("no slack thread mapped to intercom conversation %s", conversation_id)
            return INTERCOM_UNMAPPED

        # The claim precedes delivery: each webhook id is posted at most once.
        try:
            self._store.mark_webhook_processed(webhook_id)
        except DuplicateKeyError:
            logger.info("intercom webhook %s claimed by a concurrent delivery", webhook_id)
            return INTERCOM_DUPLICATE

        result = self._slack.post_thread_reply(
            ThreadPostRequest(
                channel_id=mapping.channel_id,
                thread_ts=mapping.thread_id,
                text=part.reply_text,
            )
        )
        if result.status != "sent":
            logger.error(
                "reply from intercom webhook %s was not delivered to slack thread %s and will not be retried: %s (%s)",
                webhook_id,
                mapping.thread_id,
                result.error_code,
                result.error_message,
            )
            return INTERCOM_DELIVERY_FAILED

        logger.info(
            "relayed intercom conversation %s reply to slack thread %s in %s",
            conversation_id,
            mapping.thread_id,
            mapping.channel_id,
        )
        return INTERCOM_RELAYED

    def _skip_reason(self, event: SlackMessageEvent | None) -> str | None:
        if event is None:
            return "no event"
        if event.type != "message":
            return f"event type {event.type!r}"
        if event.subtype is not None:
            return f"message subtype {event.subtype!r}"
        if event.is_thread_reply:
            return "thread reply"
        if event.bot_id is not None:
            return "bot message"
        bot_user_id = self._settings.slack_bot_user_id.strip()
        if bot_user_id and event.user == bot_user_id:
            return "message from relay bot"
        if event.ts is None:
            return "missing ts"
        if not (event.text or "").strip():
            return "empty text"
        return None
