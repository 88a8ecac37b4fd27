from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Literal, Protocol

ConversationCreateStatus = Literal["created", "failed"]


@dataclass(frozen=True)
class ConversationCreateRequest:
    thread_id: str
    channel_id: str
    author_id: str | None
    body: str


@dataclass(frozen=True)
class ConversationCreateResult:
    status: ConversationCreateStatus
    attempted_at: datetime
    conversation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class IntercomClient(Protocol):
    def create_conversation(self, payload: ConversationCreateRequest) -> ConversationCreateResult: ...


class StubIntercomClient:
    """In-process stand-in used for local runs and tests.

    Every request is recorded. Requests whose author id contains ``fail`` are
    rejected, so the failure path can be exercised without a network.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self.requests: list[ConversationCreateRequest] = []

    def create_conversation(self, payload: ConversationCreateRequest) -> ConversationCreateResult:
        attempted_at = datetime.now(timezone.utc)
        with self._lock:
            self.requests.append(payload)
            sequence = next(self._counter)
        if "fail" in (payload.author_id or "").lower():
            return ConversationCreateResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_create_failed",
                error_message="Stub client forced failure for author id",
            )
        return ConversationCreateResult(
            status="created",
            attempted_at=attempted_at,
            conversation_id=f"stub-conv-{sequence:06d}",
        )


class _IntercomRequestError(Exception):
    """Internal error raised when an Intercom HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpIntercomClient:
    """Opens Intercom conversations through the REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        admin_id: str,
        sender_type: str = "user",
        api_version: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not admin_id.strip():
            raise ValueError("admin_id must not be empty")
        self._base_url = stripped_url
        self._access_token = stripped_token
        self._admin_id = admin_id.strip()
        self._sender_type = sender_type.strip() or "user"
        self._api_version = api_version.strip()
        self._timeout_seconds = timeout_seconds

    def create_conversation(self, payload: ConversationCreateRequest) -> ConversationCreateResult:
        attempted_at = datetime.now(timezone.utc)
        # The human Slack author is not an Intercom contact; the conversation is
        # always opened by the configured actor.
        request_payload = {
            "from": {"type": self._sender_type, "id": self._admin_id},
            "body": payload.body,
            "message_type": "inapp",
            "external_id": payload.thread_id,
            "custom_attributes": {
                "slack_thread_ts": payload.thread_id,
                "slack_channel": payload.channel_id,
            },
        }

        try:
            response_data = self._post("/conversations", request_payload)
        except _IntercomRequestError as exc:
            return ConversationCreateResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        conversation_id = response_data.get("conversation_id") or response_data.get("id")
        if conversation_id is None or not str(conversation_id).strip():
            return ConversationCreateResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="invalid_response",
                error_message="Intercom response did not include a conversation id",
            )
        return ConversationCreateResult(
            status="created",
            attempted_at=attempted_at,
            conversation_id=str(conversation_id).strip(),
        )

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_version:
            headers["Intercom-Version"] = self._api_version
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            raise _IntercomRequestError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _IntercomRequestError(
                    error_code="timeout",
                    message=f"Request timed out: {exc.reason}",
                ) from exc
            raise _IntercomRequestError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _IntercomRequestError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise _IntercomRequestError(
                error_code="connection_error",
                message=f"Connection error while reading response: {exc!r}",
            ) from exc

        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise _IntercomRequestError(
                error_code="invalid_response",
                message="Intercom returned a body that is not UTF-8 JSON",
            ) from exc
        if not isinstance(data, dict):
            raise _IntercomRequestError(
                error_code="invalid_response",
                message="Intercom returned an unexpected JSON body",
            )
        return data
