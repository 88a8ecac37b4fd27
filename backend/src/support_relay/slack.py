from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, Protocol

ThreadPostStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ThreadPostRequest:
    channel_id: str
    thread_ts: str
    text: str


@dataclass(frozen=True)
class ThreadPostResult:
    status: ThreadPostStatus
    attempted_at: datetime
    message_ts: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class SlackClient(Protocol):
    def post_thread_reply(self, payload: ThreadPostRequest) -> ThreadPostResult: ...


class StubSlackClient:
    """Records thread replies instead of calling Slack.

    Replies to a channel id containing ``fail`` are rejected.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.posts: list[ThreadPostRequest] = []

    def post_thread_reply(self, payload: ThreadPostRequest) -> ThreadPostResult:
        attempted_at = datetime.now(timezone.utc)
        with self._lock:
            self.posts.append(payload)
        if "fail" in payload.channel_id.lower():
            return ThreadPostResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub client forced failure for channel",
            )
        return ThreadPostResult(
            status="sent",
            attempted_at=attempted_at,
            message_ts=f"{attempted_at.timestamp():.6f}",
        )


class _SlackRequestError(Exception):
    """Internal error raised when a Slack Web API call fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpSlackClient:
    """Posts threaded replies through the Slack Web API."""

    def __init__(
        self,
        *,
        base_url: str,
        bot_token: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = bot_token.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("bot_token must not be empty")
        self._base_url = stripped_url
        self._bot_token = stripped_token
        self._timeout_seconds = timeout_seconds

    def post_thread_reply(self, payload: ThreadPostRequest) -> ThreadPostResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "channel": payload.channel_id,
            "thread_ts": payload.thread_ts,
            "text": payload.text,
        }
        try:
            response_data = self._call("chat.postMessage", request_payload)
        except _SlackRequestError as exc:
            return ThreadPostResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        ts = response_data.get("ts")
        return ThreadPostResult(
            status="sent",
            attempted_at=attempted_at,
            message_ts=str(ts) if ts is not None else None,
        )

    def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a Web API method and return the decoded body.

        Slack reports application errors as ``{"ok": false, "error": ...}``
        inside a 200 response, so the ``ok`` flag is checked explicitly.
        """
        url = f"{self._base_url}/{method}"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._bot_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            raise _SlackRequestError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _SlackRequestError(
                    error_code="timeout",
                    message=f"Request timed out: {exc.reason}",
                ) from exc
            raise _SlackRequestError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SlackRequestError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise _SlackRequestError(
                error_code="connection_error",
                message=f"Connection error while reading response: {exc!r}",
            ) from exc

        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise _SlackRequestError(
                error_code="invalid_response",
                message="Slack returned a body that is not UTF-8 JSON",
            ) from exc
        if not isinstance(data, dict):
            raise _SlackRequestError(
                error_code="invalid_response",
                message="Slack returned an unexpected JSON body",
            )
        if data.get("ok") is not True:
            error = str(data.get("error") or "unknown_error")
            raise _SlackRequestError(
                error_code=f"slack_{error}",
                message=f"Slack {method} rejected the request: {error}",
            )
        return data
