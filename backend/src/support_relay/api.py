from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .intercom import HttpIntercomClient, IntercomClient, StubIntercomClient
from .relay import RelayOutcome, RelayService
from .slack import HttpSlackClient, SlackClient, StubSlackClient
from .store import MappingStore, create_mapping_store

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["relay"])


def _create_slack_client(settings: Settings) -> SlackClient:
    if settings.slack_client_type == "http":
        return HttpSlackClient(
            base_url=settings.slack_api_base_url,
            bot_token=settings.slack_bot_token,
            timeout_seconds=settings.remote_timeout_seconds,
        )
    return StubSlackClient()


def _create_intercom_client(settings: Settings) -> IntercomClient:
    if settings.intercom_client_type == "http":
        return HttpIntercomClient(
            base_url=settings.intercom_api_base_url,
            access_token=settings.intercom_access_token,
            admin_id=settings.intercom_admin_id,
            sender_type=settings.intercom_sender_type,
            api_version=settings.intercom_api_version,
            timeout_seconds=settings.remote_timeout_seconds,
        )
    return StubIntercomClient()


def _create_mapping_store(settings: Settings) -> MappingStore:
    return create_mapping_store(
        backend=settings.relay_store_backend,
        database_url=settings.database_url,
    )


mapping_store: MappingStore = _create_mapping_store(_settings)
slack_client: SlackClient = _create_slack_client(_settings)
intercom_client: IntercomClient = _create_intercom_client(_settings)
relay_service = RelayService(
    store=mapping_store,
    slack=slack_client,
    intercom=intercom_client,
    settings=_settings,
)


def reset_runtime_state_for_tests() -> None:
    relay_service.reset()


async def _read_json(request: Request) -> object:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("request to %s did not carry a JSON body", request.url.path)
        return None


def _to_response(outcome: RelayOutcome) -> Response:
    if isinstance(outcome.body, str):
        return PlainTextResponse(outcome.body, status_code=outcome.status_code)
    return JSONResponse(outcome.body, status_code=outcome.status_code)


@router.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@router.post("/slack/events")
@router.post("/slack-events", include_in_schema=False)
async def slack_events(request: Request) -> Response:
    payload = await _read_json(request)
    logger.debug("received slack event payload: %s", payload)
    outcome = await run_in_threadpool(relay_service.handle_slack_event, payload)
    return _to_response(outcome)


@router.post("/intercom/webhook")
@router.post("/intercom-webhook", include_in_schema=False)
async def intercom_webhook(request: Request) -> Response:
    payload = await _read_json(request)
    logger.debug("received intercom webhook payload: %s", payload)
    outcome = await run_in_threadpool(relay_service.handle_intercom_webhook, payload)
    return _to_response(outcome)
