from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import Settings, get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the missing Slack/Intercom credentials "
                + "or switch the affected client to SLACK_CLIENT_TYPE=stub / INTERCOM_CLIENT_TYPE=stub."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    logger.info("starting %s on port %s", settings.app_name, settings.port)
    uvicorn.run(create_app(), host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


app = create_app()
