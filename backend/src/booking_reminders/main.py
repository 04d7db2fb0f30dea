from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import api as api_module
from .config import get_settings, runtime_secret_issues
from .trigger import DispatchTrigger

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the missing values or switch the affected backend back to "
                + "REMINDER_STORE_BACKEND=inmemory / NOTIFIER_SENDER_TYPE=stub."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        trigger: DispatchTrigger | None = None
        if settings.dispatch_trigger_enabled:
            trigger = DispatchTrigger(
                dispatcher=api_module.engine.dispatcher,
                interval_seconds=settings.dispatch_interval_seconds,
            )
            trigger.start()
        app.state.dispatch_trigger = trigger
        try:
            yield
        finally:
            if trigger is not None:
                trigger.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_module.router)
    return app


app = create_app()
