from __future__ import annotations

import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from .app.routes.billing import router as billing_router
from .app.routes.health import router as health_router
from .app.routes.usage import router as usage_router
from .app.services.container import ServiceContainer, build_container
from .config import Settings, configure_logging, load_settings
from .middleware_perf import RequestTimingMiddleware

load_dotenv()

logger = logging.getLogger("tiergate")


def create_app(
    settings: Optional[Settings] = None,
    *,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Build the application.

    A prebuilt ``container`` is used as-is; otherwise one is connected from
    ``settings`` at startup. Either way it is closed at shutdown.
    """

    resolved = settings or (container.settings if container else load_settings())
    configure_logging(resolved)

    app = FastAPI(title="Tiergate Entitlements API")
    app.state.settings = resolved
    app.state.container = container

    app.add_middleware(RequestTimingMiddleware)

    app.include_router(billing_router)
    app.include_router(usage_router)
    app.include_router(health_router)

    @app.on_event("startup")
    async def setup_container() -> None:
        if app.state.container is None:
            app.state.container = await build_container(resolved)
        logger.info(
            "Started with %s ledger and %s relay transport",
            resolved.ledger_backend,
            resolved.relay_transport,
        )

    @app.on_event("shutdown")
    async def teardown_container() -> None:
        current = getattr(app.state, "container", None)
        if current is not None:
            await current.close()

    return app


app = create_app()
