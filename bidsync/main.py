from typing import Optional

from fastapi import FastAPI

from bidsync.api.v1.router import v1_router
from bidsync.core.config import get_settings
from bidsync.core.logging import configure_logging
from bidsync.core.middleware import RequestIdMiddleware
from bidsync.services.cache_service import SessionCache
from bidsync.services.sync_session import SyncSession


def create_app(session: Optional[SyncSession] = None) -> FastAPI:
    """
    Local console for the operator, team and spectator screens.
    Without an injected session one is built from settings and started with the app.
    """
    settings = get_settings()
    configure_logging(settings)

    owned = session is None
    if owned:
        session = SyncSession(settings, cache=SessionCache.from_url(settings.cache_url))

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
    )
    app.state.session = session

    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # API v1
    app.include_router(v1_router, prefix=settings.console_prefix)

    if owned:
        @app.on_event("startup")
        def _start_session() -> None:
            session.start()

        @app.on_event("shutdown")
        def _stop_session() -> None:
            session.stop()

    return app


def serve() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=settings.console_host,
        port=settings.console_port,
        log_config=None,
    )


if __name__ == "__main__":
    serve()
