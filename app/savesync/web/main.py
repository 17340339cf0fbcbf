from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from savesync import __version__
from savesync.core.config import load_config
from savesync.web.api import get_service, reset_service, router as api_router
from savesync.web.security import NetworkAllowlistMiddleware, get_allowed_nets


def build_app() -> FastAPI:
    cfg = load_config()

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        get_service()
        try:
            yield
        finally:
            service = get_service()
            for game in service.games.list_games():
                service.cancel_auto_action(game)
            service.events.drain(timeout=2.0)
            reset_service()
            logging.getLogger("web").info("service_stopped")

    api = FastAPI(title="savesync", version=__version__, lifespan=lifespan)
    api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=get_allowed_nets(cfg))
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from savesync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
