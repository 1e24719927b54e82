from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from savesync import __version__
from savesync.web.api import router as api_router, start_scheduler, stop_scheduler


def build_app(with_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        if with_scheduler:
            start_scheduler()
        try:
            yield
        finally:
            if with_scheduler:
                await stop_scheduler()

    api = FastAPI(title="savesync", version=__version__, lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    from savesync.core.config import load_config
    from savesync.core.logging_setup import setup_logging

    cfg = load_config()
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
