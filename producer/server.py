"""Producer Console — operator API server.

Exposes the routes of :mod:`producer.api` on one FastAPI app.

Start with::

    python -m producer.server
    # or
    uvicorn producer.server:app --host 0.0.0.0 --port 5200
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from producer import __version__
from producer.api import router
from producer.config import ConsoleConfig
from producer.session import ConsoleSession

logger = logging.getLogger(__name__)


def create_app(session: ConsoleSession | None = None) -> FastAPI:
    """Build the app; a session is created from the environment when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.session is None:
            app.state.session = ConsoleSession(ConsoleConfig.from_env())
        yield
        await app.state.session.aclose()
        logger.info("Console session closed")

    app = FastAPI(title="Producer Console", version=__version__, lifespan=lifespan)
    app.state.session = session
    app.include_router(router)
    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn

    config = ConsoleConfig.from_env()
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting Producer Console on %s:%d", config.host, config.port)
    uvicorn.run("producer.server:app", host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
