from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, Response

from .. import __version__
from ..discovery.normalize import CanonicalReading
from ..discovery.source import ReadingSource
from .metrics import CONTENT_TYPE, render_metrics

logger = logging.getLogger(__name__)

_INDEX_HTML = """<html>
<head><title>Kasa Exporter</title></head>
<body>
<h1>Kasa Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
</body>
</html>
"""


def create_app(
    source: ReadingSource,
    *,
    render: Callable[[Sequence[CanonicalReading]], bytes] = render_metrics,
    on_shutdown: Sequence[Callable[[], Awaitable[None]]] = (),
) -> FastAPI:
    """Build the HTTP surface: `GET /metrics` runs one scrape cycle against `source`."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        for callback in on_shutdown:
            await callback()

    app = FastAPI(
        title="kasa-exporter",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.source = source

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return _INDEX_HTML

    @app.get("/metrics")
    async def metrics() -> Response:
        try:
            readings = await source.collect()
        except Exception:
            # Device-level failures are already contained by the source; anything reaching here
            # is a bug. Serve an empty exposition rather than failing the scrape.
            logger.exception("Collecting readings failed")
            readings = []

        try:
            body = render(readings)
        except Exception:
            logger.exception("Encoding metrics failed")
            return Response(status_code=500)
        return Response(content=body, media_type=CONTENT_TYPE)

    return app
