"""FastAPI application exposing a Dropbox folder as an HTTP origin."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import PlainTextResponse

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import OriginSettings
from ..remote.dropbox import DropboxClient, RemoteStore, RemoteStoreError
from .cache import CacheStore
from .fetcher import Fetcher
from .invalidation import ChangeWatcher, InvalidationSignal
from .responses import build_response, robots_response, root_redirect

SERVICE_NAME = "dboxserver.origin"
HTTP_METHODS = ["GET", "HEAD"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_requests_total", "Requests for folder paths"))
FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_retrieval_failures_total", "Requests answered with 500 after a remote failure")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_bytes_served_total", "Body bytes served"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "dboxserver_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Origin request latency",
    )
)


class OriginState:
    def __init__(
        self,
        settings: OriginSettings,
        remote: RemoteStore,
        store: CacheStore,
        signal: InvalidationSignal,
        fetcher: Fetcher,
        watcher: Optional[ChangeWatcher],
    ) -> None:
        self.settings = settings
        self.remote = remote
        self.store = store
        self.signal = signal
        self.fetcher = fetcher
        self.watcher = watcher
        self.logger = structlog.get_logger(SERVICE_NAME).bind(folder=settings.folder or "/")


def get_state(request: Request) -> OriginState:
    return request.app.state.origin  # type: ignore[attr-defined]


def build_state(
    settings: OriginSettings,
    remote: RemoteStore,
    *,
    watch: bool = True,
) -> OriginState:
    store = CacheStore()
    signal = InvalidationSignal()
    fetcher = Fetcher(
        remote,
        store,
        signal,
        folder=settings.folder,
        max_object_bytes=settings.max_cache_object_bytes,
        coalesce=settings.coalesce_fetches,
        mime_overrides=settings.mime_overrides,
    )
    watcher = None
    if watch:
        watcher = ChangeWatcher(
            remote,
            signal,
            settings.folder,
            longpoll_timeout=settings.longpoll_timeout_seconds,
            error_backoff=settings.watch_error_backoff_seconds,
        )
    return OriginState(settings, remote, store, signal, fetcher, watcher)


def create_app(
    settings: Optional[OriginSettings] = None,
    *,
    remote: Optional[RemoteStore] = None,
    watch: bool = True,
) -> FastAPI:
    settings = settings or OriginSettings()
    configure_logging(SERVICE_NAME, settings.log_level, settings.log_format)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    owns_remote = remote is None
    remote = remote or DropboxClient.from_settings(settings)
    state = build_state(settings, remote, watch=watch)
    GLOBAL_REGISTRY.register(
        Gauge("dboxserver_cache_entries", "Paths held in the cache", supplier=lambda: float(len(state.store)))
    )
    GLOBAL_REGISTRY.register(
        Gauge("dboxserver_cache_bytes", "Body bytes held in the cache", supplier=lambda: float(state.store.total_bytes()))
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        state.logger.info("origin_starting", client_id=settings.client_id, watch=state.watcher is not None)
        if state.watcher is not None:
            state.watcher.start()
        try:
            yield
        finally:
            if state.watcher is not None:
                await state.watcher.stop()
            if owns_remote:
                await state.remote.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.state.origin = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.api_route("/robots.txt", methods=HTTP_METHODS)
    async def robots() -> Response:
        return robots_response()

    @app.api_route("/", methods=HTTP_METHODS)
    async def root(state: OriginState = Depends(get_state)) -> Response:
        return root_redirect(state.settings.redirect_url)

    if settings.metrics_path:

        @app.get(settings.metrics_path, response_class=PlainTextResponse)
        async def metrics_endpoint(request: Request, state: OriginState = Depends(get_state)) -> PlainTextResponse:
            token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
            require_metrics_access(request, token)
            return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{folder_path:path}", methods=HTTP_METHODS)
    async def serve_path(
        request: Request,
        if_none_match: Optional[str] = Header(default=None),
        state: OriginState = Depends(get_state),
    ) -> Response:
        # Starlette's decoded path, used verbatim as the cache key.
        path = request.scope["path"]
        REQUEST_COUNTER.inc()
        try:
            entry = await state.fetcher.resolve(path)
        except RemoteStoreError as exc:
            FAILURE_COUNTER.inc()
            state.logger.warning("origin_retrieval_failed", path=path, error=str(exc))
            return PlainTextResponse(str(exc), status_code=500)
        response = build_response(entry, if_none_match)
        if response.status_code == 200:
            BYTES_SERVED_COUNTER.inc(len(entry.body))
        return response

    return app
