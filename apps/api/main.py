"""FastAPI wrapper for the VDP engine."""

from __future__ import annotations

import dataclasses
import importlib.metadata
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.assets.cache import AssetCache
from core.assets.matcher import iter_matched_urls
from core.config.models import SCALE_TIER_ORDER, EngineSettings
from core.config.settings_loader import default_settings, load_settings
from core.layout.spec import parse_layout_spec
from core.layout.suggestion_client import LayoutSuggestionClient
from core.layout.synthesizer import generate_layout, synthesize_layout
from core.render.layout_merge import merge_layout_with_report
from core.render.scene_resolver import batch_resolve, resolve_scene
from core.render.symbols import supported_barcode_formats
from core.templates.models import ResolvedScene, Template, load_template_payload
from core.templates.token_resolver import extract_used_fields
from core.utils.errors import TemplateError
from core.utils.log_events import dump_json

logger = logging.getLogger("vdp.api")

_REQUEST_ID_HEADER = "X-Vdp-Request-Id"

_ModelT = TypeVar("_ModelT", bound=BaseModel)

_settings_cache: EngineSettings | None = None
_asset_cache: AssetCache | None = None


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await _close_asset_cache()


app = FastAPI(title="vdp-engine API", version="0.1.0", lifespan=_lifespan)


class ApiRequestError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.detail = detail or {}


class _RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ResolveRequest(_RequestModel):
    template: dict[str, Any]
    record: dict[str, Any]
    record_index: int = Field(default=0, ge=0)
    asset_pool: dict[str, str] | None = None
    prefetch: bool = False


class BatchResolveRequest(_RequestModel):
    template: dict[str, Any]
    records: list[dict[str, Any]]
    asset_pool: dict[str, str] | None = None
    prefetch: bool = False


class MergeRequest(_RequestModel):
    scene: dict[str, Any]
    template: dict[str, Any]


class SynthesizeRequest(_RequestModel):
    fields: list[str] = Field(min_length=1)
    sample_records: list[dict[str, Any]] = Field(default_factory=list)
    page_width: float = Field(gt=0)
    page_height: float = Field(gt=0)
    layout_spec: dict[str, Any] | None = None
    asset_pool: dict[str, str] | None = None
    template_type: str | None = None
    use_suggestion_service: bool = True


class PrefetchRequest(_RequestModel):
    records: list[dict[str, Any]]
    asset_pool: dict[str, str]


class WarmRequest(_RequestModel):
    index: int = Field(ge=0)
    records: list[dict[str, Any]]
    asset_pool: dict[str, str]


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Ensure every response has a request id header."""

    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        _log_event(
            logging.ERROR,
            "error",
            request_id,
            error_code="INTERNAL_ERROR",
            status_code=500,
            failure_stage="middleware",
        )
        response = _error_response(
            status_code=500,
            error_code="INTERNAL_ERROR",
            message="internal server error",
            request_id=request_id,
            detail={"path": request.url.path},
        )
    response.headers.setdefault(_REQUEST_ID_HEADER, request_id)
    return response


@app.exception_handler(ApiRequestError)
async def api_request_error_handler(request: Request, exc: ApiRequestError) -> JSONResponse:
    request_id = _request_id_from_request(request)
    _log_event(
        logging.ERROR,
        "error",
        request_id,
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.status_code,
    )
    return _error_response(
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        request_id=request_id,
        detail=exc.detail,
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness endpoint."""

    return {"status": "ok"}


@app.get("/v1/meta")
async def meta_v1(request: Request) -> JSONResponse:
    """Capabilities for rendering hosts."""

    request_id = _request_id_from_request(request)
    if not _meta_enabled():
        return _error_response(
            status_code=404,
            error_code="NOT_FOUND",
            message="meta endpoint is disabled",
            request_id=request_id,
            detail={"path": request.url.path},
        )

    settings = _settings()
    payload = {
        "version": _package_version(),
        "element_kinds": ["text", "image", "barcode", "qr", "sequence"],
        "barcode_formats": supported_barcode_formats(),
        "scale_tiers": list(SCALE_TIER_ORDER),
        "cache_capacity": _cache_capacity(settings),
        "suggestion_service": _suggestion_url(settings) is not None,
    }
    return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=payload)


@app.post("/v1/resolve")
async def resolve_v1(request: Request) -> JSONResponse:
    """Resolve one record into a scene."""

    request_id, started = _start(request)
    body = await _parse_body(request, ResolveRequest)
    template = _parse_template(body.template, field_name="template")
    record = _as_record(body.record)

    cache = None
    if body.asset_pool:
        cache = _get_asset_cache()
        if body.prefetch:
            await cache.fetch_many(list(iter_matched_urls([record], body.asset_pool)))

    scene = resolve_scene(template, record, body.record_index, body.asset_pool, cache)
    _done(request_id, started, unresolved_count=len(scene.unresolved_tokens))
    return _json_response(request_id, {"scene": scene.model_dump(mode="json")})


@app.post("/v1/batch-resolve")
async def batch_resolve_v1(request: Request) -> JSONResponse:
    """Resolve every record; scenes come back in record order."""

    request_id, started = _start(request)
    body = await _parse_body(request, BatchResolveRequest)
    template = _parse_template(body.template, field_name="template")
    records = [_as_record(record) for record in body.records]

    cache = None
    if body.asset_pool:
        cache = _get_asset_cache()
        if body.prefetch:
            await cache.prefetch_for_records(records, body.asset_pool)

    scenes = batch_resolve(template, records, body.asset_pool, cache)
    _done(request_id, started, record_count=len(scenes))
    return _json_response(
        request_id,
        {"count": len(scenes), "scenes": [scene.model_dump(mode="json") for scene in scenes]},
    )


@app.post("/v1/merge")
async def merge_v1(request: Request) -> JSONResponse:
    """Fold layout edits from a scene back into the base template."""

    request_id, started = _start(request)
    body = await _parse_body(request, MergeRequest)
    scene = _parse_template(body.scene, field_name="scene", model=ResolvedScene)
    template = _parse_template(body.template, field_name="template")

    merged, report = merge_layout_with_report(scene, template)
    _done(request_id, started, dropped=len(report.dropped_ids), added=len(report.added_ids))
    return _json_response(
        request_id,
        {"template": merged.model_dump(mode="json"), "report": dataclasses.asdict(report)},
    )


@app.post("/v1/synthesize")
async def synthesize_v1(request: Request) -> JSONResponse:
    """Generate a starting template, optionally consulting the suggestion service."""

    request_id, started = _start(request)
    body = await _parse_body(request, SynthesizeRequest)
    settings = _settings()
    records = [_as_record(record) for record in body.sample_records]
    common = {
        "asset_pool": body.asset_pool,
        "settings": settings,
        "template_type": body.template_type,
    }

    if body.layout_spec is not None:
        spec = parse_layout_spec(body.layout_spec)
        if spec is None:
            raise ApiRequestError(
                status_code=422,
                error_code="INVALID_LAYOUT_SPEC",
                message="layout_spec is not a valid layout spec",
            )
        template = synthesize_layout(
            body.fields, records, body.page_width, body.page_height, spec, **common
        )
        strategy = "provided_spec"
    else:
        client = _build_suggestion_client(settings) if body.use_suggestion_service else None
        try:
            template = await generate_layout(
                body.fields, records, body.page_width, body.page_height, client=client, **common
            )
        finally:
            if client is not None:
                await client.aclose()
        strategy = "suggestion_service" if client is not None else "fallback"

    _done(request_id, started, strategy=strategy, field_count=len(body.fields))
    return _json_response(
        request_id,
        {
            "template": template.model_dump(mode="json"),
            "fields": extract_used_fields(template),
            "strategy": strategy,
        },
    )


@app.post("/v1/cache/prefetch")
async def cache_prefetch_v1(request: Request) -> JSONResponse:
    """Download every asset the records refer to, plus the whole pool."""

    request_id, started = _start(request)
    body = await _parse_body(request, PrefetchRequest)
    cache = _get_asset_cache()
    records = [_as_record(record) for record in body.records]
    url_count = await cache.prefetch_for_records(records, body.asset_pool)
    _done(request_id, started, url_count=url_count, cached=len(cache))
    return _json_response(request_id, {"url_count": url_count, "cached": len(cache)})


@app.post("/v1/cache/warm")
async def cache_warm_v1(request: Request) -> JSONResponse:
    """Download assets for the records around ``index``."""

    request_id, started = _start(request)
    body = await _parse_body(request, WarmRequest)
    cache = _get_asset_cache()
    records = [_as_record(record) for record in body.records]
    url_count = await cache.warm_adjacent(body.index, records, body.asset_pool)
    _done(request_id, started, url_count=url_count, cached=len(cache))
    return _json_response(request_id, {"url_count": url_count, "cached": len(cache)})


def _start(request: Request) -> tuple[str, float]:
    request_id = _request_id_from_request(request)
    _log_event(logging.INFO, "start", request_id, path=request.url.path)
    return request_id, time.perf_counter()


def _done(request_id: str, started: float, **fields: Any) -> None:
    _log_event(logging.INFO, "done", request_id, total_ms=_elapsed_ms(started), **fields)


async def _parse_body(request: Request, model: type[_ModelT]) -> _ModelT:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_JSON",
            message="request body must be valid JSON",
        ) from exc
    if not isinstance(raw, dict):
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_JSON",
            message="request body must be a JSON object",
        )
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise ApiRequestError(
            status_code=422,
            error_code="INVALID_REQUEST",
            message="request body failed validation",
            detail={"errors": _validation_errors(exc)},
        ) from exc


def _parse_template(
    payload: dict[str, Any], *, field_name: str, model: type[Template] = Template
) -> Any:
    try:
        return load_template_payload(payload, source=field_name, model=model)
    except TemplateError as exc:
        cause = exc.__cause__
        errors = _validation_errors(cause) if isinstance(cause, ValidationError) else []
        raise ApiRequestError(
            status_code=422,
            error_code="INVALID_TEMPLATE",
            message=str(exc),
            detail={"field": exc.source, "errors": errors},
        ) from exc


def _validation_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
        for error in exc.errors()[:20]
    ]


def _as_record(raw: dict[str, Any]) -> dict[str, str]:
    return {
        str(key): "" if value is None else value if isinstance(value, str) else str(value)
        for key, value in raw.items()
    }


def _settings() -> EngineSettings:
    global _settings_cache
    if _settings_cache is None:
        raw_path = os.getenv("VDP_SETTINGS_PATH")
        _settings_cache = load_settings(Path(raw_path)) if raw_path else default_settings()
    return _settings_cache


def _cache_capacity(settings: EngineSettings) -> int:
    raw = os.getenv("VDP_CACHE_CAPACITY")
    if raw is None:
        return settings.cache.capacity
    try:
        value = int(raw)
    except ValueError:
        return settings.cache.capacity
    return value if value > 0 else settings.cache.capacity


def _suggestion_url(settings: EngineSettings) -> str | None:
    raw = os.getenv("VDP_LAYOUT_SUGGESTION_URL", "").strip()
    return raw or settings.suggestion.url


def _build_suggestion_client(settings: EngineSettings) -> LayoutSuggestionClient | None:
    url = _suggestion_url(settings)
    if not url:
        return None
    return LayoutSuggestionClient(url, timeout_seconds=settings.suggestion.timeout_seconds)


def _get_asset_cache() -> AssetCache:
    global _asset_cache
    if _asset_cache is None:
        settings = _settings()
        _asset_cache = AssetCache(
            capacity=_cache_capacity(settings),
            timeout_seconds=settings.cache.timeout_seconds,
            batch_size=settings.cache.batch_size,
        )
    return _asset_cache


async def _close_asset_cache() -> None:
    global _asset_cache
    if _asset_cache is not None:
        await _asset_cache.aclose()
        _asset_cache = None


def _meta_enabled() -> bool:
    raw = os.getenv("VDP_ENABLE_META", "1").strip().lower()
    return raw not in {"0", "false", "off", "no"}


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    generated = uuid.uuid4().hex
    request.state.request_id = generated
    return generated


def _package_version() -> str:
    try:
        return importlib.metadata.version("vdp-engine")
    except importlib.metadata.PackageNotFoundError:
        return app.version


def _json_response(request_id: str, content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=content)


def _error_response(
    *,
    status_code: int,
    error_code: str,
    message: str,
    request_id: str,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    payload_detail = dict(detail or {})
    payload_detail["request_id"] = request_id

    return JSONResponse(
        status_code=status_code,
        headers={_REQUEST_ID_HEADER: request_id},
        content={
            "error_code": error_code,
            "message": message,
            "detail": payload_detail,
        },
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _log_event(level: int, event: str, request_id: str, **fields: Any) -> None:
    payload = {
        "event": event,
        "request_id": request_id,
        **fields,
    }
    logger.log(level, dump_json(payload))
