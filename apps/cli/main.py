"""Typer CLI entrypoint for the VDP engine."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer

from apps.cli.io import (
    dump_model,
    load_asset_pool,
    load_layout_spec,
    load_records,
    load_scene,
    load_template,
    write_json_atomic,
)
from core.assets.cache import AssetCache
from core.config.models import EngineSettings
from core.config.settings_loader import default_settings, load_settings
from core.layout.synthesizer import synthesize_layout
from core.render.layout_merge import merge_layout_with_report
from core.render.scene_resolver import batch_resolve, resolve_scene
from core.templates.models import Record, ResolvedScene
from core.templates.token_resolver import extract_used_fields
from core.utils.errors import TemplateError

app = typer.Typer(help="Variable data printing engine CLI", rich_markup_mode=None)


@app.callback()
def cli_callback() -> None:
    """CLI root callback to keep subcommands explicit."""


@app.command("resolve")
def resolve_command(
    template: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    records: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    index: Annotated[int, typer.Option(min=0, help="Record index to resolve.")] = 0,
    assets: Annotated[
        Path | None, typer.Option(exists=True, dir_okay=False, help="Asset pool JSON.")
    ] = None,
    prefetch: Annotated[
        bool, typer.Option("--prefetch", help="Download matched assets and inline them.")
    ] = False,
    out: Annotated[Path | None, typer.Option(help="Write scene JSON here.")] = None,
) -> None:
    """Resolve one record against a template."""

    try:
        template_model = load_template(template)
        rows = load_records(records)
        pool = load_asset_pool(assets) if assets else None
        if index >= len(rows):
            raise ValueError(f"record index {index} out of range ({len(rows)} records)")
        settings = default_settings()
        scene = asyncio.run(
            _with_cache(
                lambda cache: resolve_scene(template_model, rows[index], index, pool, cache),
                rows,
                pool,
                settings,
                enabled=prefetch,
            )
        )
    except (TemplateError, ValueError, OSError) as exc:
        _fail(exc)

    _emit(dump_model(scene), out)
    _warn_unresolved([scene])


@app.command("batch")
def batch_command(
    template: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    records: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    assets: Annotated[
        Path | None, typer.Option(exists=True, dir_okay=False, help="Asset pool JSON.")
    ] = None,
    prefetch: Annotated[
        bool, typer.Option("--prefetch", help="Download matched assets and inline them.")
    ] = False,
    out: Annotated[Path | None, typer.Option(help="Write scenes JSON here.")] = None,
) -> None:
    """Resolve every record against a template."""

    try:
        template_model = load_template(template)
        rows = load_records(records)
        pool = load_asset_pool(assets) if assets else None
        settings = default_settings()
        scenes = asyncio.run(
            _with_cache(
                lambda cache: batch_resolve(template_model, rows, pool, cache),
                rows,
                pool,
                settings,
                enabled=prefetch,
            )
        )
    except (TemplateError, ValueError, OSError) as exc:
        _fail(exc)

    _emit(dump_model(scenes), out)
    _warn_unresolved(scenes)


@app.command("merge")
def merge_command(
    scene: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    template: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    out: Annotated[Path | None, typer.Option(help="Write merged template JSON here.")] = None,
) -> None:
    """Fold layout edits from an edited scene back into the base template."""

    try:
        scene_model = load_scene(scene)
        template_model = load_template(template)
    except (TemplateError, ValueError, OSError) as exc:
        _fail(exc)

    merged, report = merge_layout_with_report(scene_model, template_model)
    _emit(dump_model(merged), out)
    if report.dropped_ids:
        typer.echo(f"INFO: dropped elements: {', '.join(report.dropped_ids)}", err=True)
    if report.added_ids:
        typer.echo(f"INFO: added elements: {', '.join(report.added_ids)}", err=True)


@app.command("synthesize")
def synthesize_command(
    records: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    width: Annotated[float, typer.Option(min=0.1, help="Page width in mm.")],
    height: Annotated[float, typer.Option(min=0.1, help="Page height in mm.")],
    fields: Annotated[
        str | None, typer.Option(help="Comma-separated field names; defaults to record keys.")
    ] = None,
    layout_spec: Annotated[
        Path | None, typer.Option("--layout-spec", exists=True, dir_okay=False)
    ] = None,
    assets: Annotated[
        Path | None, typer.Option(exists=True, dir_okay=False, help="Asset pool JSON.")
    ] = None,
    template_type: Annotated[str | None, typer.Option("--template-type")] = None,
    settings_path: Annotated[
        Path | None, typer.Option("--settings", exists=True, dir_okay=False)
    ] = None,
    out: Annotated[Path | None, typer.Option(help="Write template JSON here.")] = None,
) -> None:
    """Generate a starting template from field names and sample records."""

    try:
        settings = load_settings(settings_path) if settings_path else default_settings()
        rows = load_records(records)
        field_names = _parse_fields(fields, rows)
        spec = load_layout_spec(layout_spec) if layout_spec else None
        pool = load_asset_pool(assets) if assets else None
    except (ValueError, OSError) as exc:
        _fail(exc)

    template_model = synthesize_layout(
        field_names,
        rows[:1],
        width,
        height,
        spec,
        pool,
        settings=settings,
        template_type=template_type,
    )
    _emit(dump_model(template_model), out)


@app.command("fields")
def fields_command(
    template: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
) -> None:
    """List the record fields a template refers to."""

    try:
        template_model = load_template(template)
    except (TemplateError, OSError) as exc:
        _fail(exc)

    for name in extract_used_fields(template_model):
        typer.echo(name)


async def _with_cache(
    resolve: Any,
    rows: Sequence[Record],
    pool: dict[str, str] | None,
    settings: EngineSettings,
    *,
    enabled: bool,
) -> Any:
    if not enabled or not pool:
        return resolve(None)
    async with AssetCache.from_settings(settings.cache) as cache:
        await cache.prefetch_for_records(rows, pool)
        return resolve(cache)


def _parse_fields(raw: str | None, rows: list[dict[str, str]]) -> list[str]:
    if raw:
        names = [name.strip() for name in raw.split(",") if name.strip()]
    else:
        names = list(rows[0]) if rows else []
    if not names:
        raise ValueError("no fields given and records are empty")
    return names


def _emit(payload: Any, out: Path | None) -> None:
    if out is None:
        typer.echo(json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2))
        return
    try:
        write_json_atomic(out, payload)
    except OSError as exc:
        typer.echo(f"ERROR: write output failed: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"INFO: wrote {out}", err=True)


def _warn_unresolved(scenes: Sequence[ResolvedScene]) -> None:
    missing = sorted({token for scene in scenes for token in scene.unresolved_tokens})
    if missing:
        typer.echo(f"WARNING: unresolved tokens: {', '.join(missing)}", err=True)


def _fail(exc: Exception) -> NoReturn:
    typer.echo(f"ERROR: {exc}")
    raise typer.Exit(code=1) from exc


def main() -> None:
    """Console script entrypoint."""

    app()


if __name__ == "__main__":
    main()
