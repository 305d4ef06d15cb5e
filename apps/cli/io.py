"""CLI I/O helpers: input loaders and atomic output writing."""

from __future__ import annotations

import csv
import json
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from core.layout.spec import LayoutSpec, parse_layout_spec
from core.templates.models import ResolvedScene, Template, load_template_payload
from core.utils.errors import TemplateError


def load_template(path: Path) -> Template:
    """Load a Template JSON file; structural problems raise TemplateError."""

    raw = _read_json(path, kind="Template", error_cls=TemplateError)
    return load_template_payload(raw, source=str(path))


def load_scene(path: Path) -> ResolvedScene:
    """Load an edited scene; plain Template JSON is accepted too."""

    raw = _read_json(path, kind="Scene", error_cls=TemplateError)
    return load_template_payload(raw, source=str(path), model=ResolvedScene)


def load_records(path: Path) -> list[dict[str, str]]:
    """Load records from CSV (header row) or JSON (array, or ``{"records": [...]}``)."""

    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8-sig") as handle:
            return [
                {key: value or "" for key, value in row.items() if key is not None}
                for row in csv.DictReader(handle)
            ]

    raw = _read_json(path, kind="Records", error_cls=ValueError)
    if isinstance(raw, dict):
        raw = raw.get("records")
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ValueError(f"Records JSON must be an array of objects: {path}")
    return [{str(key): _as_text(value) for key, value in item.items()} for item in raw]


def load_asset_pool(path: Path) -> dict[str, str]:
    """Load a ``{filename: url}`` mapping."""

    raw = _read_json(path, kind="Asset pool", error_cls=ValueError)
    if not isinstance(raw, dict):
        raise ValueError(f"Asset pool JSON must be an object: {path}")
    return {str(key): str(value) for key, value in raw.items() if value}


def load_layout_spec(path: Path) -> LayoutSpec:
    raw = _read_json(path, kind="Layout spec", error_cls=ValueError)
    if not isinstance(raw, dict):
        raise ValueError(f"Layout spec JSON must be an object: {path}")
    spec = parse_layout_spec(raw)
    if spec is None:
        raise ValueError(f"Invalid layout spec: {path}")
    return spec


def dump_model(model: BaseModel | Sequence[BaseModel]) -> Any:
    if not isinstance(model, BaseModel):
        return [item.model_dump(mode="json") for item in model]
    return model.model_dump(mode="json")


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON atomically using a temporary file + replace."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f"{path.name}.",
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            json.dump(payload, tmp, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        except Exception:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise

    tmp_path.replace(path)


def _read_json(path: Path, *, kind: str, error_cls: type[Exception]) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise error_cls(f"{kind} file cannot be read: {path}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise error_cls(f"Invalid JSON in {kind.lower()} file: {path}") from exc


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
