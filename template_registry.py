# template_registry.py
from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from note_engine import CANVAS_SIZES

TEMPLATES_ROOT = Path(os.getenv("INKCARD_TEMPLATE_DIR", Path(__file__).resolve().parent / "templates"))

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[template_registry] %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(os.getenv("INKCARD_LOG_LEVEL", "INFO").upper())
logger.propagate = False

class TemplateNotFound(Exception): ...
class TemplateManifestError(Exception): ...

_cache: Dict[str, Dict[str, Any]] = {}

def _manifest_path_from_dir(d: Path) -> Path:
    return d / "template.json"

def _validate_manifest(m: Dict[str, Any], folder: Path) -> Dict[str, Any]:
    required_keys = ["id", "name", "canvas"]
    for k in required_keys:
        if k not in m:
            raise TemplateManifestError(f"{folder.name}: missing key '{k}'")
    canvas = m["canvas"]
    if not isinstance(canvas, dict) or canvas.get("aspect_ratio") not in CANVAS_SIZES:
        raise TemplateManifestError(
            f"{folder.name}: canvas.aspect_ratio must be one of {sorted(CANVAS_SIZES)}"
        )
    for section in ("text", "caption", "image"):
        if section in m and not isinstance(m[section], dict):
            raise TemplateManifestError(f"{folder.name}: '{section}' must be an object")
    m["_folder"] = str(folder)
    return m

def _discover() -> None:
    _cache.clear()
    if not TEMPLATES_ROOT.exists():
        return
    for d in sorted(TEMPLATES_ROOT.iterdir()):
        if not d.is_dir():
            continue
        manifest_path = _manifest_path_from_dir(d)
        if not manifest_path.exists():
            continue
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            manifest = _validate_manifest(manifest, d)
            _cache[manifest["id"]] = manifest
        except (json.JSONDecodeError, TemplateManifestError) as exc:
            # Skip bad templates; keep the rest usable
            logger.warning(f"skip {d.name}: {exc}")

def refresh() -> None:
    _discover()

def _public_view(m: Dict[str, Any]) -> Dict[str, Any]:
    aspect = m["canvas"]["aspect_ratio"]
    width, height = CANVAS_SIZES[aspect]
    return {
        "id": m["id"],
        "name": m.get("name", m["id"]),
        "aspect_ratio": aspect,
        "canvas": {"width": width, "height": height},
        "text": m.get("text", {}),
        "caption": m.get("caption", {}),
    }

def list_templates() -> List[Dict[str, Any]]:
    if not _cache:
        _discover()
    return [_public_view(m) for m in _cache.values()]

def get_template(template_id: str) -> Dict[str, Any]:
    if not _cache:
        _discover()
    if template_id not in _cache:
        raise TemplateNotFound(f"template '{template_id}' not found")
    return _public_view(_cache[template_id])

def get_template_folder(template_id: str) -> Path:
    m = _cache.get(template_id)
    if not m:
        _discover()
        m = _cache.get(template_id)
        if not m:
            raise TemplateNotFound(template_id)
    return Path(m["_folder"])
