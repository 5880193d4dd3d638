#!/usr/bin/env python3
"""
Command-line entrypoint for the note compositor.

Examples:
    # Basic usage
    python cli/note_renderer.py --image photo.jpg --output note.png --text "Hello **world**"

    # Text from a file, author caption, portrait template
    python cli/note_renderer.py --image photo.jpg --output note.png --text-file quote.txt --caption "@me" --template story

    # Pan/zoom the background and override the ink color
    python cli/note_renderer.py --image photo.jpg --output note.png --text "Hi" --scale 1.5 --offset-x -120 --override text.color="#991b1b"
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from note_engine import NoteEngine, NoteRenderRequest  # noqa: E402

DEFAULT_TEMPLATE_DIR = ROOT / "templates" / "square"
STORY_TEMPLATE_DIR = ROOT / "templates" / "story"


def _parse_override(raw: str) -> Tuple[str, Any]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError("Overrides must be provided as key=value")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key cannot be empty")
    value = value.strip()
    if not value:
        return key, ""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return key, parsed


def collect_overrides(raw_items: Optional[Iterable[str]]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not raw_items:
        return overrides
    for raw in raw_items:
        key, value = _parse_override(raw)
        overrides[key] = value
    return overrides


def _format_preview(request: NoteRenderRequest, overrides: Dict[str, Any]) -> str:
    payload = {
        "image": request.image_path,
        "output": request.output_path,
        "template_root": request.template_root,
        "text": request.text,
        "caption": request.caption,
        "preview": request.preview_path,
        "overrides": overrides,
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Render text (with **bold** / _italic_ markup) over a background image.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --image photo.jpg --output note.png --text "Hello **world**"
  %(prog)s --image photo.jpg --output note.png --text-file quote.txt --caption "@me"
  %(prog)s --image photo.jpg --output note.png --text "Hi" --aspect 9:16 --scale 1.4
        """
    )

    parser.add_argument("--image", required=True, dest="image_path", help="Background image to write on.")
    parser.add_argument("--output", required=True, dest="output_path", help="Destination PNG path.")

    text_group = parser.add_argument_group('text input options')
    text_group.add_argument("--text", help="Note text; \\n (a real newline) forces a paragraph break.")
    text_group.add_argument("--text-file", type=Path, help="Read the note text from a file.")
    text_group.add_argument("--caption", help="Author caption drawn below the text block.")

    template_group = parser.add_argument_group('template options')
    template_group.add_argument(
        "--template-root",
        default=None,
        help=f"Template folder (default: {DEFAULT_TEMPLATE_DIR}).",
    )
    template_group.add_argument("--template", help="Template id from the registry (overrides --template-root).")
    template_group.add_argument("--aspect", choices=["1:1", "9:16"], help="Canvas aspect ratio override.")
    template_group.add_argument(
        "--override",
        action="append",
        default=[],
        help="Template override as key=value (supports dotted keys). Repeat for multiple overrides.",
    )

    image_group = parser.add_argument_group('background pan/zoom')
    image_group.add_argument("--offset-x", type=float, default=None, help="Horizontal pan in canvas pixels.")
    image_group.add_argument("--offset-y", type=float, default=None, help="Vertical pan in canvas pixels.")
    image_group.add_argument("--scale", type=float, default=None, help="Zoom factor, clamped to [1.0, 3.0].")

    parser.add_argument("--preview", dest="preview_path", help="Also write a downsized preview PNG here.")
    parser.add_argument("--preview-size", type=int, default=540, help="Longest side of the preview (default: 540).")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve inputs and print payload without rendering.",
    )
    return parser


def _resolve_template_root(args, parser) -> Path:
    if args.template:
        from template_registry import TemplateNotFound, get_template_folder
        try:
            return get_template_folder(args.template)
        except TemplateNotFound:
            parser.error(f"Unknown template: {args.template}")
    if args.template_root:
        return Path(args.template_root).resolve()
    if args.aspect == "9:16":
        return STORY_TEMPLATE_DIR
    return DEFAULT_TEMPLATE_DIR


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    image_path = Path(args.image_path)
    output_path = Path(args.output_path)
    template_root = _resolve_template_root(args, parser)
    try:
        overrides = collect_overrides(args.override)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    if args.aspect:
        overrides["canvas.aspect_ratio"] = args.aspect

    if args.text_file:
        try:
            text = args.text_file.read_text(encoding="utf-8-sig").rstrip("\n")
        except FileNotFoundError:
            parser.error(f"Text file not found: {args.text_file}")
    elif args.text is not None:
        text = args.text
    else:
        parser.error("Either --text or --text-file must be provided.")

    # unspecified pan/zoom parts keep the template's image defaults
    for key, value in (("offset_x", args.offset_x), ("offset_y", args.offset_y), ("scale", args.scale)):
        if value is not None:
            overrides[f"image.{key}"] = value

    if not image_path.exists() and not args.dry_run:
        parser.error(f"Background image not found: {image_path}")
    if not template_root.exists():
        parser.error(f"Template root not found: {template_root}")

    if not args.dry_run:
        output_path.parent.mkdir(parents=True, exist_ok=True)

    request = NoteRenderRequest(
        image_path=str(image_path),
        output_path=str(output_path),
        text=text,
        template_root=str(template_root),
        overrides=overrides or None,
        caption=args.caption,
        preview_path=args.preview_path,
        preview_max_side=args.preview_size,
    )

    if args.dry_run:
        print(_format_preview(request, overrides))
        return 0

    engine = NoteEngine(request)
    success = engine.render()
    if not success:
        return 1
    print(f"[note_renderer] Rendered {output_path}")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
