#!/usr/bin/env python3
"""
Note Batch Renderer
Pairs background images with phrases (in order) and renders one note per pair.

Usage:
    python batch_render.py <image_dir_or_files...> -p phrases.txt -o <output_dir> [options]

Examples:
    # One phrase per line, images taken in name order
    python batch_render.py ./photos -p phrases.txt -o ./notes

    # Same author caption on every note, portrait template
    python batch_render.py a.jpg b.jpg -p phrases.txt -o ./notes --caption "@me" --template story

    # Parallel workers
    python batch_render.py ./photos -p phrases.txt -o ./notes --workers 4

Phrases may contain a literal \\n to force a paragraph break inside one note.
"""

import argparse
import json
import logging
import os
import sys
import traceback
from concurrent.futures import ProcessPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from note_engine import NoteEngine, NoteRenderRequest, load_template_cfg, apply_overrides
from pan_zoom import ImageTransform

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[batch_render] %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(os.getenv("INKCARD_LOG_LEVEL", "INFO").upper())
logger.propagate = False

DEFAULT_EXTENSIONS = ["jpg", "jpeg", "png", "webp", "bmp"]
BASE_DIR = Path(__file__).resolve().parent
DEFAULT_TEMPLATE_DIR = BASE_DIR / "templates" / "square"


def get_image_files(paths, extensions, recursive=False):
    """
    Collect image files from given paths, preserving the order of the
    arguments; files inside a directory are taken in name order.
    """
    image_files: List[Path] = []
    extensions = [ext.lower().strip('.') for ext in extensions]

    for path_str in paths:
        path = Path(path_str)

        if not path.exists():
            logger.warning(f"Path does not exist: {path}")
            continue

        if path.is_file():
            if path.suffix.lower().strip('.') in extensions:
                image_files.append(path)
            else:
                logger.warning(f"Skipping non-image file: {path}")

        elif path.is_dir():
            pattern = path.rglob("*") if recursive else path.glob("*")
            found = [p for p in pattern if p.is_file() and p.suffix.lower().strip('.') in extensions]
            image_files.extend(sorted(found))

    seen = set()
    ordered = []
    for p in image_files:
        if p not in seen:
            seen.add(p)
            ordered.append(p)
    return ordered


def read_phrases(path: Path) -> List[str]:
    raw = path.read_text(encoding="utf-8-sig")
    return [line.strip().replace("\\n", "\n") for line in raw.splitlines() if line.strip()]


def pair_items(images: List[Path], phrases: List[str]) -> List[Tuple[Path, str]]:
    if len(images) != len(phrases):
        logger.warning(
            f"Number of images ({len(images)}) does not match number of phrases ({len(phrases)}); "
            f"processing {min(len(images), len(phrases))} pair(s)"
        )
    return list(zip(images, phrases))


def generate_output_path(index: int, output_dir, aspect_ratio: str) -> Path:
    """Output name for the index-th (0-based) pair, e.g. note_1_9x16.png."""
    return Path(output_dir) / f"note_{index + 1}_{aspect_ratio.replace(':', 'x')}.png"


def process_single_item(args_tuple) -> Dict[str, Any]:
    """
    Render a single note.

    Args:
        args_tuple: (index, image_path, phrase, caption, output_path, template_root, overrides)
    """
    index, image_path, phrase, caption, output_path, template_root, overrides = args_tuple

    try:
        start_time = datetime.now()
        output_path.parent.mkdir(parents=True, exist_ok=True)

        request = NoteRenderRequest(
            image_path=str(image_path),
            output_path=str(output_path),
            text=phrase,
            template_root=str(template_root),
            overrides=overrides,
            caption=caption,
            transform=ImageTransform.reset(),
        )
        ok = NoteEngine(request).render()
        duration = (datetime.now() - start_time).total_seconds()

        return {
            'index': index,
            'input_file': str(image_path),
            'output_file': str(output_path),
            'phrase': phrase,
            'processing_time': duration,
            'status': 'success' if ok else 'error',
            'error': None if ok else 'render failed (see log)',
        }

    except Exception as e:
        return {
            'index': index,
            'input_file': str(image_path),
            'output_file': str(output_path),
            'phrase': phrase,
            'status': 'error',
            'error': f"{type(e).__name__}: {str(e)}",
            'traceback': traceback.format_exc(),
        }


def print_progress(completed, total, current_file=""):
    """Print progress bar."""
    percent = (completed / total) * 100 if total > 0 else 0
    bar_length = 40
    filled = int(bar_length * completed / total) if total > 0 else 0
    bar = '█' * filled + '░' * (bar_length - filled)

    print(f"\r[{bar}] {completed}/{total} ({percent:.1f}%) - {current_file[:50]}", end='', flush=True)


def save_report(results, output_dir, report_name="batch_report.json"):
    """Save processing report to JSON file."""
    report_path = Path(output_dir) / report_name

    total = len(results)
    successful = sum(1 for r in results if r['status'] == 'success')
    errors = sum(1 for r in results if r['status'] == 'error')
    total_time = sum(r.get('processing_time', 0) for r in results)

    report = {
        'summary': {
            'total_items': total,
            'successful': successful,
            'errors': errors,
            'total_processing_time': round(total_time, 2),
            'timestamp': datetime.now().isoformat()
        },
        'results': sorted(results, key=lambda r: r['index'])
    }

    report_path.parent.mkdir(parents=True, exist_ok=True)
    with open(report_path, 'w', encoding='utf-8') as f:
        json.dump(report, f, indent=2, ensure_ascii=False)

    return report_path


def build_tasks(
    pairs: List[Tuple[Path, str]],
    output_dir,
    template_root: Path,
    caption: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    skip_existing: bool = False,
):
    cfg = apply_overrides(load_template_cfg(template_root), overrides)
    aspect_ratio = str(cfg.get("canvas", {}).get("aspect_ratio", "1:1"))
    tasks = []
    for index, (image_path, phrase) in enumerate(pairs):
        output_path = generate_output_path(index, output_dir, aspect_ratio)
        if skip_existing and output_path.exists():
            logger.info(f"Skipping existing: {output_path}")
            continue
        tasks.append((index, image_path, phrase, caption, output_path, template_root, overrides))
    return tasks


def run_batch(tasks, workers: int = 1, show_progress: bool = True) -> List[Dict[str, Any]]:
    results = []
    if workers == 1:
        for i, task in enumerate(tasks):
            if show_progress:
                print_progress(i, len(tasks), task[1].name)
            results.append(process_single_item(task))
        if show_progress:
            print_progress(len(tasks), len(tasks), "Complete")
    else:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(process_single_item, task): task for task in tasks}

            completed = 0
            for future in as_completed(futures):
                task = futures[future]
                results.append(future.result())
                completed += 1
                if show_progress:
                    print_progress(completed, len(tasks), task[1].name)
    if show_progress:
        print()
    return sorted(results, key=lambda r: r['index'])


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Render one note per (image, phrase) pair',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('inputs', nargs='+', help='Background image files or directories')
    parser.add_argument('-p', '--phrases', required=True, type=Path, help='Text file with one phrase per line')
    parser.add_argument('-o', '--output', required=True, help='Output directory for rendered notes')
    parser.add_argument('-c', '--caption', help='Author caption applied to every note')
    parser.add_argument('--template-root', type=Path, default=DEFAULT_TEMPLATE_DIR, help=f'Template folder (default: {DEFAULT_TEMPLATE_DIR})')
    parser.add_argument('--template', help='Template id from the registry (overrides --template-root)')
    parser.add_argument('--override', action='append', default=[], help='Template override as key=value (dotted keys). Repeatable.')
    parser.add_argument('-w', '--workers', type=int, default=1, help='Number of parallel workers (default: 1)')
    parser.add_argument('-r', '--recursive', action='store_true', help='Search directories recursively')
    parser.add_argument('-e', '--extensions', nargs='+', default=DEFAULT_EXTENSIONS, help='Image extensions to include')
    parser.add_argument('--report', default='batch_report.json', help='Name of the report file (default: batch_report.json)')
    parser.add_argument('--skip-existing', action='store_true', help='Skip notes whose output already exists')
    parser.add_argument('--dry-run', action='store_true', help='List pairs without rendering')

    args = parser.parse_args(argv)

    if args.workers < 1:
        print(f"Error: Workers must be at least 1 (got {args.workers})")
        return 1

    if not args.phrases.exists():
        print(f"Error: Phrases file not found: {args.phrases}")
        return 1

    template_root = args.template_root
    if args.template:
        from template_registry import TemplateNotFound, get_template_folder
        try:
            template_root = get_template_folder(args.template)
        except TemplateNotFound:
            print(f"Error: Unknown template: {args.template}")
            return 1

    from cli.note_renderer import collect_overrides
    try:
        overrides = collect_overrides(args.override)
    except argparse.ArgumentTypeError as exc:
        print(f"Error: {exc}")
        return 1

    images = get_image_files(args.inputs, args.extensions, args.recursive)
    phrases = read_phrases(args.phrases)
    if not images or not phrases:
        print("Error: at least one image and one phrase are required")
        return 1

    pairs = pair_items(images, phrases)
    tasks = build_tasks(pairs, args.output, Path(template_root), args.caption, overrides or None, args.skip_existing)

    if not tasks:
        print("No notes to render (all outputs already exist)")
        return 0

    print(f"Will render {len(tasks)} note(s) into {args.output}")

    if args.dry_run:
        print("\n=== DRY RUN MODE ===")
        for _, image_path, phrase, _, output_path, _, _ in tasks:
            print(f"  {image_path} + {phrase[:40]!r} -> {output_path}")
        return 0

    Path(args.output).mkdir(parents=True, exist_ok=True)
    results = run_batch(tasks, workers=args.workers)
    report_path = save_report(results, args.output, args.report)

    successful = sum(1 for r in results if r['status'] == 'success')
    errors = [r for r in results if r['status'] == 'error']

    print("\n" + "=" * 60)
    print("BATCH COMPLETE")
    print("=" * 60)
    print(f"Total notes: {len(results)}")
    print(f"Successful: {successful}")
    print(f"Errors: {len(errors)}")
    print(f"\nReport saved to: {report_path}")

    for result in errors:
        print(f"\n{result['input_file']}:")
        print(f"  {result['error']}")

    return 0 if not errors else 1


if __name__ == "__main__":
    sys.exit(main())
