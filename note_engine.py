"""
note_engine.py - NOTE COMPOSITOR
- Cover-fits a background photo (with pan/zoom) into a 1:1 or 9:16 canvas
- Lays out **bold** / _italic_ markup text centered on the canvas, with ink shadow
- Optional author caption anchored below the text block
- One compose_note() pass shared by preview and full-resolution export
"""

from dataclasses import dataclass, field
from pathlib import Path
from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont, ImageOps
import io
import json
import math
import os
import logging
from typing import Callable, Dict, List, Optional, Tuple, Any
from dotenv import load_dotenv

from markup_layout import Document, StyleFlags, layout_document, measure_line
from pan_zoom import ImageTransform, clamp_scale

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[note_engine] %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(os.getenv("INKCARD_LOG_LEVEL", "INFO").upper())
logger.propagate = False

# Canvas geometry per aspect-ratio mode
CANVAS_SIZES: Dict[str, Tuple[int, int]] = {
    "1:1": (1080, 1080),
    "9:16": (1080, 1920),
}
DEFAULT_ASPECT_RATIO = "1:1"
DEFAULT_FONT_FAMILY = "Dancing Script"
DEFAULT_FONT_SIZE = 64
DEFAULT_CAPTION_FONT_SIZE = 36
DEFAULT_MAX_TEXT_WIDTH_FRACTION = 0.8
DEFAULT_LINE_HEIGHT_FACTOR = 1.4

# Caption anchor, in line-height / caption-size units
CAPTION_GAP_LINES = 3.5
CAPTION_DROP_FACTOR = 0.8
CAPTION_RIGHT_FRACTION = 0.9
CAPTION_INSET_FACTOR = 0.5

SYNTHETIC_ITALIC_SHEAR = 0.2
FONT_EXTENSIONS = (".ttf", ".otf", ".ttc")
SYSTEM_FONT_DIRS = (
    Path("/usr/share/fonts"),
    Path("/usr/local/share/fonts"),
    Path.home() / ".fonts",
    Path.home() / ".local/share/fonts",
    Path("/Library/Fonts"),
    Path.home() / "Library/Fonts",
    Path("C:/Windows/Fonts"),
)

RGBA = Tuple[int, int, int, int]

# ---------- Utilities ----------

def load_template_cfg(template_root: Path):
    cfg_path = template_root / "template.json"
    if not cfg_path.exists():
        raise FileNotFoundError(f"Missing template.json at {cfg_path}")
    return json.loads(cfg_path.read_text(encoding="utf-8"))

def apply_overrides(cfg: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply overrides in place; dotted keys ("text.color") address nested sections."""
    for key, value in (overrides or {}).items():
        parts = key.split(".")
        node = cfg
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
    return cfg

def parse_color(value) -> RGBA:
    if isinstance(value, (tuple, list)):
        channels = [int(c) for c in value]
        if len(channels) == 3:
            channels.append(255)
        if len(channels) != 4 or not all(0 <= c <= 255 for c in channels):
            raise ValueError(f"Invalid color: {value!r}")
        return tuple(channels)
    return ImageColor.getcolor(str(value), "RGBA")

def load_background(path) -> Image.Image:
    with Image.open(path) as im:
        im = ImageOps.exif_transpose(im)
        return im.convert("RGB")

def default_font_dirs() -> List[Path]:
    dirs = [Path(p) for p in os.getenv("INKCARD_FONT_DIRS", "").split(os.pathsep) if p.strip()]
    dirs.append(BASE_DIR / "fonts")
    dirs.extend(SYSTEM_FONT_DIRS)
    return dirs

# ---------- Configuration values ----------

@dataclass(frozen=True)
class ShadowSpec:
    color: RGBA
    blur: float
    offset_x: int
    offset_y: int

TEXT_SHADOW = ShadowSpec((0, 0, 0, 230), 15, 3, 3)
CAPTION_SHADOW = ShadowSpec((0, 0, 0, 178), 8, 2, 2)

@dataclass(frozen=True)
class GeometryConfig:
    canvas_width: int
    canvas_height: int
    max_text_width_fraction: float = DEFAULT_MAX_TEXT_WIDTH_FRACTION
    font_size_px: float = DEFAULT_FONT_SIZE
    line_height_factor: float = DEFAULT_LINE_HEIGHT_FACTOR

    @classmethod
    def for_aspect(cls, aspect_ratio: str, font_size_px: float = DEFAULT_FONT_SIZE, **kwargs) -> "GeometryConfig":
        if aspect_ratio not in CANVAS_SIZES:
            raise ValueError(f"Unsupported aspect ratio {aspect_ratio!r}; expected one of {sorted(CANVAS_SIZES)}")
        width, height = CANVAS_SIZES[aspect_ratio]
        return cls(width, height, font_size_px=font_size_px, **kwargs)

    @property
    def line_height(self) -> float:
        return self.font_size_px * self.line_height_factor

    @property
    def max_text_width(self) -> float:
        return self.canvas_width * self.max_text_width_fraction

@dataclass(frozen=True)
class CaptionSpec:
    text: str
    style: StyleFlags = StyleFlags()
    font_size_px: float = DEFAULT_CAPTION_FONT_SIZE

@dataclass(frozen=True)
class RenderOptions:
    ink_color: Any = "#000000"
    font_family: str = DEFAULT_FONT_FAMILY
    base_style: StyleFlags = StyleFlags()
    caption_style: StyleFlags = StyleFlags()
    caption_font_size: float = DEFAULT_CAPTION_FONT_SIZE
    text_shadow: ShadowSpec = TEXT_SHADOW
    caption_shadow: ShadowSpec = CAPTION_SHADOW

    def __post_init__(self):
        object.__setattr__(self, "ink_color", parse_color(self.ink_color))

# ---------- Fonts ----------

@dataclass
class FontFace:
    font: Any
    size: int
    synthetic_bold: bool = False
    synthetic_italic: bool = False

    @property
    def stroke_width(self) -> int:
        return max(1, round(self.size / 36)) if self.synthetic_bold else 0

def _style_from_face_name(style_name: str) -> Tuple[bool, bool]:
    lowered = (style_name or "").lower()
    bold = any(word in lowered for word in ("bold", "black", "heavy"))
    italic = "italic" in lowered or "oblique" in lowered
    return bold, italic

class FontBook:
    """Locates pre-installed font families by the family name each file reports."""

    def __init__(self, font_dirs=None):
        self.font_dirs = [Path(d) for d in font_dirs] if font_dirs is not None else default_font_dirs()
        self._index: Optional[Dict[str, Dict[Tuple[bool, bool], Path]]] = None
        self._fonts: Dict[Tuple[Optional[Path], int], Any] = {}
        self._missing: set = set()

    def _scan(self) -> Dict[str, Dict[Tuple[bool, bool], Path]]:
        index: Dict[str, Dict[Tuple[bool, bool], Path]] = {}
        for font_dir in self.font_dirs:
            if not font_dir.is_dir():
                continue
            for path in sorted(font_dir.rglob("*")):
                if path.suffix.lower() not in FONT_EXTENSIONS:
                    continue
                try:
                    family, style_name = ImageFont.truetype(str(path), 12).getname()
                except OSError:
                    continue
                if not family:
                    continue
                faces = index.setdefault(family.lower(), {})
                faces.setdefault(_style_from_face_name(style_name), path)
        logger.debug("font scan: %d famil(ies) across %d dir(s)", len(index), len(self.font_dirs))
        return index

    @property
    def index(self) -> Dict[str, Dict[Tuple[bool, bool], Path]]:
        if self._index is None:
            self._index = self._scan()
        return self._index

    def families(self) -> List[str]:
        return sorted(self.index)

    def _load(self, path: Optional[Path], size: int):
        key = (path, size)
        if key not in self._fonts:
            if path is None:
                self._fonts[key] = ImageFont.load_default(size=size)
            else:
                self._fonts[key] = ImageFont.truetype(str(path), size)
        return self._fonts[key]

    def face(self, family: str, style: StyleFlags, size: float) -> FontFace:
        px = max(1, int(round(size)))
        wanted = (style.bold, style.italic)
        faces = self.index.get((family or "").lower(), {})
        if wanted in faces:
            return FontFace(self._load(faces[wanted], px), px)
        # nearest available face, synthesize what is missing
        for bold, italic in (wanted, (style.bold, False), (False, style.italic), (False, False)):
            if (bold, italic) in faces:
                return FontFace(
                    self._load(faces[(bold, italic)], px),
                    px,
                    synthetic_bold=style.bold and not bold,
                    synthetic_italic=style.italic and not italic,
                )
        if faces:
            path = next(iter(faces.values()))
            return FontFace(self._load(path, px), px, synthetic_bold=style.bold, synthetic_italic=style.italic)
        if family not in self._missing:
            self._missing.add(family)
            logger.warning("font family %r not found, using bundled default font", family)
        return FontFace(self._load(None, px), px, synthetic_bold=style.bold, synthetic_italic=style.italic)

_default_font_book: Optional[FontBook] = None

def get_font_book() -> FontBook:
    global _default_font_book
    if _default_font_book is None:
        _default_font_book = FontBook()
    return _default_font_book

# ---------- Drawing surface ----------

_ANCHORS = {"left": "lm", "center": "mm", "right": "rm"}

class NoteSurface:
    """Pillow-backed raster surface with the small 2D-context API the compositor needs."""

    def __init__(self, width: int = 0, height: int = 0, font_book: Optional[FontBook] = None):
        self.font_book = font_book or get_font_book()
        self.image: Optional[Image.Image] = None
        self.width = 0
        self.height = 0
        self._face: Optional[FontFace] = None
        self._fill: RGBA = (0, 0, 0, 255)
        self._shadow: Optional[ShadowSpec] = None
        if width and height:
            self.configure(width, height)

    def configure(self, width: int, height: int) -> None:
        """(Re)allocate the backing raster; like resizing a canvas, this clears it."""
        self.image = Image.new("RGBA", (int(width), int(height)), (0, 0, 0, 0))
        self.width, self.height = self.image.size
        self._shadow = None

    def clear(self, color=(0, 0, 0, 0)) -> None:
        ImageDraw.Draw(self.image).rectangle([0, 0, self.width, self.height], fill=parse_color(color))

    def draw_image(self, image: Image.Image, placement: "Placement") -> None:
        """Draw `image` scaled into `placement`, clipped to the surface."""
        if placement.width <= 0 or placement.height <= 0:
            return
        x0 = max(0.0, placement.x)
        y0 = max(0.0, placement.y)
        x1 = min(float(self.width), placement.x + placement.width)
        y1 = min(float(self.height), placement.y + placement.height)
        if x1 <= x0 or y1 <= y0:
            return
        kx = placement.width / image.width
        ky = placement.height / image.height
        box = (
            max(0.0, (x0 - placement.x) / kx),
            max(0.0, (y0 - placement.y) / ky),
            min(float(image.width), (x1 - placement.x) / kx),
            min(float(image.height), (y1 - placement.y) / ky),
        )
        dest = (int(math.floor(x0)), int(math.floor(y0)))
        size = (max(1, int(math.ceil(x1)) - dest[0]), max(1, int(math.ceil(y1)) - dest[1]))
        region = image.convert("RGBA").resize(size, Image.LANCZOS, box=box)
        self.image.paste(region, dest)

    def set_font(self, style: StyleFlags, size: float, family: str = DEFAULT_FONT_FAMILY) -> None:
        self._face = self.font_book.face(family, style, size)

    def set_fill(self, color) -> None:
        self._fill = parse_color(color)

    def set_shadow(self, shadow: Optional[ShadowSpec]) -> None:
        self._shadow = shadow

    def measure_text(self, text: str) -> float:
        if not text:
            return 0.0
        return float(self._face.font.getlength(text))

    def _text_mask(self, text: str, anchor: str, pad: int) -> Tuple[Image.Image, int, int]:
        face = self._face
        stroke = face.stroke_width
        bbox = face.font.getbbox(text, anchor=anchor, stroke_width=stroke)
        left, top = int(math.floor(bbox[0])), int(math.floor(bbox[1]))
        right, bottom = int(math.ceil(bbox[2])), int(math.ceil(bbox[3]))
        slant = int(math.ceil(SYNTHETIC_ITALIC_SHEAR * (bottom - top))) if face.synthetic_italic else 0
        pad += slant
        mask = Image.new("L", (right - left + 2 * pad, bottom - top + 2 * pad), 0)
        origin = (pad - left, pad - top)
        ImageDraw.Draw(mask).text(origin, text, font=face.font, fill=255, anchor=anchor, stroke_width=stroke, stroke_fill=255)
        if face.synthetic_italic:
            mask = mask.transform(
                mask.size,
                Image.AFFINE,
                (1, SYNTHETIC_ITALIC_SHEAR, -SYNTHETIC_ITALIC_SHEAR * origin[1], 0, 1, 0),
                resample=Image.BICUBIC,
            )
        return mask, origin[0], origin[1]

    def _paste_mask(self, mask: Image.Image, color: RGBA, dest: Tuple[int, int]) -> None:
        alpha = color[3]
        if alpha <= 0:
            return
        if alpha < 255:
            mask = mask.point(lambda v: v * alpha // 255)
        self.image.paste(Image.new("RGBA", mask.size, color[:3] + (255,)), dest, mask)

    def fill_text(self, text: str, x: float, y: float, align: str = "left") -> None:
        """Draw `text` with its vertical middle on y; x is the left/center/right edge per align."""
        if not text or not text.strip() or self._face is None:
            return
        anchor = _ANCHORS.get(align, "lm")
        shadow = self._shadow
        pad = 2
        if shadow is not None:
            pad += int(math.ceil(shadow.blur)) * 2
        mask, ox, oy = self._text_mask(text, anchor, pad)
        dest = (int(round(x)) - ox, int(round(y)) - oy)
        if shadow is not None and shadow.color[3] > 0:
            blurred = mask.filter(ImageFilter.GaussianBlur(shadow.blur / 2)) if shadow.blur > 0 else mask
            self._paste_mask(blurred, shadow.color, (dest[0] + int(shadow.offset_x), dest[1] + int(shadow.offset_y)))
        self._paste_mask(mask, self._fill, dest)

    def encode(self, fmt: str = "PNG") -> bytes:
        buf = io.BytesIO()
        out = self.image if fmt.upper() == "PNG" else self.image.convert("RGB")
        out.save(buf, format=fmt)
        return buf.getvalue()

    def save(self, path) -> None:
        path = Path(path)
        out = self.image if path.suffix.lower() == ".png" else self.image.convert("RGB")
        out.save(path)

    def to_preview(self, max_side: int) -> Image.Image:
        preview = self.image.copy()
        preview.thumbnail((max_side, max_side), Image.LANCZOS)
        return preview

# ---------- Background placement ----------

@dataclass(frozen=True)
class Placement:
    x: float
    y: float
    width: float
    height: float

    def covers(self, canvas_w: float, canvas_h: float, tolerance: float = 1e-6) -> bool:
        return (
            self.x <= tolerance
            and self.y <= tolerance
            and self.x + self.width >= canvas_w - tolerance
            and self.y + self.height >= canvas_h - tolerance
        )

def fit_background(img_w: int, img_h: int, canvas_w: int, canvas_h: int, transform: ImageTransform) -> Placement:
    """
    Cover-fit the image into the canvas, then apply pan/zoom.

    The long axis is centered and shifted by the pan offset; the cross axis
    starts at the pan offset. The final rectangle is clamped so it always
    contains the canvas; the clamp wins over the raw offsets, so at scale 1.0
    the cross-axis pan has no effect.
    """
    if img_w <= 0 or img_h <= 0:
        return Placement(0.0, 0.0, float(canvas_w), float(canvas_h))
    scale = clamp_scale(transform.scale)
    img_aspect = img_w / img_h
    canvas_aspect = canvas_w / canvas_h
    if img_aspect > canvas_aspect:
        draw_h = canvas_h * scale
        draw_w = img_w * (draw_h / img_h)
        x = (canvas_w - draw_w) / 2 + transform.offset_x
        y = transform.offset_y
    else:
        draw_w = canvas_w * scale
        draw_h = img_h * (draw_w / img_w)
        x = transform.offset_x
        y = (canvas_h - draw_h) / 2 + transform.offset_y
    x = min(0.0, max(canvas_w - draw_w, x))
    y = min(0.0, max(canvas_h - draw_h, y))
    return Placement(x, y, draw_w, draw_h)

# ---------- Text placement ----------

@dataclass(frozen=True)
class PlacedRun:
    text: str
    style: StyleFlags
    x: float
    y: float
    width: float

@dataclass(frozen=True)
class PlacedCaption:
    text: str
    style: StyleFlags
    font_size_px: float
    x: float
    y: float

@dataclass
class TextPlan:
    block_top: float
    line_height: float
    baselines: List[float] = field(default_factory=list)
    runs: List[PlacedRun] = field(default_factory=list)
    caption: Optional[PlacedCaption] = None

def plan_text(
    document: Document,
    caption: Optional[CaptionSpec],
    geometry: GeometryConfig,
    measure_width: Callable[[str, StyleFlags], float],
) -> TextPlan:
    canvas_w = geometry.canvas_width
    line_height = geometry.line_height
    count = len(document.lines)
    block_top = geometry.canvas_height / 2 - (count * line_height) / 2
    plan = TextPlan(block_top=block_top, line_height=line_height)

    for idx, line in enumerate(document.lines):
        baseline = block_top + line_height / 2 + idx * line_height
        plan.baselines.append(baseline)
        if not line:
            continue
        line_width = measure_line(line, measure_width)
        x = (canvas_w - line_width) / 2
        for run in line:
            width = measure_width(run.text, run.style)
            plan.runs.append(PlacedRun(run.text, run.style, x, baseline, width))
            x += width

    if caption is not None and caption.text.strip():
        caption_y = block_top + count * line_height + caption.font_size_px * CAPTION_DROP_FACTOR + line_height * CAPTION_GAP_LINES
        caption_x = canvas_w * CAPTION_RIGHT_FRACTION - caption.font_size_px * CAPTION_INSET_FACTOR
        plan.caption = PlacedCaption(caption.text.strip(), caption.style, caption.font_size_px, caption_x, caption_y)
    return plan

# ---------- Composition ----------

def compose_note(
    surface: Optional[NoteSurface],
    image: Image.Image,
    text: str,
    caption_text: Optional[str],
    geometry: GeometryConfig,
    transform: ImageTransform,
    options: RenderOptions,
) -> bool:
    """Draw background, text block and caption into `surface`. False only if the surface is unusable."""
    if surface is None:
        logger.error("compose_note: no drawing surface available")
        return False
    try:
        surface.configure(geometry.canvas_width, geometry.canvas_height)
    except (MemoryError, ValueError, OSError) as exc:
        logger.error(f"compose_note: could not allocate {geometry.canvas_width}x{geometry.canvas_height} surface: {exc}")
        return False

    surface.clear()
    placement = fit_background(image.width, image.height, geometry.canvas_width, geometry.canvas_height, transform)
    surface.draw_image(image, placement)
    logger.debug(f"background: {image.width}x{image.height} -> x={placement.x:.1f} y={placement.y:.1f} w={placement.width:.1f} h={placement.height:.1f}")

    family = options.font_family
    font_size = geometry.font_size_px

    def measure(run_text: str, style: StyleFlags) -> float:
        surface.set_font(style, font_size, family)
        return surface.measure_text(run_text)

    document = layout_document(text or "", options.base_style, measure, geometry.max_text_width, font_size)
    caption = None
    if caption_text and caption_text.strip():
        caption = CaptionSpec(caption_text.strip(), options.caption_style, options.caption_font_size)
    plan = plan_text(document, caption, geometry, measure)

    surface.set_fill(options.ink_color)
    surface.set_shadow(options.text_shadow)
    for run in plan.runs:
        surface.set_font(run.style, font_size, family)
        surface.fill_text(run.text, run.x, run.y, align="left")

    if plan.caption is not None:
        surface.set_font(plan.caption.style, plan.caption.font_size_px, family)
        surface.set_shadow(options.caption_shadow)
        surface.fill_text(plan.caption.text, plan.caption.x, plan.caption.y, align="right")

    surface.set_shadow(None)
    logger.debug(f"compose_note: {len(document.lines)} line(s), {len(plan.runs)} run(s), caption={'yes' if plan.caption else 'no'}")
    return True

def render_preview(
    image: Image.Image,
    text: str,
    caption_text: Optional[str],
    geometry: GeometryConfig,
    transform: ImageTransform,
    options: RenderOptions,
    max_side: int = 540,
    font_book: Optional[FontBook] = None,
) -> Optional[Image.Image]:
    """Compose at full resolution, then downsize for display."""
    surface = NoteSurface(font_book=font_book)
    if not compose_note(surface, image, text, caption_text, geometry, transform, options):
        return None
    return surface.to_preview(max_side)

def export_png(
    image: Image.Image,
    text: str,
    caption_text: Optional[str],
    geometry: GeometryConfig,
    transform: ImageTransform,
    options: RenderOptions,
    font_book: Optional[FontBook] = None,
) -> Optional[bytes]:
    surface = NoteSurface(font_book=font_book)
    if not compose_note(surface, image, text, caption_text, geometry, transform, options):
        return None
    return surface.encode("PNG")

def settings_from_cfg(cfg: Dict[str, Any], transform: Optional[ImageTransform] = None):
    """Build (GeometryConfig, RenderOptions, ImageTransform) from a template config."""
    canvas_cfg = cfg.get("canvas", {})
    text_cfg = cfg.get("text", {})
    caption_cfg = cfg.get("caption", {})
    image_cfg = cfg.get("image", {})

    geometry = GeometryConfig.for_aspect(
        str(canvas_cfg.get("aspect_ratio", DEFAULT_ASPECT_RATIO)),
        font_size_px=float(text_cfg.get("font_size", DEFAULT_FONT_SIZE)),
        max_text_width_fraction=float(text_cfg.get("max_width_pct", DEFAULT_MAX_TEXT_WIDTH_FRACTION * 100)) / 100.0,
        line_height_factor=float(text_cfg.get("line_height_factor", DEFAULT_LINE_HEIGHT_FACTOR)),
    )
    options = RenderOptions(
        ink_color=text_cfg.get("color", "#000000"),
        font_family=text_cfg.get("font_family", DEFAULT_FONT_FAMILY),
        base_style=StyleFlags.from_name(text_cfg.get("base_style", "normal")),
        caption_style=StyleFlags.from_name(caption_cfg.get("style", "normal")),
        caption_font_size=float(caption_cfg.get("font_size", DEFAULT_CAPTION_FONT_SIZE)),
    )
    if transform is None:
        transform = ImageTransform(
            offset_x=float(image_cfg.get("offset_x", 0.0)),
            offset_y=float(image_cfg.get("offset_y", 0.0)),
            scale=float(image_cfg.get("scale", 1.0)),
        )
    return geometry, options, transform

# ---------- Core engine ----------

@dataclass
class NoteRenderRequest:
    image_path: str
    output_path: str
    text: str
    template_root: str
    overrides: Optional[Dict] = None
    caption: Optional[str] = None
    transform: Optional[ImageTransform] = None
    preview_path: Optional[str] = None
    preview_max_side: int = 540

class NoteEngine:
    def __init__(self, request: NoteRenderRequest, font_book: Optional[FontBook] = None):
        self.request = request
        self.font_book = font_book

    def render(self) -> bool:
        root = Path(self.request.template_root)
        try:
            cfg = load_template_cfg(root)
            if self.request.overrides:
                apply_overrides(cfg, self.request.overrides)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Could not load template config from {root}: {exc}")
            return False

        logger.info(f"Starting render - image: {self.request.image_path}")

        image_path = Path(self.request.image_path)
        if not image_path.exists():
            logger.error(f"Background image not found: {image_path}")
            return False
        try:
            background = load_background(image_path)
        except OSError as exc:
            logger.error(f"Could not decode background image {image_path}: {exc}")
            return False
        logger.info(f"Background dimensions: {background.width}x{background.height}")

        try:
            geometry, options, transform = settings_from_cfg(cfg, self.request.transform)
        except ValueError as exc:
            logger.error(f"Invalid template settings in {root}: {exc}")
            return False

        caption = self.request.caption
        if caption is None:
            caption = cfg.get("caption", {}).get("text")

        surface = NoteSurface(font_book=self.font_book)
        if not compose_note(surface, background, self.request.text, caption, geometry, transform, options):
            return False

        output_path = Path(self.request.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            surface.save(output_path)
            if self.request.preview_path:
                surface.to_preview(self.request.preview_max_side).save(self.request.preview_path)
        except OSError as exc:
            logger.error(f"Failed to write output {output_path}: {exc}", exc_info=True)
            return False

        logger.info(f"Render completed successfully ({geometry.canvas_width}x{geometry.canvas_height}) -> {output_path}")
        return True

# ---------- Public API ----------

def render_note(image_path: str, output_path: str, text: str, template_root: str, overrides: dict = None, caption: str = None):
    """Main engine entrypoint."""
    request = NoteRenderRequest(
        image_path=image_path,
        output_path=output_path,
        text=text,
        template_root=template_root,
        overrides=overrides,
        caption=caption,
    )
    engine = NoteEngine(request)
    return engine.render()

if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Render a text note over a background image")
    parser.add_argument("--image", type=str, required=True)
    parser.add_argument("--output", type=str, required=True)
    parser.add_argument("--text", type=str, required=True)
    parser.add_argument("--template-root", type=str, required=True)
    parser.add_argument("--caption", type=str)
    parser.add_argument("--overrides", type=str)
    args = parser.parse_args()

    overrides = None
    if args.overrides:
        overrides = json.loads(args.overrides)

    ok = render_note(
        image_path=args.image,
        output_path=args.output,
        text=args.text,
        template_root=args.template_root,
        overrides=overrides,
        caption=args.caption,
    )
    if not ok:
        raise SystemExit(1)
