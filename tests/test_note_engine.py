import io
import json
from pathlib import Path

import pytest
from PIL import Image, ImageChops

import note_engine as engine
from markup_layout import Document, StyleFlags, StyledRun, layout_document
from pan_zoom import ImageTransform

NORMAL = StyleFlags()
BOLD = StyleFlags(bold=True)


def char_width(text, style):
    return 10 * len(text)


@pytest.fixture
def font_book():
    # no directories: always the bundled default font, independent of the host
    return engine.FontBook(font_dirs=[])


@pytest.fixture
def background():
    image = Image.new("RGB", (1600, 900), (30, 120, 200))
    for x in range(0, 1600, 100):
        image.paste((200, 180, 40), (x, 0, x + 50, 900))
    return image


def write_template(root: Path, **sections):
    root.mkdir(parents=True, exist_ok=True)
    config = {
        "id": "t",
        "name": "Test",
        "canvas": {"aspect_ratio": "1:1"},
        "text": {"font_family": "Nope Sans", "font_size": 48, "color": "#000000"},
        "caption": {"font_size": 30, "style": "italic"},
    }
    config.update(sections)
    (root / "template.json").write_text(json.dumps(config), encoding="utf-8")
    return root


# ---------- config helpers ----------

def test_load_template_cfg_reads_json(tmp_path):
    template_dir = write_template(tmp_path / "template")

    cfg = engine.load_template_cfg(template_dir)

    assert cfg["canvas"] == {"aspect_ratio": "1:1"}


def test_load_template_cfg_missing_file(tmp_path):
    template_dir = tmp_path / "template"
    template_dir.mkdir()

    with pytest.raises(FileNotFoundError):
        engine.load_template_cfg(template_dir)


def test_apply_overrides_supports_dotted_keys():
    cfg = {"text": {"color": "#000000", "font_size": 40}}

    engine.apply_overrides(cfg, {"text.color": "#ff0000", "canvas.aspect_ratio": "9:16", "flat": 1})

    assert cfg == {
        "text": {"color": "#ff0000", "font_size": 40},
        "canvas": {"aspect_ratio": "9:16"},
        "flat": 1,
    }


def test_parse_color_accepts_hex_names_and_tuples():
    assert engine.parse_color("#1e40af") == (30, 64, 175, 255)
    assert engine.parse_color("black") == (0, 0, 0, 255)
    assert engine.parse_color((1, 2, 3)) == (1, 2, 3, 255)
    with pytest.raises(ValueError):
        engine.parse_color("not-a-color")
    with pytest.raises(ValueError):
        engine.parse_color((300, 0, 0))


def test_render_options_rejects_bad_ink():
    with pytest.raises(ValueError):
        engine.RenderOptions(ink_color="#12")


def test_geometry_for_aspect():
    square = engine.GeometryConfig.for_aspect("1:1", font_size_px=50)
    story = engine.GeometryConfig.for_aspect("9:16")

    assert (square.canvas_width, square.canvas_height) == (1080, 1080)
    assert (story.canvas_width, story.canvas_height) == (1080, 1920)
    assert square.line_height == pytest.approx(70)
    assert square.max_text_width == pytest.approx(864)
    with pytest.raises(ValueError):
        engine.GeometryConfig.for_aspect("4:3")


def test_settings_from_cfg_maps_template_sections():
    cfg = {
        "canvas": {"aspect_ratio": "9:16"},
        "text": {"font_size": 70, "max_width_pct": 70, "base_style": "bold", "color": "#991b1b", "font_family": "Caveat"},
        "caption": {"font_size": 28, "style": "bold-italic"},
        "image": {"offset_x": 12, "offset_y": -4, "scale": 9},
    }

    geometry, options, transform = engine.settings_from_cfg(cfg)

    assert geometry.canvas_height == 1920
    assert geometry.font_size_px == 70
    assert geometry.max_text_width_fraction == pytest.approx(0.7)
    assert options.base_style == BOLD
    assert options.caption_style == StyleFlags(bold=True, italic=True)
    assert options.ink_color == (153, 27, 27, 255)
    assert options.font_family == "Caveat"
    assert transform == ImageTransform(12, -4, 3.0)


# ---------- background placement ----------

@pytest.mark.parametrize("img_size", [(1600, 900), (900, 1600), (1080, 1080), (4000, 500), (300, 5000)])
@pytest.mark.parametrize("canvas", [(1080, 1080), (1080, 1920)])
@pytest.mark.parametrize("scale", [1.0, 1.3, 3.0])
@pytest.mark.parametrize("offset", [(0, 0), (250, -400), (-5000, 5000)])
def test_cover_fit_always_contains_canvas(img_size, canvas, scale, offset):
    placement = engine.fit_background(*img_size, *canvas, ImageTransform(offset[0], offset[1], scale))

    assert placement.covers(*canvas)
    assert placement.width / placement.height == pytest.approx(img_size[0] / img_size[1])


def test_cover_fit_wide_image_centers_horizontally():
    placement = engine.fit_background(2000, 1000, 1080, 1080, ImageTransform())

    assert placement == engine.Placement(-540.0, 0.0, 2160.0, 1080.0)


def test_cover_fit_tall_image_centers_vertically():
    placement = engine.fit_background(1000, 3000, 1080, 1080, ImageTransform())

    assert placement == engine.Placement(0.0, -1080.0, 1080.0, 3240.0)


def test_cover_fit_pan_moves_image_within_bounds():
    placement = engine.fit_background(2000, 1000, 1080, 1080, ImageTransform(offset_x=100, offset_y=-300, scale=2))

    # width 4320, centered at -1620, panned right by 100; cross axis follows the pan
    assert placement.x == pytest.approx(-1520)
    assert placement.y == pytest.approx(-300)
    assert placement.height == pytest.approx(2160)


def test_cover_fit_cross_axis_pinned_at_unit_scale():
    placement = engine.fit_background(2000, 1000, 1080, 1080, ImageTransform(offset_y=80))

    assert placement.y == 0.0


def test_draw_image_fills_whole_canvas(font_book):
    surface = engine.NoteSurface(1080, 1920, font_book=font_book)
    red = Image.new("RGB", (200, 100), (255, 0, 0))

    surface.draw_image(red, engine.fit_background(200, 100, 1080, 1920, ImageTransform(scale=1.7)))

    for xy in [(0, 0), (1079, 0), (0, 1919), (1079, 1919), (540, 960)]:
        assert surface.image.getpixel(xy) == (255, 0, 0, 255)


# ---------- text placement ----------

def test_plan_centers_each_line_independently():
    geometry = engine.GeometryConfig(1000, 1000, font_size_px=20, line_height_factor=1.5)
    doc = layout_document("abcd\n**ab**", NORMAL, char_width, 800, 20)

    plan = engine.plan_text(doc, None, geometry, char_width)

    assert plan.block_top == pytest.approx(500 - 30)
    assert plan.baselines == [pytest.approx(485), pytest.approx(515)]
    assert plan.runs[0] == engine.PlacedRun("abcd", NORMAL, 480.0, pytest.approx(485), 40)
    assert plan.runs[1].style == BOLD
    assert plan.runs[1].x == pytest.approx(490)


def test_plan_advances_runs_left_to_right():
    geometry = engine.GeometryConfig(1000, 1000, font_size_px=20)
    doc = Document(lines=((StyledRun("ab ", NORMAL), StyledRun("cd", BOLD)),), font_size_px=20)

    plan = engine.plan_text(doc, None, geometry, char_width)

    assert [run.x for run in plan.runs] == [pytest.approx(475), pytest.approx(505)]
    assert all(run.y == pytest.approx(500) for run in plan.runs)


def test_blank_line_spacing_is_two_line_heights():
    geometry = engine.GeometryConfig(1080, 1080, font_size_px=40)
    doc = layout_document("a\n\nb", NORMAL, char_width, 800, 40)

    plan = engine.plan_text(doc, None, geometry, char_width)

    assert len(plan.baselines) == 3
    assert plan.baselines[2] - plan.baselines[0] == pytest.approx(2 * geometry.line_height)
    assert [run.text for run in plan.runs] == ["a", "b"]


def test_caption_sits_below_block_right_aligned():
    geometry = engine.GeometryConfig(1080, 1080, font_size_px=40)
    doc = layout_document("one\ntwo", NORMAL, char_width, 800, 40)
    caption = engine.CaptionSpec("  @author  ", StyleFlags(italic=True), 30)

    plan = engine.plan_text(doc, caption, geometry, char_width)

    # block top 484, two lines of 56, drop 24, gap 3.5 * 56
    assert plan.caption.text == "@author"
    assert plan.caption.y == pytest.approx(484 + 112 + 24 + 196)
    assert plan.caption.x == pytest.approx(1080 * 0.9 - 15)


def test_caption_anchors_to_center_without_text():
    geometry = engine.GeometryConfig(1080, 1080, font_size_px=40)
    empty = layout_document("", NORMAL, char_width, 800, 40)

    plan = engine.plan_text(empty, engine.CaptionSpec("@me", NORMAL, 30), geometry, char_width)

    assert plan.runs == []
    assert plan.caption.y == pytest.approx(540 + 24 + 196)


def test_blank_caption_is_skipped():
    geometry = engine.GeometryConfig(1080, 1080)
    empty = layout_document("", NORMAL, char_width, 800, 40)

    assert engine.plan_text(empty, engine.CaptionSpec("   "), geometry, char_width).caption is None


# ---------- fonts ----------

def test_font_book_falls_back_to_default_font(font_book):
    face = font_book.face("Definitely Missing", StyleFlags(bold=True, italic=True), 40)

    assert face.size == 40
    assert face.synthetic_bold and face.synthetic_italic
    assert face.stroke_width >= 1
    assert face.font.getlength("abc") > 0


def test_font_book_reuses_loaded_fonts(font_book):
    first = font_book.face("x", NORMAL, 30)
    second = font_book.face("x", BOLD, 30)

    assert first.font is second.font
    assert not first.synthetic_bold
    assert second.synthetic_bold


# ---------- composition ----------

def compose(surface, image, text, caption=None, aspect="1:1", transform=None, **option_kwargs):
    geometry = engine.GeometryConfig.for_aspect(aspect, font_size_px=48)
    options = engine.RenderOptions(**option_kwargs)
    return engine.compose_note(surface, image, text, caption, geometry, transform or ImageTransform(), options)


def test_compose_without_surface_fails(background):
    assert compose(None, background, "hello") is False


def test_compose_reports_allocation_failure(background, font_book):
    class BrokenSurface(engine.NoteSurface):
        def configure(self, width, height):
            raise MemoryError("no room")

    assert compose(BrokenSurface(font_book=font_book), background, "hello") is False


def test_compose_is_idempotent_across_fresh_surfaces(background, font_book):
    text = "Write **this** down\n\n_softly_, then **loudly _twice_**"
    first = engine.NoteSurface(font_book=font_book)
    second = engine.NoteSurface(font_book=font_book)

    assert compose(first, background, text, "@author", transform=ImageTransform(30, 0, 1.4)) is True
    assert compose(second, background, text, "@author", transform=ImageTransform(30, 0, 1.4)) is True

    assert first.image.size == (1080, 1080)
    assert ImageChops.difference(first.image.convert("RGB"), second.image.convert("RGB")).getbbox() is None


def test_compose_pixels_differ_for_different_inputs(background, font_book):
    first = engine.NoteSurface(font_book=font_book)
    second = engine.NoteSurface(font_book=font_book)

    assert compose(first, background, "hello **world**", "@x") is True
    assert compose(second, background, "totally different", None, transform=ImageTransform(2, 0, 2.5), ink_color="red") is True

    # every pixel is opaque once the background is drawn; only color channels can differ
    assert ImageChops.difference(first.image, second.image).getchannel("A").getbbox() is None
    assert ImageChops.difference(first.image.convert("RGB"), second.image.convert("RGB")).getbbox() is not None


def test_compose_reuses_surface_with_new_geometry(background, font_book):
    surface = engine.NoteSurface(font_book=font_book)

    assert compose(surface, background, "first", aspect="9:16") is True
    assert surface.image.size == (1080, 1920)
    assert compose(surface, background, "second", aspect="1:1") is True
    assert surface.image.size == (1080, 1080)


def test_compose_empty_text_draws_only_background(font_book):
    plain = Image.new("RGB", (800, 800), (10, 120, 200))
    surface = engine.NoteSurface(font_book=font_book)

    assert compose(surface, plain, "") is True

    lo, hi = zip(*surface.image.getextrema()[:3])
    assert all(abs(a - b) <= 2 for a, b in zip(lo, (10, 120, 200)))
    assert all(abs(a - b) <= 2 for a, b in zip(hi, (10, 120, 200)))


def test_compose_empty_text_still_draws_caption(font_book):
    plain = Image.new("RGB", (800, 800), "white")
    without = engine.NoteSurface(font_book=font_book)
    with_caption = engine.NoteSurface(font_book=font_book)

    assert compose(without, plain, "") is True
    assert compose(with_caption, plain, "", caption="@someone") is True

    diff = ImageChops.difference(without.image.convert("RGB"), with_caption.image.convert("RGB")).getbbox()
    assert diff is not None
    # right-aligned caption ends left of 90% of the canvas width (plus shadow)
    assert diff[2] <= int(1080 * 0.9) + 20
    assert diff[1] > 540


def test_compose_draws_ink_near_center(font_book):
    plain = Image.new("RGB", (800, 800), "white")
    surface = engine.NoteSurface(font_book=font_book)

    assert compose(surface, plain, "Hello there", ink_color="#991b1b") is True

    region = surface.image.crop((300, 500, 780, 580)).convert("RGB")
    assert any(px != (255, 255, 255) for px in region.getdata())


def test_compose_resets_shadow(background, font_book):
    surface = engine.NoteSurface(font_book=font_book)

    compose(surface, background, "shadowed", caption="@me")

    assert surface._shadow is None


def test_compose_survives_oversized_token_and_tiny_font(background, font_book):
    surface = engine.NoteSurface(font_book=font_book)
    geometry = engine.GeometryConfig.for_aspect("1:1", font_size_px=0.2)

    assert engine.compose_note(surface, background, "x" * 300, None, geometry, ImageTransform(), engine.RenderOptions()) is True
    assert compose(surface, background, "W" * 120 + " **" + "M" * 80) is True


def test_preview_matches_downscaled_export(background, font_book):
    geometry = engine.GeometryConfig.for_aspect("9:16", font_size_px=60)
    options = engine.RenderOptions(ink_color="#064e3b", caption_style=StyleFlags(italic=True))
    args = (background, "Same **pixels**\neverywhere", "@me", geometry, ImageTransform(0, -200, 2.0), options)

    preview = engine.render_preview(*args, max_side=480, font_book=font_book)
    exported = engine.export_png(*args, font_book=font_book)

    assert exported[:8] == b"\x89PNG\r\n\x1a\n"
    full = Image.open(io.BytesIO(exported))
    assert full.size == (1080, 1920)
    full.thumbnail((480, 480), Image.LANCZOS)
    assert preview.size == full.size
    assert ImageChops.difference(preview.convert("RGB"), full.convert("RGB")).getbbox() is None


# ---------- file-level engine ----------

def make_request(tmp_path, image_path, **kwargs):
    template_root = write_template(tmp_path / "template")
    return engine.NoteRenderRequest(
        image_path=str(image_path),
        output_path=str(tmp_path / "out" / "note.png"),
        text=kwargs.pop("text", "Hello **world**"),
        template_root=str(template_root),
        **kwargs,
    )


def test_note_engine_render_writes_png(tmp_path, background, font_book):
    image_path = tmp_path / "bg.jpg"
    background.save(image_path)
    request = make_request(tmp_path, image_path, caption="@me", preview_path=str(tmp_path / "preview.png"))

    assert engine.NoteEngine(request, font_book=font_book).render() is True

    with Image.open(request.output_path) as out:
        assert out.size == (1080, 1080)
    with Image.open(tmp_path / "preview.png") as preview:
        assert max(preview.size) == 540


def test_note_engine_applies_overrides(tmp_path, background, font_book):
    image_path = tmp_path / "bg.png"
    background.save(image_path)
    request = make_request(tmp_path, image_path, overrides={"canvas.aspect_ratio": "9:16"})

    assert engine.NoteEngine(request, font_book=font_book).render() is True

    with Image.open(request.output_path) as out:
        assert out.size == (1080, 1920)


def test_note_engine_missing_image_returns_false(tmp_path, font_book):
    request = make_request(tmp_path, tmp_path / "missing.jpg")

    assert engine.NoteEngine(request, font_book=font_book).render() is False
    assert not Path(request.output_path).exists()


def test_note_engine_missing_template_returns_false(tmp_path, background, font_book):
    image_path = tmp_path / "bg.png"
    background.save(image_path)
    request = engine.NoteRenderRequest(
        image_path=str(image_path),
        output_path=str(tmp_path / "out" / "note.png"),
        text="hi",
        template_root=str(tmp_path / "nope"),
    )

    assert engine.NoteEngine(request, font_book=font_book).render() is False
    assert not Path(request.output_path).exists()


def test_note_engine_malformed_template_returns_false(tmp_path, background, font_book):
    image_path = tmp_path / "bg.png"
    background.save(image_path)
    template_root = tmp_path / "template"
    template_root.mkdir()
    (template_root / "template.json").write_text("{not json", encoding="utf-8")
    request = engine.NoteRenderRequest(
        image_path=str(image_path),
        output_path=str(tmp_path / "out" / "note.png"),
        text="hi",
        template_root=str(template_root),
    )

    assert engine.NoteEngine(request, font_book=font_book).render() is False


def test_note_engine_undecodable_image_returns_false(tmp_path, font_book):
    image_path = tmp_path / "broken.jpg"
    image_path.write_bytes(b"not an image")
    request = make_request(tmp_path, image_path)

    assert engine.NoteEngine(request, font_book=font_book).render() is False


def test_note_engine_invalid_settings_return_false(tmp_path, background, font_book):
    image_path = tmp_path / "bg.png"
    background.save(image_path)
    request = make_request(tmp_path, image_path, overrides={"canvas.aspect_ratio": "4:3"})

    assert engine.NoteEngine(request, font_book=font_book).render() is False


def test_note_engine_uses_template_caption_when_none_given(tmp_path, background, font_book, monkeypatch):
    image_path = tmp_path / "bg.png"
    background.save(image_path)
    request = make_request(tmp_path, image_path, overrides={"caption.text": "@from-template"})
    seen = {}

    real_compose = engine.compose_note

    def spy(surface, image, text, caption_text, *args):
        seen["caption"] = caption_text
        return real_compose(surface, image, text, caption_text, *args)

    monkeypatch.setattr(engine, "compose_note", spy)

    assert engine.NoteEngine(request, font_book=font_book).render() is True
    assert seen["caption"] == "@from-template"
