from pathlib import Path

import pytest

fitz = pytest.importorskip("fitz")

import vbkmdoc.core as core
from vbkmdoc.engine import (
    AbortCookie,
    ConstituentOpenError,
    Point,
    Rect,
    PyMuPdfEngine,
    default_registry,
)


def _write_pdf(path: Path, pages: int, *, toc=None, prefix="Page", **save_kwargs) -> Path:
    doc = fitz.open()
    for n in range(pages):
        page = doc.new_page(width=200, height=300)
        page.insert_text((20, 40), f"{prefix} {n + 1}")
    if toc:
        doc.set_toc(toc)
    doc.save(str(path), **save_kwargs)
    doc.close()
    return path


def test_open_reports_pages_and_mediabox(tmp_path):
    pdf = _write_pdf(tmp_path / "a.pdf", 3)

    with PyMuPdfEngine.open(pdf) as engine:
        assert engine.page_count == 3
        assert engine.page_mediabox(2) == Rect(0.0, 0.0, 200.0, 300.0)
        assert engine.bench_load_page(3) is True


def test_native_outline_is_nested_with_one_based_pages(tmp_path):
    pdf = _write_pdf(tmp_path / "a.pdf", 3, toc=[[1, "Intro", 1], [2, "Detail", 2], [1, "End", 3]])

    with PyMuPdfEngine.open(pdf) as engine:
        root = engine.native_outline()

    assert [node.title for node in root.children] == ["Intro", "End"]
    assert root.children[0].children[0].title == "Detail"
    assert root.children[0].children[0].destination.page == 2
    assert root.children[1].destination.page == 3


def test_extract_text_returns_one_rect_per_character(tmp_path):
    pdf = _write_pdf(tmp_path / "a.pdf", 2, prefix="Hello")

    with PyMuPdfEngine.open(pdf) as engine:
        text, coords = engine.extract_page_text(2)

    assert "Hello 2" in text
    assert len(coords) == len(text)


def test_render_produces_pillow_image_scaled_and_rotated(tmp_path):
    pdf = _write_pdf(tmp_path / "a.pdf", 1)

    with PyMuPdfEngine.open(pdf) as engine:
        image = engine.render_bitmap(1, 2.0, 0)
        rotated = engine.render_bitmap(1, 2.0, 90)
        cookie = AbortCookie()
        cookie.abort()
        aborted = engine.render_bitmap(1, 1.0, 0, cookie=cookie)

    assert image.size == (400, 600)
    assert image.mode == "RGB"
    assert rotated.size == (600, 400)
    assert aborted is None


def test_transform_round_trips(tmp_path):
    pdf = _write_pdf(tmp_path / "a.pdf", 1)

    with PyMuPdfEngine.open(pdf) as engine:
        for rotation in (0, 90, 180, 270):
            pt = engine.transform_point(Point(10, 20), 1, 1.5, rotation)
            back = engine.transform_point(pt, 1, 1.5, rotation, inverse=True)
            assert back.x == pytest.approx(10)
            assert back.y == pytest.approx(20)
        box = engine.transform_rect(Rect(0, 0, 200, 300), 1, 1.0, 90)

    assert box.x0 == pytest.approx(0)
    assert box.y0 == pytest.approx(0)
    assert box.width == pytest.approx(300)
    assert box.height == pytest.approx(200)


def test_page_labels(tmp_path):
    doc = fitz.open()
    for _ in range(3):
        doc.new_page()
    doc.set_page_labels([{"startpage": 0, "prefix": "A-", "style": "D", "firstpagenum": 1}])
    path = tmp_path / "labels.pdf"
    doc.save(str(path))
    doc.close()

    with PyMuPdfEngine.open(path) as engine:
        assert engine.page_label(2) == "A-2"
        assert engine.page_by_label("A-3") == 3
        assert engine.page_by_label("Z-9") is None


def test_password_protected_document(tmp_path):
    pdf = _write_pdf(
        tmp_path / "locked.pdf",
        1,
        encryption=fitz.PDF_ENCRYPT_AES_256,
        user_pw="secret",
        owner_pw="owner",
    )
    asked = []

    def provider(path):
        asked.append(path)
        return "secret"

    with pytest.raises(ConstituentOpenError):
        PyMuPdfEngine.open(pdf)
    with pytest.raises(ConstituentOpenError):
        PyMuPdfEngine.open(pdf, lambda _path: "wrong")
    with PyMuPdfEngine.open(pdf, provider) as engine:
        assert engine.page_count == 1
    assert asked == [str(pdf)]


def test_default_registry_rejects_corrupt_and_missing_files(tmp_path):
    corrupt = tmp_path / "corrupt.pdf"
    corrupt.write_bytes(b"this is not a pdf")
    registry = default_registry()

    assert registry.is_supported(corrupt)
    with pytest.raises(ConstituentOpenError):
        registry.open(corrupt)
    with pytest.raises(ConstituentOpenError):
        registry.open(tmp_path / "missing.pdf")


def test_composite_over_real_documents(tmp_path):
    _write_pdf(tmp_path / "one.pdf", 9, prefix="One")
    _write_pdf(tmp_path / "two.pdf", 4, prefix="Two", toc=[[1, "Two intro", 1], [1, "Two detail", 2]])
    (tmp_path / "broken.pdf").write_bytes(b"garbage")
    manifest = tmp_path / "set.vbkm"
    manifest.write_text(
        "file: one.pdf\ntitle: First\nfile: broken.pdf\nfile: two.pdf\ntitle: Second\n",
        encoding="utf-8",
    )

    with core.CompositeDocument.create_from_file(manifest) as doc:
        assert doc.page_count == 13
        groups = doc.toc_tree().children
        assert [node.title for node in groups] == ["First", "broken.pdf", "Second"]
        assert groups[1].error is not None
        assert [node.destination.page for node in groups[2].children] == [10, 11]
        assert "Two 2" in doc.extract_page_text(11)[0]
        assert doc.render_bitmap(10, 1.0, 0).size == (200, 300)
        assert doc.page_label(11) == "2"
        assert doc.page_by_label("5") == 5
