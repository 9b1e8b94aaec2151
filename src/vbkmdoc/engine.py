"""Single-document engine interface, shared value types and the PyMuPDF engine."""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

LOG = logging.getLogger("vbkmdoc")

PasswordProvider = Callable[[str], Optional[str]]
EngineFactory = Callable[[Path, Optional[PasswordProvider]], "DocumentEngine"]

MAX_PASSWORD_ATTEMPTS = 3


class VbkmError(Exception):
    """Base class for every error raised by vbkmdoc."""


class ConstituentOpenError(VbkmError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Unable to open {path}: {reason}")
        self.path = path
        self.reason = reason


class PageOutOfRangeError(VbkmError, IndexError):
    def __init__(self, page_no: int, page_count: int) -> None:
        super().__init__(f"Page {page_no} out of range [1, {page_count}]")
        self.page_no = page_no
        self.page_count = page_count


class RenderTarget(str, Enum):
    VIEW = "view"
    PRINT = "print"
    EXPORT = "export"


class DocumentProperty(str, Enum):
    TITLE = "title"
    AUTHOR = "author"
    SUBJECT = "subject"
    KEYWORDS = "keywords"
    CREATOR = "creator"
    PRODUCER = "producer"
    CREATION_DATE = "creationDate"
    MODIFICATION_DATE = "modDate"
    FORMAT = "format"


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def is_empty(self) -> bool:
        return self.x1 <= self.x0 or self.y1 <= self.y0

    def contains(self, pt: Point) -> bool:
        return self.x0 <= pt.x <= self.x1 and self.y0 <= pt.y <= self.y1

    def union(self, other: "Rect") -> "Rect":
        if self.is_empty:
            return other
        if other.is_empty:
            return self
        return Rect(
            min(self.x0, other.x0),
            min(self.y0, other.y0),
            max(self.x1, other.x1),
            max(self.y1, other.y1),
        )


EMPTY_RECT = Rect(0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class Destination:
    """Target of an outline entry or a link.

    `page` is 1-based in the numbering of whichever document produced it.
    """

    kind: str
    page: Optional[int] = None
    x: Optional[float] = None
    y: Optional[float] = None
    zoom: Optional[float] = None
    name: Optional[str] = None
    uri: Optional[str] = None

    def with_page(self, page: Optional[int]) -> "Destination":
        return replace(self, page=page)


@dataclass
class OutlineNode:
    title: str
    destination: Optional[Destination] = None
    children: List["OutlineNode"] = field(default_factory=list)
    kind: str = "native"
    is_open: bool = False
    error: Optional[str] = None

    def iter_nodes(self) -> Iterable["OutlineNode"]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()


@dataclass(frozen=True)
class PageElement:
    kind: str
    rect: Rect
    page: int
    text: Optional[str] = None
    destination: Optional[Destination] = None


class AbortCookie:
    """Cancellation flag handed to an engine's render call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()


class DocumentEngine(ABC):
    """Capability set of one opened document. Page numbers are 1-based."""

    kind: str = "engine"
    default_file_ext: str = ""
    file_dpi: float = 72.0
    # engines that tolerate concurrent calls on one instance set this
    thread_safe: bool = False

    @property
    @abstractmethod
    def page_count(self) -> int: ...

    @abstractmethod
    def page_mediabox(self, page_no: int) -> Rect: ...

    def page_content_box(self, page_no: int, target: RenderTarget = RenderTarget.VIEW) -> Rect:
        return self.page_mediabox(page_no)

    @abstractmethod
    def render_bitmap(
        self,
        page_no: int,
        zoom: float,
        rotation: int,
        page_rect: Optional[Rect] = None,
        target: RenderTarget = RenderTarget.VIEW,
        cookie: Optional[AbortCookie] = None,
    ) -> Any: ...

    @abstractmethod
    def transform_point(self, pt: Point, page_no: int, zoom: float, rotation: int, inverse: bool = False) -> Point: ...

    def transform_rect(self, rect: Rect, page_no: int, zoom: float, rotation: int, inverse: bool = False) -> Rect:
        a = self.transform_point(Point(rect.x0, rect.y0), page_no, zoom, rotation, inverse)
        b = self.transform_point(Point(rect.x1, rect.y1), page_no, zoom, rotation, inverse)
        return Rect(min(a.x, b.x), min(a.y, b.y), max(a.x, b.x), max(a.y, b.y))

    @abstractmethod
    def extract_page_text(self, page_no: int) -> Tuple[str, List[Rect]]: ...

    def native_outline(self) -> Optional[OutlineNode]:
        return None

    def named_destination(self, name: str) -> Optional[Destination]:
        return None

    def page_label(self, page_no: int) -> str:
        self._check_page(page_no)
        return str(page_no)

    def page_by_label(self, label: str) -> Optional[int]:
        try:
            page_no = int(label.strip())
        except ValueError:
            return None
        return page_no if 1 <= page_no <= self.page_count else None

    def page_elements(self, page_no: int) -> List[PageElement]:
        return []

    def element_at(self, page_no: int, pt: Point) -> Optional[PageElement]:
        for element in self.page_elements(page_no):
            if element.rect.contains(pt):
                return element
        return None

    def has_clip_optimizations(self, page_no: int) -> bool:
        return True

    def bench_load_page(self, page_no: int) -> bool:
        return 1 <= page_no <= self.page_count

    def get_property(self, prop: DocumentProperty) -> Optional[str]:
        return None

    def supports_annotation(self, for_saving: bool = False) -> bool:
        return False

    def update_user_annotations(self, annotations: List[Any]) -> None:
        return None

    def file_data(self) -> Optional[bytes]:
        return None

    def save_file_as(self, path: Path, include_user_annots: bool = False) -> bool:
        return False

    def clone(self) -> Optional["DocumentEngine"]:
        return None

    def close(self) -> None:
        return None

    def _check_page(self, page_no: int) -> None:
        if page_no < 1 or page_no > self.page_count:
            raise PageOutOfRangeError(page_no, self.page_count)

    def __enter__(self) -> "DocumentEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class EngineRegistry:
    """Maps file extensions to engine factories."""

    def __init__(self) -> None:
        self._factories: Dict[str, EngineFactory] = {}

    @property
    def extensions(self) -> List[str]:
        return sorted(self._factories)

    def register(self, extensions: Iterable[str], factory: EngineFactory) -> None:
        for ext in extensions:
            ext = ext.lower()
            if not ext.startswith("."):
                ext = "." + ext
            self._factories[ext] = factory

    def is_supported(self, path: Path) -> bool:
        return Path(path).suffix.lower() in self._factories

    def open(self, path: Path, password_provider: Optional[PasswordProvider] = None) -> DocumentEngine:
        path = Path(path)
        factory = self._factories.get(path.suffix.lower())
        if factory is None:
            raise ConstituentOpenError(str(path), f"unsupported file type '{path.suffix}'")
        if not path.exists() or not path.is_file():
            raise ConstituentOpenError(str(path), "file not found")
        try:
            return factory(path, password_provider)
        except ConstituentOpenError:
            raise
        except Exception as exc:
            raise ConstituentOpenError(str(path), str(exc)) from exc


PYMUPDF_EXTENSIONS = (".pdf", ".xps", ".oxps", ".epub", ".cbz", ".fb2", ".mobi", ".svg")


def default_registry() -> EngineRegistry:
    registry = EngineRegistry()
    registry.register(PYMUPDF_EXTENSIONS, PyMuPdfEngine.open)
    return registry


def _import_fitz():
    try:
        import fitz  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"PyMuPDF not available: {exc}") from exc
    return fitz


def _rect_from_fitz(r: Any) -> Rect:
    return Rect(float(r[0]), float(r[1]), float(r[2]), float(r[3]))


def _destination_from_fitz(fitz: Any, info: Dict[str, Any]) -> Optional[Destination]:
    """Convert a PyMuPDF link or TOC destination dict into a Destination."""
    kind = info.get("kind", fitz.LINK_NONE)
    point = info.get("to")
    x = float(point.x) if point is not None and hasattr(point, "x") else None
    y = float(point.y) if point is not None and hasattr(point, "y") else None
    zoom = info.get("zoom") or None
    if kind == fitz.LINK_GOTO:
        page = info.get("page", -1)
        if page is None or page < 0:
            return None
        return Destination(kind="goto", page=int(page) + 1, x=x, y=y, zoom=zoom)
    if kind == fitz.LINK_NAMED:
        name = info.get("nameddest") or info.get("name")
        return Destination(kind="named", name=name) if name else None
    if kind == fitz.LINK_URI:
        return Destination(kind="uri", uri=info.get("uri"))
    if kind == fitz.LINK_LAUNCH:
        return Destination(kind="launch", uri=info.get("file"))
    return None


def build_outline_tree(entries: List[Tuple[int, str, Optional[Destination]]]) -> Optional[OutlineNode]:
    """Nest a flat (level, title, destination) list into an OutlineNode tree."""
    if not entries:
        return None
    root = OutlineNode(title="", kind="root")
    stack: List[Tuple[int, OutlineNode]] = [(0, root)]

    for level, title, destination in entries:
        node = OutlineNode(title=str(title).strip(), destination=destination)
        while len(stack) > 1 and level <= stack[-1][0]:
            stack.pop()
        stack[-1][1].children.append(node)
        stack.append((level, node))

    return root


class PyMuPdfEngine(DocumentEngine):
    """DocumentEngine over any format PyMuPDF opens."""

    kind = "enginePyMuPdf"
    default_file_ext = ".pdf"

    def __init__(self, doc: Any, path: Path, password: Optional[str] = None) -> None:
        self._fitz = _import_fitz()
        self._doc = doc
        self.path = Path(path)
        self._password = password
        self._outline: Optional[OutlineNode] = None
        self._outline_loaded = False
        self._named: Optional[Dict[str, Any]] = None

    @classmethod
    def open(cls, path: Path, password_provider: Optional[PasswordProvider] = None) -> "PyMuPdfEngine":
        fitz = _import_fitz()
        path = Path(path)
        try:
            doc = fitz.open(str(path))
        except Exception as exc:
            raise ConstituentOpenError(str(path), f"corrupt or unreadable document ({exc})") from exc

        password = None
        if doc.needs_pass:
            authenticated = False
            for _ in range(MAX_PASSWORD_ATTEMPTS):
                password = password_provider(str(path)) if password_provider else None
                if password is None:
                    break
                if doc.authenticate(password):
                    authenticated = True
                    break
                LOG.debug("Wrong password for %s", path)
            if not authenticated:
                doc.close()
                raise ConstituentOpenError(str(path), "password required")

        LOG.debug("Opened %s (%d pages)", path, doc.page_count)
        return cls(doc, path, password)

    @property
    def page_count(self) -> int:
        return int(self._doc.page_count)

    def _page(self, page_no: int) -> Any:
        self._check_page(page_no)
        return self._doc.load_page(page_no - 1)

    def page_mediabox(self, page_no: int) -> Rect:
        return _rect_from_fitz(self._page(page_no).rect)

    def page_content_box(self, page_no: int, target: RenderTarget = RenderTarget.VIEW) -> Rect:
        page = self._page(page_no)
        box = EMPTY_RECT
        for block in page.get_text("blocks"):
            box = box.union(Rect(float(block[0]), float(block[1]), float(block[2]), float(block[3])))
        for info in page.get_image_info():
            box = box.union(_rect_from_fitz(info["bbox"]))
        return _rect_from_fitz(page.rect) if box.is_empty else box

    def _matrix(self, page: Any, zoom: float, rotation: int) -> Any:
        fitz = self._fitz
        matrix = fitz.Matrix(zoom, zoom).prerotate(rotation % 360)
        bbox = page.rect * matrix
        return matrix * fitz.Matrix(1, 0, 0, 1, -bbox.x0, -bbox.y0)

    def render_bitmap(
        self,
        page_no: int,
        zoom: float,
        rotation: int,
        page_rect: Optional[Rect] = None,
        target: RenderTarget = RenderTarget.VIEW,
        cookie: Optional[AbortCookie] = None,
    ) -> Any:
        from PIL import Image

        page = self._page(page_no)
        if cookie is not None and cookie.aborted:
            return None
        fitz = self._fitz
        matrix = fitz.Matrix(zoom, zoom).prerotate(rotation % 360)
        clip = fitz.Rect(page_rect.x0, page_rect.y0, page_rect.x1, page_rect.y1) if page_rect else None
        pix = page.get_pixmap(matrix=matrix, clip=clip, alpha=False)
        if cookie is not None and cookie.aborted:
            return None
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

    def transform_point(self, pt: Point, page_no: int, zoom: float, rotation: int, inverse: bool = False) -> Point:
        matrix = self._matrix(self._page(page_no), zoom, rotation)
        if inverse:
            matrix = ~matrix
        res = self._fitz.Point(pt.x, pt.y) * matrix
        return Point(float(res.x), float(res.y))

    def extract_page_text(self, page_no: int) -> Tuple[str, List[Rect]]:
        page = self._page(page_no)
        chars: List[str] = []
        coords: List[Rect] = []
        raw = page.get_text("rawdict")
        for block in raw.get("blocks", []):
            if block.get("type", 0) != 0:
                continue
            for line in block.get("lines", []):
                if chars and chars[-1] != "\n":
                    chars.append("\n")
                    coords.append(EMPTY_RECT)
                for span in line.get("spans", []):
                    for char in span.get("chars", []):
                        chars.append(char["c"])
                        coords.append(_rect_from_fitz(char["bbox"]))
        return "".join(chars), coords

    def native_outline(self) -> Optional[OutlineNode]:
        if not self._outline_loaded:
            entries = []
            for item in self._doc.get_toc(simple=False):
                level, title, page = item[0], item[1], item[2]
                info = item[3] if len(item) > 3 and isinstance(item[3], dict) else {}
                destination = _destination_from_fitz(self._fitz, info) if info else None
                # the TOC's own 1-based page column wins over the link dict
                if page and page > 0 and (destination is None or destination.kind == "goto"):
                    destination = (destination or Destination(kind="goto")).with_page(int(page))
                entries.append((int(level), title, destination))
            self._outline = build_outline_tree(entries)
            self._outline_loaded = True
        return copy.deepcopy(self._outline)

    def named_destination(self, name: str) -> Optional[Destination]:
        if self._named is None:
            self._named = self._doc.resolve_names() if self._doc.is_pdf else {}
        info = self._named.get(name)
        if not info or info.get("page", -1) < 0:
            return None
        to = info.get("to") or (None, None)
        return Destination(
            kind="goto",
            page=int(info["page"]) + 1,
            x=to[0],
            y=to[1],
            zoom=info.get("zoom") or None,
            name=name,
        )

    def page_label(self, page_no: int) -> str:
        label = self._page(page_no).get_label()
        return label or str(page_no)

    def page_by_label(self, label: str) -> Optional[int]:
        if self._doc.is_pdf:
            pages = self._doc.get_page_numbers(label)
            if pages:
                return int(pages[0]) + 1
        return super().page_by_label(label)

    def page_elements(self, page_no: int) -> List[PageElement]:
        elements = []
        for link in self._page(page_no).get_links():
            elements.append(
                PageElement(
                    kind="link",
                    rect=_rect_from_fitz(link["from"]),
                    page=page_no,
                    destination=_destination_from_fitz(self._fitz, link),
                )
            )
        return elements

    def bench_load_page(self, page_no: int) -> bool:
        try:
            self._page(page_no)
        except Exception as exc:
            LOG.debug("Loading page %d of %s failed: %s", page_no, self.path, exc)
            return False
        return True

    def get_property(self, prop: DocumentProperty) -> Optional[str]:
        value = (self._doc.metadata or {}).get(prop.value)
        return value or None

    def file_data(self) -> Optional[bytes]:
        return self.path.read_bytes()

    def save_file_as(self, path: Path, include_user_annots: bool = False) -> bool:
        if not self._doc.is_pdf:
            return False
        self._doc.save(str(path))
        return True

    def clone(self) -> Optional["PyMuPdfEngine"]:
        password = self._password
        return PyMuPdfEngine.open(self.path, lambda _path: password)

    def close(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None
