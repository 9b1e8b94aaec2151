"""Core pipeline for vbkmdoc: manifest parsing, page index, outline merge, composite document."""

from __future__ import annotations

import contextlib
import logging
import threading
from bisect import bisect_right
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .engine import (
    AbortCookie,
    ConstituentOpenError,
    Destination,
    DocumentEngine,
    DocumentProperty,
    EngineRegistry,
    OutlineNode,
    PageElement,
    PageOutOfRangeError,
    PasswordProvider,
    Point,
    Rect,
    RenderTarget,
    VbkmError,
    default_registry,
)

LOG = logging.getLogger("vbkmdoc")

VBKM_EXTENSION = ".vbkm"
RECORD_PREFIX = "file:"
TITLE_KEY = "title"


class ManifestParseError(VbkmError, ValueError):
    pass


class NoRecordsError(ManifestParseError):
    def __init__(self) -> None:
        super().__init__(f"Manifest contains no '{RECORD_PREFIX}' records")


class EmptyPathError(ManifestParseError):
    def __init__(self, record_index: int) -> None:
        super().__init__(f"Manifest record {record_index + 1} has an empty path")
        self.record_index = record_index


class CompositeLoadError(VbkmError):
    pass


class PageOperationError(VbkmError):
    def __init__(self, action: str, logical_page: int, constituent_index: int, path: str, exc: Exception) -> None:
        super().__init__(
            f"{action} failed for page {logical_page} (constituent {constituent_index + 1}: {path}): {exc}"
        )
        self.action = action
        self.logical_page = logical_page
        self.constituent_index = constituent_index


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        LOG.addHandler(handler)
    for handler in LOG.handlers:
        handler.setLevel(level)


@dataclass
class LoadConfig:
    max_workers: int = 1
    serialize_engine_calls: bool = True
    title: Optional[str] = None


@dataclass(frozen=True)
class ManifestRecord:
    path: str
    outline_title: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    extra_lines: Tuple[str, ...] = ()
    raw: str = ""


@dataclass(frozen=True)
class ParsedManifest:
    records: Tuple[ManifestRecord, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ManifestRecord]:
        return iter(self.records)

    def __getitem__(self, index: int) -> ManifestRecord:
        return self.records[index]


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_manifest_records(text: str) -> List[str]:
    """Split normalized manifest text into raw record spans.

    Each span starts at a line beginning with "file:" and runs up to the next
    such line. Text before the first boundary is dropped.
    """
    records: List[str] = []
    current: Optional[List[str]] = None
    pieces = text.split("\n")
    lines = [piece + "\n" for piece in pieces[:-1]]
    if pieces[-1]:
        lines.append(pieces[-1])
    for line in lines:
        if line.startswith(RECORD_PREFIX):
            if current is not None:
                records.append("".join(current))
            current = [line]
        elif current is not None:
            current.append(line)
    if current is not None:
        records.append("".join(current))
    return records


def parse_manifest_record(raw: str, record_index: int) -> ManifestRecord:
    lines = raw.split("\n")
    _, _, value = lines[0].partition(":")
    path = value.strip()
    if not path:
        raise EmptyPathError(record_index)

    metadata: Dict[str, str] = {}
    extra_lines: List[str] = []
    for line in lines[1:]:
        stripped = line.strip()
        if not stripped:
            continue
        if ":" in stripped:
            key, _, val = stripped.partition(":")
            metadata[key.strip()] = val.strip()
        else:
            extra_lines.append(line.rstrip())

    return ManifestRecord(
        path=path,
        outline_title=metadata.get(TITLE_KEY) or None,
        metadata=metadata,
        extra_lines=tuple(extra_lines),
        raw=raw,
    )


def parse_manifest(data: Union[str, bytes]) -> ParsedManifest:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ManifestParseError(f"Manifest is not valid UTF-8: {exc}") from exc
    data = data.lstrip("\ufeff")
    spans = split_manifest_records(normalize_newlines(data))
    if not spans:
        raise NoRecordsError()
    records = tuple(parse_manifest_record(raw, idx) for idx, raw in enumerate(spans))
    LOG.debug("Parsed manifest with %d records", len(records))
    return ParsedManifest(records=records)


def is_vbkm_file(path: Union[str, Path], sniff: bool = False) -> bool:
    # content sniffing is not supported for manifests
    if sniff:
        return False
    return str(path).lower().endswith(VBKM_EXTENSION)


def resolve_constituent_path(base_dir: Path, declared: str) -> Path:
    path = Path(declared).expanduser()
    return path if path.is_absolute() else base_dir / path


@dataclass(frozen=True)
class PageRange:
    constituent_index: int
    start: int
    count: int

    @property
    def end(self) -> int:
        return self.start + self.count


class PageIndex:
    """Maps 1-based logical pages onto (constituent index, local page)."""

    def __init__(self, ranges: List[PageRange]) -> None:
        self._ranges = list(ranges)
        self._by_constituent = {r.constituent_index: r for r in self._ranges}
        self._filled = [r for r in self._ranges if r.count > 0]
        self._starts = [r.start for r in self._filled]
        self._total = sum(r.count for r in self._ranges)

    @classmethod
    def build(cls, counts: Iterable[Tuple[int, int]]) -> "PageIndex":
        ranges: List[PageRange] = []
        start = 1
        for constituent_index, count in counts:
            if count < 0:
                raise ValueError(f"Negative page count {count} for constituent {constituent_index}")
            ranges.append(PageRange(constituent_index, start, count))
            start += count
        return cls(ranges)

    @classmethod
    def from_page_counts(cls, counts: Iterable[int]) -> "PageIndex":
        return cls.build(enumerate(counts))

    @property
    def ranges(self) -> Tuple[PageRange, ...]:
        return tuple(self._ranges)

    @property
    def total_page_count(self) -> int:
        return self._total

    def resolve(self, logical_page: int) -> Tuple[int, int]:
        if logical_page < 1 or logical_page > self._total:
            raise PageOutOfRangeError(logical_page, self._total)
        entry = self._filled[bisect_right(self._starts, logical_page) - 1]
        return entry.constituent_index, logical_page - entry.start + 1

    def range_of(self, constituent_index: int) -> Tuple[int, int]:
        entry = self._by_constituent[constituent_index]
        return entry.start, entry.count

    def to_logical(self, constituent_index: int, local_page: int) -> int:
        start, count = self.range_of(constituent_index)
        if local_page < 1 or local_page > count:
            raise PageOutOfRangeError(local_page, count)
        return start + local_page - 1


@dataclass
class LoadedConstituent:
    index: int
    record: ManifestRecord
    engine: Optional[DocumentEngine]
    page_count: int = 0
    error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.engine is not None


ConstituentOpener = Callable[[ManifestRecord], DocumentEngine]


def _close_quietly(engine: DocumentEngine, path: str) -> None:
    try:
        engine.close()
    except Exception as exc:
        LOG.debug("Closing %s failed: %s", path, exc)


def _open_constituent(index: int, record: ManifestRecord, opener: ConstituentOpener) -> LoadedConstituent:
    engine: Optional[DocumentEngine] = None
    try:
        engine = opener(record)
        page_count = int(engine.page_count)
    except Exception as exc:
        if engine is not None:
            _close_quietly(engine, record.path)
        error = exc if isinstance(exc, ConstituentOpenError) else ConstituentOpenError(record.path, str(exc))
        LOG.warning("Constituent %d (%s) failed to load: %s", index + 1, record.path, error)
        return LoadedConstituent(index=index, record=record, engine=None, error=str(error))
    LOG.info("Loaded constituent %d (%s): %d pages", index + 1, record.path, page_count)
    return LoadedConstituent(index=index, record=record, engine=engine, page_count=page_count)


def load_constituents(
    manifest: ParsedManifest, opener: ConstituentOpener, max_workers: int = 1
) -> List[LoadedConstituent]:
    """Open every record; the result is in manifest order whatever the completion order."""
    records = list(manifest)
    results: List[Optional[LoadedConstituent]] = [None] * len(records)
    try:
        if max_workers <= 1 or len(records) <= 1:
            for idx, record in enumerate(records):
                results[idx] = _open_constituent(idx, record, opener)
        else:
            with ThreadPoolExecutor(max_workers=min(max_workers, len(records))) as executor:
                futures = {
                    executor.submit(_open_constituent, idx, record, opener): idx
                    for idx, record in enumerate(records)
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
    except BaseException:
        # interrupted: release whatever was opened before re-raising
        for res in results:
            if res is not None and res.engine is not None:
                _close_quietly(res.engine, res.record.path)
        raise
    return [res for res in results if res is not None]


def default_outline_title(path: str) -> str:
    name = PurePosixPath(path.replace("\\", "/")).name
    return name or path


def _translate_destination(
    destination: Optional[Destination], constituent_index: int, page_index: PageIndex
) -> Optional[Destination]:
    if destination is None or destination.page is None:
        return destination
    try:
        return destination.with_page(page_index.to_logical(constituent_index, destination.page))
    except PageOutOfRangeError:
        LOG.debug(
            "Dropping destination to local page %d of constituent %d", destination.page, constituent_index + 1
        )
        return None


def _translate_outline(node: OutlineNode, constituent_index: int, page_index: PageIndex) -> OutlineNode:
    return OutlineNode(
        title=node.title,
        destination=_translate_destination(node.destination, constituent_index, page_index),
        children=[_translate_outline(child, constituent_index, page_index) for child in node.children],
        kind="native",
        is_open=node.is_open,
    )


def merge_outlines(
    constituents: List[LoadedConstituent], page_index: PageIndex, title: Optional[str] = None
) -> OutlineNode:
    root = OutlineNode(title=title or "", kind="root", is_open=True)
    for constituent in constituents:
        start, count = page_index.range_of(constituent.index)
        group = OutlineNode(
            title=constituent.record.outline_title or default_outline_title(constituent.record.path),
            destination=Destination(kind="goto", page=start) if count > 0 else None,
            kind="group",
            error=constituent.error,
        )
        native = constituent.engine.native_outline() if constituent.engine is not None else None
        if native is not None:
            top = native.children if native.kind == "root" else [native]
            group.children = [_translate_outline(node, constituent.index, page_index) for node in top]
        root.children.append(group)
    return root


def serialize_outline(node: OutlineNode) -> List[Dict[str, Any]]:
    return [
        {
            "title": child.title,
            "kind": child.kind,
            "destination": _serialize_destination(child.destination),
            "error": child.error,
            "children": serialize_outline(child),
        }
        for child in node.children
    ]


def _serialize_destination(destination: Optional[Destination]) -> Optional[Dict[str, Any]]:
    if destination is None:
        return None
    data = {
        "kind": destination.kind,
        "page": destination.page,
        "x": destination.x,
        "y": destination.y,
        "zoom": destination.zoom,
        "name": destination.name,
        "uri": destination.uri,
    }
    return {key: value for key, value in data.items() if value is not None}


def _destination_href(destination: Optional[Destination]) -> Optional[str]:
    if destination is None:
        return None
    if destination.page is not None:
        return f"#page-{destination.page}"
    if destination.name:
        return f"#{destination.name}"
    return destination.uri


def outline_to_html(root: OutlineNode) -> str:
    """Render the outline as nested <ul>/<li> lists, the toc.html layout."""
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup("<html><head></head><body></body></html>", "html.parser")
    if root.title:
        title_tag = soup.new_tag("title")
        title_tag.string = root.title
        soup.head.append(title_tag)

    def build_list(nodes: List[OutlineNode]):
        ul = soup.new_tag("ul")
        for node in nodes:
            li = soup.new_tag("li")
            href = _destination_href(node.destination)
            if href:
                link = soup.new_tag("a", href=href)
                link.string = node.title
                li.append(link)
            else:
                li.append(soup.new_string(node.title))
            if node.error:
                li["class"] = "load-error"
                li["title"] = node.error
            if node.children:
                li.append(build_list(node.children))
            ul.append(li)
        return ul

    if root.children:
        soup.body.append(build_list(root.children))
    return str(soup)


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class CompositeDocument(DocumentEngine):
    """One logical document over the constituents listed in a manifest."""

    kind = "enginePdfMulti"
    default_file_ext = VBKM_EXTENSION
    file_dpi = 72.0
    # each constituent engine is guarded by its own lock
    thread_safe = True

    def __init__(
        self,
        manifest: ParsedManifest,
        opener: ConstituentOpener,
        config: Optional[LoadConfig] = None,
    ) -> None:
        self._config = config or LoadConfig()
        self._manifest = manifest
        self.path: Optional[Path] = None
        self._constituents = load_constituents(manifest, opener, self._config.max_workers)
        self._locks = [threading.RLock() for _ in self._constituents]

        if not any(c.is_loaded for c in self._constituents):
            raise CompositeLoadError(f"None of the {len(self._constituents)} constituents could be opened")

        self._index = PageIndex.build((c.index, c.page_count) for c in self._constituents)
        if self._index.total_page_count == 0:
            self.close()
            raise CompositeLoadError("Manifest resolves to zero pages")

        self._toc = merge_outlines(self._constituents, self._index, title=self._config.title)
        LOG.info(
            "Composite document ready: %d constituents, %d failed, %d pages",
            len(self._constituents),
            len(self.load_errors),
            self._index.total_page_count,
        )

    @classmethod
    def create_from_file(
        cls,
        path: Union[str, Path],
        registry: Optional[EngineRegistry] = None,
        password_provider: Optional[PasswordProvider] = None,
        config: Optional[LoadConfig] = None,
    ) -> "CompositeDocument":
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise CompositeLoadError(f"Unable to read manifest {path}: {exc}") from exc
        manifest = parse_manifest(data)

        registry = registry or default_registry()
        base_dir = path.resolve().parent
        config = config or LoadConfig()
        if config.title is None:
            config = replace(config, title=path.stem)

        def opener(record: ManifestRecord) -> DocumentEngine:
            return registry.open(resolve_constituent_path(base_dir, record.path), password_provider)

        doc = cls(manifest, opener, config)
        doc.path = path
        return doc

    @property
    def manifest(self) -> ParsedManifest:
        return self._manifest

    @property
    def constituents(self) -> Tuple[LoadedConstituent, ...]:
        return tuple(self._constituents)

    @property
    def page_index(self) -> PageIndex:
        return self._index

    @property
    def load_errors(self) -> Dict[int, str]:
        return {c.index: c.error for c in self._constituents if c.error is not None}

    @property
    def page_count(self) -> int:
        return self._index.total_page_count

    def _lock_for(self, constituent: LoadedConstituent) -> ContextManager[Any]:
        engine = constituent.engine
        if not self._config.serialize_engine_calls or (engine is not None and engine.thread_safe):
            return contextlib.nullcontext()
        return self._locks[constituent.index]

    def _dispatch(self, action: str, page_no: int, call: Callable[[DocumentEngine, int], Any]) -> Any:
        index, local_page = self._index.resolve(page_no)
        constituent = self._constituents[index]
        LOG.debug("%s: page %d -> constituent %d page %d", action, page_no, index + 1, local_page)
        with self._lock_for(constituent):
            try:
                return call(constituent.engine, local_page)
            except Exception as exc:
                raise PageOperationError(action, page_no, index, constituent.record.path, exc) from exc

    def _loaded(self) -> Iterator[LoadedConstituent]:
        return (c for c in self._constituents if c.is_loaded)

    def page_mediabox(self, page_no: int) -> Rect:
        return self._dispatch("mediabox", page_no, lambda engine, local: engine.page_mediabox(local))

    def page_content_box(self, page_no: int, target: RenderTarget = RenderTarget.VIEW) -> Rect:
        return self._dispatch("content box", page_no, lambda engine, local: engine.page_content_box(local, target))

    def render_bitmap(
        self,
        page_no: int,
        zoom: float,
        rotation: int,
        page_rect: Optional[Rect] = None,
        target: RenderTarget = RenderTarget.VIEW,
        cookie: Optional[AbortCookie] = None,
    ) -> Any:
        return self._dispatch(
            "render",
            page_no,
            lambda engine, local: engine.render_bitmap(local, zoom, rotation, page_rect, target, cookie),
        )

    def transform_point(self, pt: Point, page_no: int, zoom: float, rotation: int, inverse: bool = False) -> Point:
        return self._dispatch(
            "transform", page_no, lambda engine, local: engine.transform_point(pt, local, zoom, rotation, inverse)
        )

    def transform_rect(self, rect: Rect, page_no: int, zoom: float, rotation: int, inverse: bool = False) -> Rect:
        return self._dispatch(
            "transform", page_no, lambda engine, local: engine.transform_rect(rect, local, zoom, rotation, inverse)
        )

    def extract_page_text(self, page_no: int) -> Tuple[str, List[Rect]]:
        return self._dispatch("text extraction", page_no, lambda engine, local: engine.extract_page_text(local))

    def has_clip_optimizations(self, page_no: int) -> bool:
        return self._dispatch("clip check", page_no, lambda engine, local: engine.has_clip_optimizations(local))

    def bench_load_page(self, page_no: int) -> bool:
        return self._dispatch("page load", page_no, lambda engine, local: engine.bench_load_page(local))

    def page_label(self, page_no: int) -> str:
        return self._dispatch("page label", page_no, lambda engine, local: engine.page_label(local))

    def page_by_label(self, label: str) -> Optional[int]:
        for constituent in self._loaded():
            if constituent.page_count == 0:
                continue
            with self._lock_for(constituent):
                local_page = constituent.engine.page_by_label(label)
            if local_page is not None:
                return self._index.to_logical(constituent.index, local_page)
        return None

    def _element_to_logical(self, element: PageElement, page_no: int, constituent_index: int) -> PageElement:
        return replace(
            element,
            page=page_no,
            destination=_translate_destination(element.destination, constituent_index, self._index),
        )

    def page_elements(self, page_no: int) -> List[PageElement]:
        index, _ = self._index.resolve(page_no)
        elements = self._dispatch("page elements", page_no, lambda engine, local: engine.page_elements(local))
        return [self._element_to_logical(element, page_no, index) for element in elements]

    def element_at(self, page_no: int, pt: Point) -> Optional[PageElement]:
        index, _ = self._index.resolve(page_no)
        element = self._dispatch("element lookup", page_no, lambda engine, local: engine.element_at(local, pt))
        return self._element_to_logical(element, page_no, index) if element is not None else None

    def named_destination(self, name: str) -> Optional[Destination]:
        for constituent in self._loaded():
            with self._lock_for(constituent):
                destination = constituent.engine.named_destination(name)
            if destination is not None:
                translated = _translate_destination(destination, constituent.index, self._index)
                if translated is not None:
                    return translated
        return None

    def native_outline(self) -> Optional[OutlineNode]:
        return self._toc

    def toc_tree(self) -> OutlineNode:
        return self._toc

    def get_property(self, prop: DocumentProperty) -> Optional[str]:
        for constituent in self._loaded():
            with self._lock_for(constituent):
                value = constituent.engine.get_property(prop)
            if value:
                return value
        return None

    def supports_annotation(self, for_saving: bool = False) -> bool:
        return False

    def update_user_annotations(self, annotations: List[Any]) -> None:
        LOG.debug("Ignoring %d user annotations: not supported for composite documents", len(annotations))

    def file_data(self) -> Optional[bytes]:
        return None

    def save_file_as(self, path: Path, include_user_annots: bool = False) -> bool:
        LOG.info("Saving composite documents is not supported (%s)", path)
        return False

    def clone(self) -> Optional[DocumentEngine]:
        return None

    def close(self) -> None:
        for constituent in self._constituents:
            if constituent.engine is None:
                continue
            with self._lock_for(constituent):
                constituent.engine.close()
