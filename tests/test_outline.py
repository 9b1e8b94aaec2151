import json

import vbkmdoc.core as core
from vbkmdoc.engine import Destination, OutlineNode, build_outline_tree

from fake_engine import FakeEngine


def _record(path, title=None):
    return core.ManifestRecord(path=path, outline_title=title)


def _loaded(index, path, engine, title=None):
    return core.LoadedConstituent(index=index, record=_record(path, title), engine=engine, page_count=engine.pages)


def _failed(index, path, title=None):
    return core.LoadedConstituent(index=index, record=_record(path, title), engine=None, error="file not found")


def test_build_outline_tree_nests_by_level():
    root = build_outline_tree(
        [
            (1, "Part 1", Destination(kind="goto", page=1)),
            (2, "Chapter 1.1", Destination(kind="goto", page=2)),
            (3, "Section 1.1.1", None),
            (2, "Chapter 1.2", None),
            (1, "Part 2", None),
        ]
    )

    assert [node.title for node in root.children] == ["Part 1", "Part 2"]
    part1 = root.children[0]
    assert [node.title for node in part1.children] == ["Chapter 1.1", "Chapter 1.2"]
    assert part1.children[0].children[0].title == "Section 1.1.1"


def test_build_outline_tree_empty_is_none():
    assert build_outline_tree([]) is None


def test_native_destinations_are_translated_to_logical_pages():
    first = FakeEngine("first", 9)
    second = FakeEngine(
        "second",
        4,
        outline=[
            (1, "Intro", Destination(kind="goto", page=1)),
            (2, "Details", Destination(kind="goto", page=2, x=10.0, y=20.0)),
        ],
    )
    constituents = [_loaded(0, "first.pdf", first), _loaded(1, "second.pdf", second, title="Second")]
    index = core.PageIndex.build((c.index, c.page_count) for c in constituents)

    root = core.merge_outlines(constituents, index, title="Book")

    assert root.kind == "root"
    assert root.title == "Book"
    group = root.children[1]
    assert group.kind == "group"
    assert group.title == "Second"
    assert group.destination.page == 10
    intro = group.children[0]
    assert intro.destination.page == 10
    details = intro.children[0]
    assert details.destination.page == 11
    assert (details.destination.x, details.destination.y) == (10.0, 20.0)


def test_named_and_uri_destinations_are_carried_through():
    engine = FakeEngine(
        "named",
        3,
        outline=[
            (1, "Named", Destination(kind="named", name="chap2")),
            (1, "Web", Destination(kind="uri", uri="https://example.org")),
        ],
    )
    constituents = [_loaded(0, "a.pdf", FakeEngine("a", 5)), _loaded(1, "named.pdf", engine)]
    index = core.PageIndex.build((c.index, c.page_count) for c in constituents)

    group = core.merge_outlines(constituents, index).children[1]

    assert group.children[0].destination == Destination(kind="named", name="chap2")
    assert group.children[1].destination.uri == "https://example.org"


def test_failed_and_empty_constituents_keep_grouping_nodes_in_order():
    constituents = [
        _loaded(0, "dir/one.pdf", FakeEngine("one", 2, outline=[(1, "One", Destination(kind="goto", page=2))])),
        _failed(1, "missing/two.pdf"),
        _loaded(2, "three.pdf", FakeEngine("three", 0)),
        _loaded(3, "four.pdf", FakeEngine("four", 1), title="Four"),
    ]
    index = core.PageIndex.build((c.index, c.page_count) for c in constituents)

    root = core.merge_outlines(constituents, index)

    assert [node.title for node in root.children] == ["one.pdf", "two.pdf", "three.pdf", "Four"]
    failed = root.children[1]
    assert failed.children == []
    assert failed.destination is None
    assert failed.error == "file not found"
    assert root.children[2].destination is None
    assert root.children[3].destination.page == 3
    assert root.children[0].children[0].destination.page == 2


def test_destinations_outside_constituent_are_dropped():
    engine = FakeEngine("a", 2, outline=[(1, "Broken", Destination(kind="goto", page=7))])
    constituents = [_loaded(0, "a.pdf", engine)]
    index = core.PageIndex.build([(0, 2)])

    node = core.merge_outlines(constituents, index).children[0].children[0]

    assert node.title == "Broken"
    assert node.destination is None


def test_merged_tree_does_not_alias_native_nodes():
    native = OutlineNode(title="", kind="root", children=[OutlineNode(title="X", destination=Destination("goto", 1))])

    class _Engine(FakeEngine):
        def native_outline(self):
            return native

    constituents = [_loaded(0, "a.pdf", FakeEngine("a", 3)), _loaded(1, "b.pdf", _Engine("b", 1))]
    index = core.PageIndex.build((c.index, c.page_count) for c in constituents)

    merged = core.merge_outlines(constituents, index).children[1].children[0]
    native.children[0].title = "changed"

    assert merged.title == "X"
    assert merged.destination.page == 4
    assert native.children[0].destination.page == 1


def test_default_outline_title():
    assert core.default_outline_title("foo/bar.pdf") == "bar.pdf"
    assert core.default_outline_title("C:\\docs\\baz.pdf") == "baz.pdf"
    assert core.default_outline_title("plain.pdf") == "plain.pdf"
    assert core.default_outline_title("dir/") == "dir"


def test_serialize_outline_is_json_ready():
    constituents = [_loaded(0, "a.pdf", FakeEngine("a", 2, outline=[(1, "A1", Destination("goto", 2))]))]
    index = core.PageIndex.build([(0, 2)])

    data = core.serialize_outline(core.merge_outlines(constituents, index))

    assert json.loads(json.dumps(data)) == [
        {
            "title": "a.pdf",
            "kind": "group",
            "destination": {"kind": "goto", "page": 1},
            "error": None,
            "children": [
                {
                    "title": "A1",
                    "kind": "native",
                    "destination": {"kind": "goto", "page": 2},
                    "error": None,
                    "children": [],
                }
            ],
        }
    ]


def test_outline_to_html_writes_nested_lists():
    from bs4 import BeautifulSoup

    constituents = [
        _loaded(0, "a.pdf", FakeEngine("a", 2, outline=[(1, "A1", Destination("goto", 2))]), title="Part A"),
        _failed(1, "b.pdf"),
    ]
    index = core.PageIndex.build([(0, 2), (1, 0)])

    html = core.outline_to_html(core.merge_outlines(constituents, index, title="Book"))
    soup = BeautifulSoup(html, "html.parser")

    assert soup.title.string == "Book"
    top = soup.find("ul").find_all("li", recursive=False)
    assert top[0].find("a").get_text() == "Part A"
    assert top[0].find("a")["href"] == "#page-1"
    assert top[0].find("ul").find("a")["href"] == "#page-2"
    assert top[1].get_text(strip=True) == "b.pdf"
    assert "load-error" in top[1]["class"]
