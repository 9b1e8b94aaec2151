"""Command-line interface for vbkmdoc."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from .version import __version__

EXIT_USAGE = 2
EXIT_INVALID_ARGS = 6
EXIT_OUTPUT_PATH = 7
EXIT_LOAD_FAILED = 8
EXIT_PAGE_OPERATION = 9


def _get_usage() -> str:
    return (
        f"vbkmdoc {__version__}\n"
        "Usage:\n"
        "  vbkmdoc [--help] [--version|--ver]\n"
        "  vbkmdoc --manifest FILE [options]\n\n"
        "Options:\n"
        "  --info                       Print constituents and page ranges (default action)\n"
        "  --toc                        Print the merged outline as JSON\n"
        "  --toc-html PATH              Write the merged outline as nested HTML lists\n"
        "  --text PAGE                  Print the text of a logical page\n"
        "  --render PAGE                Render a logical page (requires --output)\n"
        "  --output PATH                PNG file written by --render\n"
        "  --zoom Z                     Render zoom factor (default: 1.0)\n"
        "  --rotation R                 Render rotation in degrees, multiple of 90 (default: 0)\n"
        "  --label PAGE                 Print the page label of a logical page\n"
        "  --page-by-label LABEL        Print the logical page carrying LABEL\n"
        "  --password PW                Password for protected constituents (fallback: VBKMDOC_PASSWORD)\n"
        "  --jobs N                     Open constituents with N threads (fallback: VBKMDOC_JOBS)\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--manifest", help="Path to the .vbkm manifest")
    parser.add_argument("--info", action="store_true", help="Print constituents and page ranges")
    parser.add_argument("--toc", action="store_true", help="Print the merged outline as JSON")
    parser.add_argument("--toc-html", help="Write the merged outline as nested HTML lists")
    parser.add_argument("--text", type=int, help="Print the text of a logical page")
    parser.add_argument("--render", type=int, help="Render a logical page to --output")
    parser.add_argument("--output", help="PNG file written by --render")
    parser.add_argument("--zoom", type=float, default=1.0, help="Render zoom factor (default: 1.0)")
    parser.add_argument("--rotation", type=int, default=0, help="Render rotation in degrees (default: 0)")
    parser.add_argument("--label", type=int, help="Print the page label of a logical page")
    parser.add_argument("--page-by-label", help="Print the logical page carrying the given label")
    parser.add_argument("--password", help="Password for protected constituents (fallback: VBKMDOC_PASSWORD env var)")
    parser.add_argument("--jobs", type=int, default=None, help="Threads used to open constituents")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def _validate_numeric_args(args: argparse.Namespace) -> str | None:
    if args.zoom is None or args.zoom <= 0:
        return "Invalid value for --zoom: must be > 0"
    if args.rotation % 90 != 0:
        return "Invalid value for --rotation: must be a multiple of 90"
    if args.jobs is not None and args.jobs <= 0:
        return "Invalid value for --jobs: must be > 0"
    return None


def _resolve_jobs(value: int | None) -> int | None:
    if value is not None:
        return value
    raw = os.environ.get("VBKMDOC_JOBS")
    if not raw:
        return 1
    try:
        jobs = int(raw)
    except ValueError:
        return None
    return jobs if jobs > 0 else None


def _print_info(doc) -> None:
    print(f"Pages: {doc.page_count}")
    for constituent in doc.constituents:
        start, count = doc.page_index.range_of(constituent.index)
        if constituent.is_loaded:
            pages = f"{start}-{start + count - 1}" if count else "-"
            print(f"[{constituent.index + 1}] {constituent.record.path} | pages {pages} ({count})")
        else:
            print(f"[{constituent.index + 1}] {constituent.record.path} | FAILED: {constituent.error}")


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return EXIT_USAGE

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    numeric_error = _validate_numeric_args(args)
    if numeric_error:
        print(numeric_error, file=sys.stderr)
        return EXIT_INVALID_ARGS

    jobs = _resolve_jobs(args.jobs)
    if jobs is None:
        print("Invalid value for VBKMDOC_JOBS: must be a positive integer", file=sys.stderr)
        return EXIT_INVALID_ARGS

    if not args.manifest:
        print(_get_usage())
        print("Option --manifest is required unless --help or --version/--ver is used", file=sys.stderr)
        return EXIT_INVALID_ARGS

    manifest_path = Path(args.manifest).expanduser().resolve()
    if not manifest_path.exists() or not manifest_path.is_file():
        print(f"Manifest not found: {manifest_path}", file=sys.stderr)
        return EXIT_INVALID_ARGS

    if args.render is not None and not args.output:
        print("Option --render requires --output", file=sys.stderr)
        return EXIT_INVALID_ARGS

    output_path = Path(args.output).expanduser().resolve() if args.output else None
    if output_path is not None and output_path.exists() and output_path.is_dir():
        print(f"Output path is a directory: {output_path}", file=sys.stderr)
        return EXIT_OUTPUT_PATH

    from vbkmdoc import core

    core.setup_logging(args.verbose, args.debug)

    password = args.password or os.environ.get("VBKMDOC_PASSWORD")
    config = core.LoadConfig(max_workers=jobs)

    try:
        doc = core.CompositeDocument.create_from_file(
            manifest_path,
            password_provider=(lambda _path: password) if password else None,
            config=config,
        )
    except core.VbkmError as exc:
        print(f"Unable to load {manifest_path}: {exc}", file=sys.stderr)
        return EXIT_LOAD_FAILED

    with doc:
        actions = (
            args.toc,
            args.toc_html,
            args.text is not None,
            args.render is not None,
            args.label is not None,
            args.page_by_label is not None,
        )
        try:
            if args.info or not any(actions):
                _print_info(doc)

            if args.toc:
                print(json.dumps(core.serialize_outline(doc.toc_tree()), indent=2, ensure_ascii=False))

            if args.toc_html:
                target = Path(args.toc_html).expanduser().resolve()
                try:
                    core.safe_write_text(target, core.outline_to_html(doc.toc_tree()))
                except OSError as exc:
                    print(f"Unable to write {target}: {exc}", file=sys.stderr)
                    return EXIT_OUTPUT_PATH

            if args.text is not None:
                text, _ = doc.extract_page_text(args.text)
                print(text)

            if args.label is not None:
                print(doc.page_label(args.label))

            if args.page_by_label is not None:
                page_no = doc.page_by_label(args.page_by_label)
                if page_no is None:
                    print(f"Page label not found: {args.page_by_label}", file=sys.stderr)
                    return EXIT_PAGE_OPERATION
                print(page_no)

            if args.render is not None:
                image = doc.render_bitmap(args.render, args.zoom, args.rotation)
                try:
                    output_path.parent.mkdir(parents=True, exist_ok=True)
                    image.save(output_path, format="PNG")
                except OSError as exc:
                    print(f"Unable to write {output_path}: {exc}", file=sys.stderr)
                    return EXIT_OUTPUT_PATH
                if args.verbose:
                    print(f"Page {args.render} written to {output_path}")
        except (core.PageOutOfRangeError, core.PageOperationError) as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_PAGE_OPERATION

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
