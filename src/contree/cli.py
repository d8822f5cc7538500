"""
CLI entrypoints for contree.

``contree`` captures piped stdin; ``contree-run`` runs a command (``cargo
test`` by default) and captures its output instead.
"""
import argparse
import sys
from pathlib import Path
from typing import Callable, List, Optional

from colorama import just_fix_windows_console

from . import __version__
from .capture import DEFAULT_COMMAND, CaptureBuffer, passthrough_stdin, run_command
from .core import (
    ContextWriter,
    ContreeError,
    collect_files,
    compile_grep,
    done,
    error,
    load_extra_patterns,
    status,
)
from .deps import CorrelatorConfig, correlate, write_dependency_files

Capture = Callable[[CaptureBuffer], None]


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid depth: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"depth must be >= 0, got {number}")
    return number


def _build_parser(prog: str, description: str, with_command: bool) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=prog, description=description)
    p.add_argument(
        "-d",
        "--dir",
        type=Path,
        help="Directory to scan (defaults to the current working directory)",
    )
    p.add_argument(
        "-D",
        "--include-deps",
        action="store_true",
        help="Include dependency files referenced in errors (Cargo projects only)",
    )
    p.add_argument(
        "-o",
        "--output",
        type=Path,
        help="Write project and dependency files here instead of stdout",
    )
    p.add_argument(
        "-g",
        "--grep",
        help="Only print files matching this substring, or /regex/",
    )
    p.add_argument(
        "-i",
        "--include",
        action="append",
        default=[],
        help="Comma-separated files to print even if ignored or not matching --grep",
    )
    p.add_argument(
        "--max-depth",
        type=_non_negative_int,
        help="Maximum directory depth to scan below --dir (0 = top level only)",
    )
    p.add_argument(
        "--config",
        type=Path,
        help="Path to a file with extra ignore patterns (one per line)",
    )
    if with_command:
        p.add_argument(
            "-c",
            "--command",
            default=DEFAULT_COMMAND,
            help=f"Shell command whose output is captured (default: {DEFAULT_COMMAND})",
        )
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _split_includes(values: List[str]) -> List[Path]:
    return [
        Path(part.strip())
        for value in values
        for part in value.split(",")
        if part.strip()
    ]


def _capture_stdin(buffer: CaptureBuffer) -> None:
    if sys.stdin is not None and not sys.stdin.isatty():
        passthrough_stdin(buffer)


def _run(ns: argparse.Namespace, capture: Capture) -> None:
    root = (ns.dir if ns.dir is not None else Path.cwd()).resolve()
    out_path = ns.output.resolve() if ns.output else None

    extra_spec = None
    if ns.config:
        extra_spec = load_extra_patterns(ns.config.resolve())
        status(f"Loaded extra patterns from {ns.config}", ns.verbose)

    grep = compile_grep(ns.grep) if ns.grep else None
    include = _split_includes(ns.include)

    buffer = CaptureBuffer()
    with ContextWriter.open(out_path) as writer:
        capture(buffer)

        status(f"Scanning {root} …", ns.verbose)
        writer.section("Project Context")
        for entry in collect_files(
            root,
            grep=grep,
            include=include,
            max_depth=ns.max_depth,
            extra_spec=extra_spec,
            skip_paths=[out_path] if out_path else (),
        ):
            writer.write_entry(entry)
        project_files = writer.files_written

        if ns.include_deps and not buffer:
            status("Nothing captured; skipping dependency files", ns.verbose)
        elif ns.include_deps:
            config = CorrelatorConfig.from_environ(root)
            write_dependency_files(writer, correlate(buffer.getvalue(), config, ns.verbose))

    done(
        f"Done. {project_files} project files, "
        f"{writer.files_written - project_files} dependency files written"
        + (f" → {out_path}" if out_path else ""),
        ns.verbose,
    )


def _guarded(ns: argparse.Namespace, capture: Capture) -> None:
    try:
        _run(ns, capture)
    except ContreeError as e:
        error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: Optional[List[str]] = None) -> None:
    just_fix_windows_console()
    ns = _build_parser(
        "contree",
        "Print project files as context, echoing any piped input first.",
        with_command=False,
    ).parse_args(argv)
    _guarded(ns, _capture_stdin)


def run_main(argv: Optional[List[str]] = None) -> None:
    just_fix_windows_console()
    ns = _build_parser(
        "contree-run",
        "Run a command, echo its output, then print project files as context.",
        with_command=True,
    ).parse_args(argv)
    cwd = str(ns.dir) if ns.dir is not None else None

    def _capture_command(buffer: CaptureBuffer) -> None:
        run_command(ns.command, buffer, cwd=cwd, verbose=ns.verbose)

    _guarded(ns, _capture_command)


if __name__ == "__main__":
    main()
