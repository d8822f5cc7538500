"""
Core logic for contree: ignore rules, the project walk, and context output.
"""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Dict, Iterable, Iterator, List, Optional, TextIO, Tuple

import pathspec
from colorama import Fore, Style

# Exceptions
class ContreeError(Exception): ...
class InvalidRootError(ContreeError): ...
class ConfigFileError(ContreeError): ...
class OutputError(ContreeError): ...
class FileReadError(ContreeError): ...
class InvalidPatternError(ContreeError): ...
class CommandError(ContreeError): ...

# Defaults & helpers
IGNORE_FILENAMES: Tuple[str, ...] = (".gitignore", ".contreeignore")
ALWAYS_SKIPPED = frozenset({".git"})
BINARY_PLACEHOLDER = "[binary file]"

_PREFIX = "[contree]"


def status(msg: str, verbose: bool = True) -> None:
    """Print a verbose-only progress line to stderr."""
    if verbose:
        print(f"{_PREFIX} {msg}", file=sys.stderr)


def warn(msg: str) -> None:
    print(Fore.YELLOW + f"Warning: {msg}" + Style.RESET_ALL, file=sys.stderr)


def error(msg: str) -> None:
    print(Fore.RED + f"Error: {msg}" + Style.RESET_ALL, file=sys.stderr)


def done(msg: str, verbose: bool = True) -> None:
    if verbose:
        print(Fore.GREEN + f"{_PREFIX} {msg}" + Style.RESET_ALL, file=sys.stderr)


@dataclass(frozen=True)
class FileEntry:
    path: Path
    content: str
    is_binary: bool = False


# Ignore-file utilities
def load_ignore_spec(directory: Path) -> Optional["pathspec.PathSpec"]:
    """
    Compile the ignore files found directly in *directory*.

    ``.contreeignore`` lines follow ``.gitignore`` lines, so they win when
    both files match the same path. Returns ``None`` if neither file exists.
    """
    lines: List[str] = []
    found = False
    for name in IGNORE_FILENAMES:
        ignore_path = directory / name
        if not ignore_path.is_file():
            continue
        found = True
        with ignore_path.open("r", encoding="utf-8", errors="replace") as fh:
            lines.extend(line.rstrip("\n") for line in fh)
    if not found:
        return None
    return pathspec.GitIgnoreSpec.from_lines(lines)


def load_extra_patterns(config_path: Path) -> "pathspec.PathSpec":
    if not config_path.exists():
        raise ConfigFileError(f"Config file '{config_path}' does not exist")
    if not config_path.is_file():
        raise ConfigFileError(f"'{config_path}' is not a file")
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            lines = [
                ln.strip()
                for ln in fh
                if ln.strip() and not ln.lstrip().startswith("#")
            ]
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigFileError(f"Could not read config file '{config_path}': {e}")
    return pathspec.GitIgnoreSpec.from_lines(lines)


SpecChain = Tuple[Tuple[Path, "pathspec.PathSpec"], ...]


def is_ignored(path: Path, chain: SpecChain, is_dir: bool = False) -> bool:
    """
    Decide whether *path* is ignored by the ignore files in *chain*.

    Each spec is checked relative to the directory that holds it, from the
    root downwards, and the last spec with an opinion wins. ``!`` patterns
    re-include a path.
    """
    ignored = False
    for base, spec in chain:
        rel = path.relative_to(base).as_posix()
        if is_dir:
            rel += "/"
        result = spec.check_file(rel)
        if result.include is not None:
            ignored = result.include
    return ignored


# Grep patterns
def compile_grep(pattern: str) -> "re.Pattern[str]":
    """
    Compile a ``--grep`` value.

    ``/expr/`` is taken as a raw regular expression; anything else is a
    case-insensitive substring.
    """
    trimmed = pattern.strip()
    if len(trimmed) >= 2 and trimmed.startswith("/") and trimmed.endswith("/"):
        try:
            return re.compile(trimmed[1:-1])
        except re.error as e:
            raise InvalidPatternError(f"Invalid regex pattern '{trimmed}': {e}")
    return re.compile(re.escape(trimmed), re.IGNORECASE)


# File reading
def read_entry(path: Path) -> FileEntry:
    """Read *path* as UTF-8 text, substituting the binary placeholder."""
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise FileReadError(f"Failed to read file '{path}': {e}") from e
    if b"\0" in raw:
        return FileEntry(path, BINARY_PLACEHOLDER, is_binary=True)
    try:
        return FileEntry(path, raw.decode("utf-8"))
    except UnicodeDecodeError:
        return FileEntry(path, BINARY_PLACEHOLDER, is_binary=True)


# File discovery
def walk_project(
    root: Path,
    max_depth: Optional[int] = None,
    extra_spec: Optional["pathspec.PathSpec"] = None,
    skip_paths: Collection[Path] = (),
) -> Iterator[Path]:
    """
    Yield files under *root* that survive the ignore rules.

    Files of a directory come before its subdirectories, both sorted by
    name. ``max_depth=0`` yields only files directly in *root*.
    """
    if not root.exists():
        raise InvalidRootError(f"Root directory '{root}' does not exist")
    if not root.is_dir():
        raise InvalidRootError(f"Root path '{root}' is not a directory")

    def _onerror(exc: OSError) -> None:
        raise InvalidRootError(f"Could not scan directory '{exc.filename}': {exc}")

    skipped = {p.resolve() for p in skip_paths}
    chains: Dict[Path, SpecChain] = {}

    for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
        current = Path(dirpath)
        parent_chain = chains.get(current.parent, ()) if current != root else ()
        spec = load_ignore_spec(current)
        chain: SpecChain = parent_chain + ((current, spec),) if spec is not None else parent_chain
        chains[current] = chain

        depth = len(current.relative_to(root).parts)

        def _excluded(path: Path, is_dir: bool) -> bool:
            if path.name.startswith(".") or path.name in ALWAYS_SKIPPED:
                return True
            if is_ignored(path, chain, is_dir=is_dir):
                return True
            if extra_spec is not None:
                rel = path.relative_to(root).as_posix()
                if extra_spec.match_file(rel + "/" if is_dir else rel):
                    return True
            return False

        if max_depth is not None and depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                d for d in dirnames if not _excluded(current / d, is_dir=True)
            )

        for name in sorted(filenames):
            path = current / name
            if _excluded(path, is_dir=False):
                continue
            if skipped and path.resolve() in skipped:
                continue
            if not path.is_file():
                continue
            yield path


def collect_files(
    root: Path,
    grep: Optional["re.Pattern[str]"] = None,
    include: Iterable[Path] = (),
    max_depth: Optional[int] = None,
    extra_spec: Optional["pathspec.PathSpec"] = None,
    skip_paths: Collection[Path] = (),
) -> Iterator[FileEntry]:
    """
    Yield the project files to print, then the explicitly included ones.

    Included paths bypass ignore rules and the grep filter but must be
    existing regular files; unreadable ones are skipped with a warning.
    """
    for path in walk_project(root, max_depth, extra_spec, skip_paths):
        entry = read_entry(path)
        if grep is not None:
            if entry.is_binary or not grep.search(entry.content):
                continue
        yield entry

    for path in include:
        if not path.is_file():
            warn(f"Included path {path} does not exist or is not a file")
            continue
        try:
            entry = read_entry(path)
        except FileReadError as e:
            warn(f"Included path {path} could not be read: {e.__cause__ or e}")
            continue
        yield entry


# Output generation
class ContextWriter:
    """Writes ``File:`` headers and fenced bodies to a text sink."""

    def __init__(self, sink: TextIO, owns_sink: bool = False) -> None:
        self.sink = sink
        self.owns_sink = owns_sink
        self.files_written = 0

    @classmethod
    def open(cls, out_path: Optional[Path] = None) -> "ContextWriter":
        if out_path is None:
            return cls(sys.stdout)
        out_dir = out_path.parent
        if not out_dir.exists():
            try:
                out_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise OutputError(f"Could not create output directory '{out_dir}': {e}")
        try:
            fh = out_path.open("w", encoding="utf-8", newline="\n")
        except OSError as e:
            raise OutputError(f"Failed to create output file '{out_path}': {e}")
        return cls(fh, owns_sink=True)

    def section(self, title: str) -> None:
        self.sink.write(f"\n=== {title} ===\n\n")

    def write_entry(self, entry: FileEntry, reasons: Iterable[str] = ()) -> None:
        self._write_block(entry.path, entry.content, reasons)

    def write_failure(self, path: Path, message: str, reasons: Iterable[str] = ()) -> None:
        self._write_block(path, f"({message})", reasons)

    def _write_block(self, path: Path, body: str, reasons: Iterable[str]) -> None:
        self.sink.write(f"File: {path}\n")
        for reason in reasons:
            self.sink.write(f"  - {reason}\n")
        self.sink.write("```\n")
        self.sink.write(f"{body}\n")
        self.sink.write("```\n\n")
        self.files_written += 1

    def flush(self) -> None:
        self.sink.flush()

    def close(self) -> None:
        self.flush()
        if self.owns_sink:
            self.sink.close()

    def __enter__(self) -> "ContextWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
