"""Tests for contree.core."""

from __future__ import annotations

import io
import warnings
from pathlib import Path

import pytest

from contree import core
from contree.core import (
    BINARY_PLACEHOLDER,
    ContextWriter,
    FileEntry,
    InvalidPatternError,
    InvalidRootError,
    collect_files,
    compile_grep,
    load_extra_patterns,
    walk_project,
)


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _names(paths, root: Path) -> list[str]:
    return [p.relative_to(root).as_posix() for p in paths]


def test_walk_orders_files_before_subdirectories(tmp_path: Path) -> None:
    _write(tmp_path / "b.txt", "b")
    _write(tmp_path / "a.txt", "a")
    _write(tmp_path / "src" / "z.py", "z")
    _write(tmp_path / "lib" / "m.py", "m")

    assert _names(walk_project(tmp_path), tmp_path) == [
        "a.txt",
        "b.txt",
        "lib/m.py",
        "src/z.py",
    ]


def test_walk_skips_hidden_entries_and_git(tmp_path: Path) -> None:
    _write(tmp_path / "visible.txt", "v")
    _write(tmp_path / ".env", "SECRET=1")
    _write(tmp_path / ".git" / "config", "[core]")
    _write(tmp_path / ".cache" / "data.txt", "cached")

    assert _names(walk_project(tmp_path), tmp_path) == ["visible.txt"]


def test_walk_honours_nested_gitignore_and_negation(tmp_path: Path) -> None:
    _write(tmp_path / ".gitignore", "*.log\nbuild/\n")
    _write(tmp_path / "app.log", "log")
    _write(tmp_path / "build" / "out.txt", "out")
    _write(tmp_path / "pkg" / ".gitignore", "!keep.log\n/local.txt\n")
    _write(tmp_path / "pkg" / "keep.log", "kept")
    _write(tmp_path / "pkg" / "drop.log", "dropped")
    _write(tmp_path / "pkg" / "local.txt", "local")
    _write(tmp_path / "pkg" / "sub" / "local.txt", "deeper")

    assert _names(walk_project(tmp_path), tmp_path) == [
        "pkg/keep.log",
        "pkg/sub/local.txt",
    ]


def test_walk_honours_contreeignore_over_gitignore(tmp_path: Path) -> None:
    _write(tmp_path / ".gitignore", "*.md\n")
    _write(tmp_path / ".contreeignore", "!README.md\nfixtures/\n")
    _write(tmp_path / "README.md", "readme")
    _write(tmp_path / "NOTES.md", "notes")
    _write(tmp_path / "fixtures" / "big.json", "{}")
    _write(tmp_path / "main.rs", "fn main() {}")

    assert _names(walk_project(tmp_path), tmp_path) == ["README.md", "main.rs"]


def test_walk_max_depth(tmp_path: Path) -> None:
    _write(tmp_path / "top.txt", "top")
    _write(tmp_path / "one" / "mid.txt", "mid")
    _write(tmp_path / "one" / "two" / "deep.txt", "deep")

    assert _names(walk_project(tmp_path, max_depth=0), tmp_path) == ["top.txt"]
    assert _names(walk_project(tmp_path, max_depth=1), tmp_path) == [
        "top.txt",
        "one/mid.txt",
    ]
    assert len(list(walk_project(tmp_path))) == 3


def test_walk_applies_extra_patterns_and_skip_paths(tmp_path: Path) -> None:
    config = _write(tmp_path / "patterns.txt", "# generated\n*.lock\n\nvendor/\n")
    _write(tmp_path / "Cargo.lock", "lock")
    _write(tmp_path / "vendor" / "dep.rs", "dep")
    _write(tmp_path / "context.txt", "previous output")
    _write(tmp_path / "lib.rs", "lib")

    extra = load_extra_patterns(config)
    paths = walk_project(
        tmp_path, extra_spec=extra, skip_paths=[tmp_path / "context.txt"]
    )

    assert _names(paths, tmp_path) == ["lib.rs", "patterns.txt"]


def test_walk_rejects_missing_root(tmp_path: Path) -> None:
    with pytest.raises(InvalidRootError):
        list(walk_project(tmp_path / "missing"))


def test_load_extra_patterns_missing_file(tmp_path: Path) -> None:
    with pytest.raises(core.ConfigFileError):
        load_extra_patterns(tmp_path / "nope.txt")


def test_compile_grep_substring_is_case_insensitive_and_literal() -> None:
    pattern = compile_grep("  Alpha.Beta ")
    assert pattern.search("see alpha.beta here")
    assert not pattern.search("alphaXbeta")


def test_compile_grep_slash_delimited_regex() -> None:
    pattern = compile_grep("/fn \\w+_test/")
    assert pattern.search("fn parse_test() {}")
    assert not pattern.search("FN PARSE_TEST")


def test_compile_grep_invalid_regex() -> None:
    with pytest.raises(InvalidPatternError):
        compile_grep("/(unclosed/")


def test_grep_keeps_only_matching_files(tmp_path: Path) -> None:
    _write(tmp_path / "a.txt", "alpha")
    _write(tmp_path / "b.txt", "beta")

    entries = list(collect_files(tmp_path, grep=compile_grep("ALPHA")))

    assert [e.path.name for e in entries] == ["a.txt"]
    assert entries[0].content == "alpha"


def test_include_bypasses_grep_and_ignore_rules(tmp_path: Path) -> None:
    _write(tmp_path / ".gitignore", "b.txt\n")
    _write(tmp_path / "a.txt", "alpha")
    b_path = _write(tmp_path / "b.txt", "beta")
    outside = _write(tmp_path.parent / f"{tmp_path.name}-outside.txt", "outside")

    entries = list(
        collect_files(tmp_path, grep=compile_grep("alpha"), include=[b_path, outside])
    )

    assert [e.path.name for e in entries] == ["a.txt", "b.txt", outside.name]


def test_include_missing_path_warns_and_skips(tmp_path: Path, capsys) -> None:
    _write(tmp_path / "a.txt", "alpha")
    (tmp_path / "folder").mkdir()

    entries = list(
        collect_files(tmp_path, include=[tmp_path / "ghost.txt", tmp_path / "folder"])
    )

    assert [e.path.name for e in entries] == ["a.txt"]
    err = capsys.readouterr().err
    assert "ghost.txt does not exist or is not a file" in err
    assert "folder does not exist or is not a file" in err


def test_binary_files_use_placeholder(tmp_path: Path) -> None:
    (tmp_path / "img.bin").write_bytes(b"\x89PNG\r\n\x1a\n\x00\xff\xfe")
    (tmp_path / "latin1.txt").write_bytes("café".encode("latin-1"))

    entries = {e.path.name: e for e in collect_files(tmp_path)}

    assert entries["img.bin"].content == BINARY_PLACEHOLDER
    assert entries["img.bin"].is_binary
    assert entries["latin1.txt"].content == BINARY_PLACEHOLDER


def test_binary_files_never_match_grep(tmp_path: Path) -> None:
    (tmp_path / "blob.bin").write_bytes(b"binary\x00file")

    assert list(collect_files(tmp_path, grep=compile_grep("binary"))) == []


def test_context_writer_block_format() -> None:
    sink = io.StringIO()
    writer = ContextWriter(sink)

    writer.section("Project Context")
    writer.write_entry(FileEntry(Path("src/a.txt"), "alpha\n"))
    writer.write_entry(FileEntry(Path("dep.rs"), "fn x() {}"), reasons=["macro m", "type T"])
    writer.write_failure(Path("gone.rs"), "Failed to read file: missing")

    assert sink.getvalue() == (
        "\n=== Project Context ===\n\n"
        "File: src/a.txt\n```\nalpha\n\n```\n\n"
        "File: dep.rs\n  - macro m\n  - type T\n```\nfn x() {}\n```\n\n"
        "File: gone.rs\n```\n(Failed to read file: missing)\n```\n\n"
    )
    assert writer.files_written == 3


def test_context_writer_creates_output_file(tmp_path: Path) -> None:
    out_path = tmp_path / "nested" / "context.txt"

    with ContextWriter.open(out_path) as writer:
        writer.write_entry(FileEntry(Path("a.txt"), "alpha"))

    assert out_path.read_text(encoding="utf-8") == "File: a.txt\n```\nalpha\n```\n\n"
    assert writer.sink.closed


def test_context_writer_rejects_unwritable_output(tmp_path: Path) -> None:
    blocker = _write(tmp_path / "blocker", "not a directory")

    with pytest.raises(core.OutputError):
        ContextWriter.open(blocker / "context.txt")


def test_unreadable_include_warns_and_continues(tmp_path: Path, monkeypatch, capsys) -> None:
    _write(tmp_path / "a.txt", "alpha")
    locked = _write(tmp_path.parent / f"{tmp_path.name}-locked.txt", "secret")
    after = _write(tmp_path.parent / f"{tmp_path.name}-after.txt", "after")
    real_read_bytes = Path.read_bytes

    def _read_bytes(self: Path) -> bytes:
        if self == locked:
            raise PermissionError(13, "Permission denied", str(self))
        return real_read_bytes(self)

    monkeypatch.setattr(Path, "read_bytes", _read_bytes)

    entries = list(collect_files(tmp_path, include=[locked, after]))

    assert [e.path.name for e in entries] == ["a.txt", after.name]
    err = capsys.readouterr().err
    assert f"Included path {locked} could not be read" in err
    assert "Permission denied" in err


def test_ignore_specs_load_without_deprecation_warnings(tmp_path: Path) -> None:
    _write(tmp_path / ".gitignore", "*.log\n!keep.log\n")
    config = _write(tmp_path / "extra.txt", "vendor/\n")

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        spec = core.load_ignore_spec(tmp_path)
        extra = load_extra_patterns(config)

    assert spec is not None
    assert spec.match_file("debug.log")
    assert not spec.match_file("keep.log")
    assert extra.match_file("vendor/lib.rs")
