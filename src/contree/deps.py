"""
Correlate compiler errors in captured output with Cargo registry sources.

Matching is heuristic: a type matches any registry file whose name or text
contains it, ignoring case, so unrelated files can show up as well.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional, Set, Tuple

from .core import ContextWriter, FileReadError, read_entry, status, warn

PROJECT_MARKER = "Cargo.toml"
DIRECT_REFERENCE = "directly referenced"

_DIRECT_REF_RE = re.compile(r"--> ([/\\].*?\.rs):(\d+):(\d+)")
_METHOD_NOT_FOUND_RE = re.compile(r"method not found in `([^`]+)`")
_MACRO_ORIGIN_RE = re.compile(r"this error originates in the macro `([^`]+)`")
_MISMATCHED_TYPES_RE = re.compile(r"expected `([^`]+)`, found `([^`]+)`")
_TREE_LINE_RE = re.compile(r"^[\s│]*[├└]── (\S+) v(\d+\.\d+\.\d+)")

Reasons = Dict[str, Set[str]]


@dataclass(frozen=True)
class CorrelatorConfig:
    project_dir: Path
    cargo_home: Path
    tree_command: Tuple[str, ...] = ("cargo", "tree")

    @property
    def registry_src(self) -> Path:
        return self.cargo_home / "registry" / "src"

    @classmethod
    def from_environ(
        cls, project_dir: Path, environ: Optional[Mapping[str, str]] = None
    ) -> "CorrelatorConfig":
        """Resolve ``CARGO_HOME``, falling back to ``$HOME/.cargo``."""
        env = os.environ if environ is None else environ
        cargo_home = env.get("CARGO_HOME")
        if cargo_home:
            return cls(project_dir, Path(cargo_home))
        home = env.get("HOME")
        return cls(project_dir, (Path(home) if home else Path.home()) / ".cargo")


def find_project_marker(start: Path) -> Optional[Path]:
    """Return the nearest ``Cargo.toml`` in *start* or one of its ancestors."""
    for directory in (start, *start.parents):
        marker = directory / PROJECT_MARKER
        if marker.exists():
            return marker
    return None


def _strip_generics(type_name: str) -> str:
    return type_name.split("<", 1)[0]


def extract_direct_references(text: str) -> Set[str]:
    refs = set()
    for match in _DIRECT_REF_RE.finditer(text):
        path = match.group(1)
        if ".cargo/registry" in path or ".cargo\\registry" in path:
            refs.add(path)
    return refs


def extract_symbols(text: str) -> Tuple[Set[str], Set[str]]:
    """Return ``(types, macros)`` named in rustc error messages."""
    types: Set[str] = set()
    macros: Set[str] = set()
    for match in _METHOD_NOT_FOUND_RE.finditer(text):
        types.add(_strip_generics(match.group(1)))
    for match in _MACRO_ORIGIN_RE.finditer(text):
        macros.add(match.group(1))
    for match in _MISMATCHED_TYPES_RE.finditer(text):
        types.add(_strip_generics(match.group(1)))
        types.add(_strip_generics(match.group(2)))
    types.discard("")
    return types, macros


def parse_cargo_tree(output: str) -> Set[str]:
    """Turn ``cargo tree`` lines into ``name-X.Y.Z`` identifiers."""
    versions = set()
    for line in output.splitlines():
        match = _TREE_LINE_RE.match(line)
        if match:
            versions.add(f"{match.group(1)}-{match.group(2)}")
    return versions


def used_crate_versions(config: CorrelatorConfig) -> Optional[Set[str]]:
    """Run the dependency tree command; ``None`` means it could not be run."""
    command = " ".join(config.tree_command)
    try:
        proc = subprocess.run(
            list(config.tree_command),
            cwd=config.project_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        warn(f"Failed to run {command}: {e}")
        return None
    if proc.returncode != 0:
        warn(f"{command} exited with status {proc.returncode}")
        return None
    try:
        output = proc.stdout.decode("utf-8")
    except UnicodeDecodeError:
        warn(f"{command} output is not UTF-8")
        output = proc.stdout.decode("utf-8", errors="replace")
    return parse_cargo_tree(output)


def iter_crate_dirs(registry: Path, versions: Set[str]) -> Iterator[Path]:
    """Yield registry directories, at most two levels down, named after *versions*."""
    if not registry.is_dir():
        return
    for index_dir in sorted(registry.iterdir()):
        if not index_dir.is_dir():
            continue
        if index_dir.name in versions:
            yield index_dir
            continue
        for crate_dir in sorted(index_dir.iterdir()):
            if crate_dir.is_dir() and crate_dir.name in versions:
                yield crate_dir


def match_sources(
    crate_dirs: Iterable[Path], types: Set[str], macros: Set[str]
) -> Reasons:
    relevant: Reasons = {}
    lowered = {t: t.lower() for t in types}
    for crate_dir in crate_dirs:
        for path in sorted(crate_dir.rglob("*.rs")):
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                content = ""
            file_name = path.name.lower()
            content_lower = content.lower()
            for type_name, needle in lowered.items():
                if needle in file_name or needle in content_lower:
                    relevant.setdefault(str(path), set()).add(f"type {type_name}")
            for macro in macros:
                if f"macro_rules! {macro}" in content:
                    relevant.setdefault(str(path), set()).add(f"macro {macro}")
    return relevant


def correlate(text: str, config: CorrelatorConfig, verbose: bool = False) -> Reasons:
    """
    Map dependency source paths to the reasons they relate to *text*.

    Returns an empty mapping outside a Cargo project, when the registry
    cannot be found, or when the dependency tree cannot be listed.
    """
    if find_project_marker(config.project_dir) is None:
        status("No Cargo.toml found; skipping dependency files", verbose)
        return {}
    registry = config.registry_src
    if not registry.is_dir():
        status(f"Cargo registry {registry} not found; skipping dependency files", verbose)
        return {}

    relevant: Reasons = {}
    for path in extract_direct_references(text):
        relevant.setdefault(path, set()).add(DIRECT_REFERENCE)

    types, macros = extract_symbols(text)
    if not types and not macros:
        return relevant

    versions = used_crate_versions(config)
    if versions is None:
        return {}
    status(f"{len(versions)} crate versions in dependency tree", verbose)
    crate_dirs = iter_crate_dirs(registry, versions)
    for path, reasons in match_sources(crate_dirs, types, macros).items():
        relevant.setdefault(path, set()).update(reasons)
    return relevant


def write_dependency_files(writer: ContextWriter, relevant: Reasons) -> None:
    if not relevant:
        return
    writer.section("Relevant Dependency Files")
    for file_path in sorted(relevant):
        path = Path(file_path)
        reasons = sorted(relevant[file_path])
        try:
            entry = read_entry(path)
        except FileReadError as e:
            warn(f"Dependency file {path} could not be read")
            writer.write_failure(path, f"Failed to read file: {e.__cause__ or e}", reasons)
            continue
        writer.write_entry(entry, reasons)
