"""Repository context collection.

Files referenced by the document (markdown links and path-like tokens) are
read from disk and packed into a ``<repo_context>`` block so both agents can
check claims against real code instead of guessing.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILES = 12
DEFAULT_MAX_FILE_BYTES = 40 * 1024
DEFAULT_MAX_TOTAL_BYTES = 120 * 1024

IGNORED_DIRS = frozenset({"node_modules", "dist", ".git", ".quibble"})

_LINK = re.compile(r"\[[^\]]+\]\(([^)\s]+)\)")
_PATH_TOKEN = re.compile(r"(?:^|(?<=[\s\"'`(]))([A-Za-z0-9_./-]+?\.[A-Za-z0-9]{1,8})(?=$|[\s)\"'`,.:;!?])", re.MULTILINE)
_URL_SCHEME = re.compile(r"^(https?:|mailto:)", re.IGNORECASE)
_LINE_SUFFIX = re.compile(r":\d+(:\d+)?$")


@dataclass
class ContextFile:
    path: str
    content: str
    truncated: bool
    bytes: int


@dataclass
class ContextResult:
    block: str
    files: list[ContextFile] = field(default_factory=list)
    total_bytes: int = 0


def find_git_root(start: str | Path) -> Path | None:
    """Return the nearest ancestor of *start* containing ``.git``."""
    current = Path(start).resolve()
    for directory in (current, *current.parents):
        if (directory / ".git").exists():
            return directory
    return None


def _normalize_reference(reference: str) -> str | None:
    ref = reference.strip()
    ref = re.sub(r"^[('\"`<]+", "", ref)
    ref = re.sub(r"[)\"'>,;.!]+$", "", ref)
    if not ref or _URL_SCHEME.match(ref):
        return None
    ref = ref.split("#", 1)[0]
    ref = _LINE_SUFFIX.sub("", ref)
    if "." not in ref or ref in (".", ".."):
        return None
    return ref


def extract_references(document: str) -> list[str]:
    """Collect candidate file references in order of first appearance."""
    refs: list[str] = []
    seen: set[str] = set()
    matches = [m.group(1) for m in _LINK.finditer(document)]
    matches += [m.group(1) for m in _PATH_TOKEN.finditer(document)]
    for raw in matches:
        ref = _normalize_reference(raw)
        if ref and ref not in seen:
            seen.add(ref)
            refs.append(ref)
    return refs


def _within(candidate: Path, root: Path) -> bool:
    try:
        relative = candidate.relative_to(root)
    except ValueError:
        return False
    return str(relative) != "."


def _resolve_references(refs: list[str], repo_root: Path, base_dir: Path) -> list[Path]:
    resolved: list[Path] = []
    seen: set[Path] = set()
    for ref in refs:
        if os.path.isabs(ref):
            candidates = [Path(ref)]
        else:
            candidates = [base_dir / ref]
            if repo_root != base_dir:
                candidates.append(repo_root / ref)
        for candidate in candidates:
            normalized = Path(os.path.normpath(candidate))
            if normalized in seen or not _within(normalized, repo_root):
                continue
            if not normalized.is_file():
                continue
            seen.add(normalized)
            resolved.append(normalized)
            break
    return resolved


def _truncate(content: str, limit: int) -> str:
    """Cut *content* to at most *limit* UTF-8 bytes without splitting a character."""
    return content.encode("utf-8")[:limit].decode("utf-8", errors="ignore")


def collect_context_files(
    document: str,
    repo_root: Path,
    base_dir: Path,
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
) -> list[ContextFile]:
    files: list[ContextFile] = []
    total = 0
    for path in _resolve_references(extract_references(document), repo_root, base_dir):
        if len(files) >= max_files or total >= max_total_bytes:
            break
        rel = path.relative_to(repo_root).as_posix()
        if any(part in IGNORED_DIRS for part in rel.split("/")):
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Skipping unreadable context file %s", path)
            continue
        if "\0" in content:
            continue

        size = len(content.encode("utf-8"))
        truncated = False
        if size > max_file_bytes:
            content = _truncate(content, max_file_bytes)
            truncated = True
        remaining = max_total_bytes - total
        if len(content.encode("utf-8")) > remaining:
            content = _truncate(content, remaining)
            truncated = True
        if not content.strip():
            continue

        size = len(content.encode("utf-8"))
        total += size
        files.append(ContextFile(path=rel, content=content.rstrip(), truncated=truncated, bytes=size))
    return files


def build_context(
    document: str,
    input_file: str | Path,
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
) -> ContextResult | None:
    """Build the ``<repo_context>`` block for *document*, or None if nothing matched."""
    base_dir = Path(input_file).resolve().parent
    repo_root = find_git_root(base_dir) or base_dir
    files = collect_context_files(
        document, repo_root, base_dir,
        max_files=max_files, max_file_bytes=max_file_bytes, max_total_bytes=max_total_bytes,
    )
    if not files:
        return None

    lines = [
        "The following files were auto-included based on references in the document.",
        "Use them as supporting context and do not speculate about unseen code.",
    ]
    for f in files:
        lines.append(f'<file path="{f.path}" truncated="{"true" if f.truncated else "false"}">')
        lines.append(f.content)
        lines.append("</file>")
    block = "<repo_context>\n" + "\n".join(lines) + "\n</repo_context>"
    return ContextResult(block=block, files=files, total_bytes=sum(f.bytes for f in files))
