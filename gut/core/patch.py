"""Parse, rewrite and render git unified diffs.

Diffs come from ``git diff --binary --no-renames`` so every file section
has identical old and new paths in its ``diff --git`` line (or /dev/null
on one side for additions and deletions).
"""
from dataclasses import dataclass, field
from typing import List, Optional

from gut.core.patterns import PatternEngine

DIFF_HEADER = "diff --git "
DEV_NULL = "/dev/null"
BINARY_MARKER = "GIT binary patch"


def _split_eol(line: str):
    """Split a line into (text, line ending)."""
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


@dataclass
class FilePatch:
    """One file section of a unified diff."""

    old_path: Optional[str]
    new_path: Optional[str]
    headers: List[str] = field(default_factory=list)
    body: List[str] = field(default_factory=list)
    binary: bool = False

    @property
    def path(self) -> str:
        return self.new_path or self.old_path

    @property
    def is_new(self) -> bool:
        return self.old_path is None

    @property
    def is_deleted(self) -> bool:
        return self.new_path is None

    @property
    def hunk_count(self) -> int:
        return sum(1 for line in self.body if line.startswith("@@"))

    def render(self) -> str:
        return "".join(self.headers) + "".join(self.body)

    def rewrite(self, engine: PatternEngine) -> "FilePatch":
        """Return a copy with paths and (textual) content rewritten."""
        old_path = engine.rewrite_path(self.old_path) if self.old_path else None
        new_path = engine.rewrite_path(self.new_path) if self.new_path else None

        headers = []
        for line in self.headers:
            text, eol = _split_eol(line)
            if text.startswith(DIFF_HEADER):
                path = new_path or old_path
                text = f"{DIFF_HEADER}a/{path} b/{path}"
            elif text.startswith("--- ") or text.startswith("+++ "):
                text = _rewrite_marker_line(text, old_path if text.startswith("---") else new_path)
            headers.append(text + eol)

        if self.binary:
            body = list(self.body)
        else:
            body = [_rewrite_body_line(line, engine) for line in self.body]

        return FilePatch(old_path, new_path, headers, body, self.binary)


def _rewrite_marker_line(text: str, path: Optional[str]) -> str:
    prefix, rest = text[:4], text[4:]
    # git appends a tab after names containing spaces
    suffix = "\t" if rest.endswith("\t") else ""
    if path is None:
        return f"{prefix}{DEV_NULL}{suffix}"
    side = "a/" if prefix == "--- " else "b/"
    return f"{prefix}{side}{path}{suffix}"


def _rewrite_body_line(line: str, engine: PatternEngine) -> str:
    text, eol = _split_eol(line)
    if not text:
        return line
    marker = text[0]
    if marker in " +-":
        return marker + engine.rewrite(text[1:]) + eol
    if text.startswith("@@"):
        # keep the range header, rewrite only the trailing section heading
        end = text.find("@@", 2)
        if end != -1 and len(text) > end + 2:
            return text[:end + 2] + engine.rewrite(text[end + 2:]) + eol
    return line


def _paths_from_git_header(text: str):
    rest = text[len(DIFF_HEADER):]
    if rest.startswith("a/"):
        # "a/P b/P" with identical P on both sides
        half = (len(rest) - len("a/ b/")) // 2
        path = rest[2:2 + half]
        return path, path
    return None, None


def _path_from_marker(text: str) -> Optional[str]:
    rest = text[4:].rstrip("\t")
    if rest == DEV_NULL:
        return None
    if rest[:2] in ("a/", "b/"):
        return rest[2:]
    return rest


def parse_diff(text: str) -> List[FilePatch]:
    """Split a git diff into per-file patches."""
    patches: List[FilePatch] = []
    current: Optional[FilePatch] = None
    in_body = False

    for line in text.splitlines(keepends=True):
        stripped, _ = _split_eol(line)

        if stripped.startswith(DIFF_HEADER):
            old_path, new_path = _paths_from_git_header(stripped)
            current = FilePatch(old_path, new_path, headers=[line])
            patches.append(current)
            in_body = False
            continue

        if current is None:
            continue

        if in_body:
            current.body.append(line)
        elif stripped.startswith("--- "):
            current.old_path = _path_from_marker(stripped)
            current.headers.append(line)
        elif stripped.startswith("+++ "):
            current.new_path = _path_from_marker(stripped)
            current.headers.append(line)
        elif stripped.startswith("new file mode"):
            current.old_path = None
            current.headers.append(line)
        elif stripped.startswith("deleted file mode"):
            current.new_path = None
            current.headers.append(line)
        elif stripped.startswith("@@"):
            in_body = True
            current.body.append(line)
        elif stripped == BINARY_MARKER:
            in_body = True
            current.binary = True
            current.body.append(line)
        else:
            current.headers.append(line)

    return patches


def render_patches(patches: List[FilePatch]) -> str:
    return "".join(p.render() for p in patches)


def rewrite_diff(text: str, engine: PatternEngine) -> List[FilePatch]:
    """Parse a diff and rewrite every file section through ``engine``."""
    return [patch.rewrite(engine) for patch in parse_diff(text)]
