"""Built-in file tools, sandboxed to a base directory.

Each tool raises on failure; the dispatcher turns the exception into
``error: ...`` text for the model.
"""

import os
import re
from functools import lru_cache, partial
from pathlib import Path, PurePosixPath, PureWindowsPath

from .dispatch import FunctionTool

MAX_OUTPUT_BYTES = 50 * 1024
MAX_LINE_LENGTH = 2000
MAX_LIST_RESULTS = 100
BINARY_CHECK_BYTES = 8192


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve file_path against base_dir, refusing anything that escapes it.

    Symlinks are resolved on both sides before the containment check.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if not resolved.is_relative_to(base):
        raise ValueError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def read_file(file_path: str, *, base_dir: str, offset: int = 1, limit: int = 2000) -> str:
    """Read a text file with line numbers, or list a directory."""
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.exists():
        raise FileNotFoundError(f"path does not exist: {file_path}")

    if resolved.is_dir():
        names = [
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(resolved.iterdir())
        ]
        return "\n".join(names)

    with open(resolved, "rb") as f:
        if b"\x00" in f.read(BINARY_CHECK_BYTES):
            raise ValueError(f"binary file detected: {file_path}")

    lines = resolved.read_text(encoding="utf-8").splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    out: list[str] = []
    total_bytes = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        size = len(numbered.encode("utf-8")) + 1
        if total_bytes + size > MAX_OUTPUT_BYTES:
            break
        out.append(numbered)
        total_bytes += size

    remaining = len(lines) - (start + len(out))
    result = "\n".join(out)
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(out) + 1} to continue]"
    return result


def write_file(file_path: str, content: str, *, base_dir: str) -> str:
    """Create or overwrite a file, creating parent directories as needed."""
    resolved = safe_resolve(file_path, base_dir)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


def _segment_regex(segment: str) -> str:
    out = []
    i = 0
    while i < len(segment):
        c = segment[i]
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[" and "]" in segment[i + 2 :]:
            end = segment.index("]", i + 2)
            body = segment[i + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = end
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@lru_cache(maxsize=64)
def _glob_regex(pattern: str) -> re.Pattern:
    """Compile a relative glob the way PurePath.full_match reads it.

    "*" and "?" never cross "/"; a "**" segment matches any number of
    directories, including none.
    """
    segments = pattern.removeprefix("./").split("/")
    parts = []
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == "**":
            parts.append(".*" if last else "(?:[^/]+/)*")
        else:
            parts.append(_segment_regex(segment) + ("" if last else "/"))
    return re.compile("".join(parts), re.DOTALL)


def _glob_match(rel_path: str, pattern: str) -> bool:
    return _glob_regex(pattern).fullmatch(rel_path) is not None


def list_files(pattern: str = "**/*", path: str = ".", *, base_dir: str) -> str:
    """Recursively list files under path matching a relative glob, newest first."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise ValueError(f"pattern {pattern!r} must be relative, not absolute")
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise ValueError(f"pattern {pattern!r} contains '..', which is not allowed")

    root = safe_resolve(path, base_dir)
    if not root.is_dir():
        raise NotADirectoryError(f"path is not a directory: {path}")

    base = Path(base_dir).resolve()
    matched: list[Path] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            filepath = Path(dirpath) / filename
            if _glob_match(filepath.relative_to(root).as_posix(), pattern):
                matched.append(filepath)

    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    shown = [str(f.relative_to(base)) for f in matched[:MAX_LIST_RESULTS]]
    result = "\n".join(shown)
    if len(matched) > MAX_LIST_RESULTS:
        result += f"\n(Results truncated: showing first {MAX_LIST_RESULTS} of {len(matched)}.)"
    return result


def builtin_tools(base_dir: str) -> list[FunctionTool]:
    """Return the built-in tool set bound to base_dir."""
    return [
        FunctionTool(
            name="read_file",
            description=(
                "Read a file with line numbers, or list a directory. "
                "Use offset/limit to page through long files."
            ),
            fn=partial(read_file, base_dir=base_dir),
            parameters={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to read."},
                    "offset": {
                        "type": "integer",
                        "description": "1-based first line. Defaults to 1.",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of lines. Defaults to 2000.",
                    },
                },
                "required": ["file_path"],
            },
        ),
        FunctionTool(
            name="write_file",
            description="Create or overwrite a file with the given content.",
            fn=partial(write_file, base_dir=base_dir),
            parameters={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to write."},
                    "content": {"type": "string", "description": "Full file content."},
                },
                "required": ["file_path", "content"],
            },
        ),
        FunctionTool(
            name="list_files",
            description=(
                "List files matching a glob pattern relative to path, newest first. "
                '"*" stays within one directory; use "**/*.py" to search subdirectories.'
            ),
            fn=partial(list_files, base_dir=base_dir),
            parameters={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Relative glob."},
                    "path": {
                        "type": "string",
                        "description": "Directory to search. Defaults to the base directory.",
                    },
                },
                "required": ["pattern"],
            },
        ),
    ]
