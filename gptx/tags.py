"""Prompt tag expansion.

``@file(path)`` and ``@file(path:start-end)`` are replaced by a fenced
block holding the file (or the inclusive 1-based line range). Unknown
tags are left untouched.
"""

import re
from pathlib import Path

from .report import TagError

TAG_RE = re.compile(r"@(\w+)\(([^)]*)\)")
FILE_ARG_RE = re.compile(r"^(.*?)(?::(\d+)-(\d+))?$")

MAX_TAG_FILE_SIZE = 256 * 1024


def expand_tags(prompt: str, base_dir: str = ".") -> tuple[str, list[str]]:
    """Expand every known tag in prompt. Returns (text, attachments)."""
    attachments: list[str] = []

    def _replace(match: re.Match) -> str:
        tag, args = match.group(1), match.group(2)
        if tag != "file":
            return match.group(0)
        block, ident = file_block(args.strip(), base_dir)
        attachments.append(ident)
        return block

    return TAG_RE.sub(_replace, prompt), attachments


def file_block(args: str, base_dir: str = ".") -> tuple[str, str]:
    match = FILE_ARG_RE.match(args)
    path_str = match.group(1) if match else ""
    if not path_str:
        raise TagError(f"file tag: invalid argument {args!r}")

    path = Path(path_str).expanduser()
    if not path.is_absolute():
        path = Path(base_dir) / path
    try:
        if path.stat().st_size > MAX_TAG_FILE_SIZE:
            raise TagError(
                f"file tag: {path_str} is larger than {MAX_TAG_FILE_SIZE // 1024}KB"
            )
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise TagError(f"file tag: {path_str}: {e.strerror or e}") from e

    ident = path_str
    if match.group(2) is not None:
        start, end = int(match.group(2)), int(match.group(3))
        lines = text.splitlines()
        if start < 1 or start > end:
            raise TagError(f"file tag: invalid range {start}-{end}")
        if start > len(lines):
            raise TagError(
                f"file tag: {path_str} has {len(lines)} lines, range starts at {start}"
            )
        text = "\n".join(lines[start - 1 : end])
        ident = f"{path_str}:{start}-{end}"

    ext = path.suffix.lstrip(".")
    return f"\nFile: {ident}\n\n```{ext}\n{text.rstrip(chr(10))}\n```\n", ident
