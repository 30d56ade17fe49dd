"""Tolerant tokenizer for the inline directive tags of an assistant stream.

Every directive kind goes through the same two passes: a structural regex that
requires the closing tag to repeat the opening alias, then a looser pattern that
accepts any alias of the same kind and stray whitespace inside the tag. Open
tags with no close yet are reported as incomplete and never trigger anything.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple


SEARCH_TAGS = ("SEARCHREQUEST", "SEARCH_REQUEST", "SEARCH", "WEBSEARCH", "WEB_SEARCH")

TAG_ALIASES: Dict[str, Tuple[str, ...]] = {
    "search": SEARCH_TAGS,
    "image": ("IMG",),
    "page": ("PAGE",),
    "text_file": ("TEXT_FILE", "TEXT FILE", "TEXTFILE"),
    "task": ("TASK_CREATE",),
    "function_call": ("FUNCTION_CALL",),
}

# Kinds that fire at most once per message.
ONE_SHOT_KINDS = ("image", "page", "text_file", "task", "function_call")

DEFAULT_TEXT_FILE_NAME = "generated-text-file.txt"
DEFAULT_PAGE_TITLE = "Document Content"

_FLAGS = re.IGNORECASE | re.DOTALL


def _alias_pattern(kind: str) -> str:
    if kind == "text_file":
        return r"TEXT[_\s]?FILE"
    # Longest first so SEARCH never shadows SEARCH_REQUEST.
    aliases = sorted(TAG_ALIASES[kind], key=len, reverse=True)
    return "|".join(re.escape(a) for a in aliases)


def _compile(kind: str) -> Tuple[re.Pattern, re.Pattern, re.Pattern]:
    names = _alias_pattern(kind)
    if kind == "text_file":
        strict = re.compile(rf"<({names})\b([^>]*)>(.*?)</{names}>", _FLAGS)
    else:
        strict = re.compile(rf"<({names})(\s[^>]*)?>(.*?)</\1>", _FLAGS)
    loose = re.compile(rf"<\s*({names})(?=[\s>])([^>]*)>(.*?)<\s*/\s*(?:{names})\s*>", _FLAGS)
    opener = re.compile(rf"<\s*({names})(?=[\s>])([^>]*)>", _FLAGS)
    return strict, loose, opener


_PATTERNS = {kind: _compile(kind) for kind in TAG_ALIASES}


@dataclass
class DirectiveMatch:
    kind: str
    tag: str
    body: str
    start: int
    end: int
    complete: bool
    attrs: str = ""
    raw: str = ""


def _overlaps(start: int, end: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start < s_end and s_start < end for s_start, s_end in spans)


def scan(buffer: str, kinds: Optional[List[str]] = None) -> List[DirectiveMatch]:
    """Return every directive region in ``buffer`` ordered by position."""
    found: List[DirectiveMatch] = []
    for kind in kinds or list(TAG_ALIASES):
        strict, loose, opener = _PATTERNS[kind]
        spans: List[Tuple[int, int]] = []
        for pattern in (strict, loose):
            for m in pattern.finditer(buffer):
                if _overlaps(m.start(), m.end(), spans):
                    continue
                spans.append((m.start(), m.end()))
                found.append(
                    DirectiveMatch(
                        kind=kind,
                        tag=m.group(1).upper(),
                        body=m.group(3),
                        start=m.start(),
                        end=m.end(),
                        complete=True,
                        attrs=(m.group(2) or "").strip(),
                        raw=m.group(0),
                    )
                )
        for m in opener.finditer(buffer):
            if _overlaps(m.start(), m.end(), spans):
                continue
            found.append(
                DirectiveMatch(
                    kind=kind,
                    tag=m.group(1).upper(),
                    body=buffer[m.end():],
                    start=m.start(),
                    end=len(buffer),
                    complete=False,
                    attrs=(m.group(2) or "").strip(),
                    raw=buffer[m.start():],
                )
            )
            # Anything after a dangling opener belongs to it.
            break
    found.sort(key=lambda d: (d.start, d.kind))
    return found


def visible_text(buffer: str) -> str:
    """The prose left over once complete and dangling directive regions are removed."""
    pieces: List[str] = []
    cursor = 0
    for match in scan(buffer):
        if match.start < cursor:
            continue
        pieces.append(buffer[cursor:match.start])
        cursor = match.end
    pieces.append(buffer[cursor:])
    text = "".join(pieces)
    text = re.sub(r"<think>.*?</think>", "", text, flags=_FLAGS)
    return text.strip()


class DirectiveDetector:
    """Per-message detector keeping the one-shot flags.

    Search occurrences are tracked by offset so every search tag in a reply is
    reported once; the other kinds fire at most once per message.
    """

    def __init__(self) -> None:
        self.fired: Set[str] = set()
        self.search_offsets: Set[int] = set()

    def detect(self, buffer: str) -> List[DirectiveMatch]:
        fresh: List[DirectiveMatch] = []
        for match in scan(buffer):
            if not match.complete:
                continue
            if match.kind == "search":
                if match.start in self.search_offsets or not match.body.strip():
                    continue
                self.search_offsets.add(match.start)
                fresh.append(match)
                continue
            if match.kind in self.fired:
                continue
            self.fired.add(match.kind)
            fresh.append(match)
        return fresh


# Body parsers


def page_title(body: str) -> str:
    text = re.sub(r"^#+\s*", "", body.strip(), flags=re.MULTILINE)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"\*(.*?)\*", r"\1", text)
    text = re.sub(r"`(.*?)`", r"\1", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    first_line = text.split("\n")[0].strip()
    if len(first_line) > 50:
        return first_line[:50] + "..."
    return first_line or DEFAULT_PAGE_TITLE


def parse_text_file(body: str, attrs: str = "") -> Tuple[str, str]:
    """Return ``(filename, content)`` for a text-file directive."""
    lines = body.strip().split("\n")
    name: Optional[str] = None
    attr_match = re.search(r"(?:name|filename)\s*=\s*([\"'])(.*?)\1", attrs or "", re.IGNORECASE)
    if attr_match and attr_match.group(2).strip():
        name = attr_match.group(2).strip()
    if not name:
        filename_line = next((line for line in lines if line.startswith("Filename:")), None)
        if filename_line and filename_line[len("Filename:"):].strip():
            name = filename_line[len("Filename:"):].strip()
    if not name:
        first_line = lines[0].strip() if lines else ""
        if first_line and len(first_line) < 50:
            name = re.sub(r"[^a-zA-Z0-9]", "-", first_line).lower() + ".txt"
            if len(name) > 50:
                name = name[:45] + ".txt"
    name = name or DEFAULT_TEXT_FILE_NAME

    start = next((i for i, line in enumerate(lines) if line.startswith("Content:")), None)
    if start is not None:
        collected = [lines[start][len("Content:"):].strip()]
        for line in lines[start + 1:]:
            if line.startswith("Sources:") or line.startswith("Filename:"):
                break
            collected.append(line)
        content = "\n".join(collected).strip()
    else:
        end = next((i for i, line in enumerate(lines) if line.startswith("Sources:")), len(lines))
        content = "\n".join(lines[:end]).strip()
    return name, content


def parse_task(body: str) -> Optional[Tuple[str, str]]:
    """``type:query`` split on the first colon; None when either side is missing."""
    if ":" not in body:
        return None
    task_type, query = body.split(":", 1)
    task_type, query = task_type.strip(), query.strip()
    if not task_type or not query:
        return None
    return task_type, query


_CALL_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*$", re.DOTALL)
_KWARG_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')", re.DOTALL)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return value.replace('\\"', '"').replace("\\'", "'").replace("\\n", "\n")


def parse_function_call(body: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Parse ``name(key="value", ...)`` or ``name(single positional)``."""
    m = _CALL_RE.match(body or "")
    if not m:
        return None
    name, arg_text = m.group(1), m.group(2).strip()
    args: Dict[str, Any] = {}
    kwargs = list(_KWARG_RE.finditer(arg_text))
    if kwargs:
        for kw in kwargs:
            args[kw.group(1)] = _unquote(kw.group(2))
    elif arg_text:
        args["_positional"] = _unquote(arg_text)
    return name, args
