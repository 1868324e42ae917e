"""Unified diff rendering, parsing and hunk application.

Patch files written here are git-style unified diffs: a ``diff --git`` header,
``new file mode``/``deleted file mode`` markers, an ``index`` line carrying
git blob ids, ``a/``/``b/`` prefixed ``---``/``+++`` lines and hunks with
three lines of context.  Lines are always separated by LF inside the patch;
whatever line ending the content itself uses stays part of the hunk line.
Binary content is carried as ``GIT binary patch`` literal hunks.
"""

from __future__ import annotations

import base64
import difflib
import hashlib
import re
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

DEV_NULL = "/dev/null"
DEFAULT_CONTEXT = 3
NO_NEWLINE_MARKER = "\\ No newline at end of file"
NULL_BLOB_ID = "0" * 40

_BINARY_SNIFF_BYTES = 8000
_BINARY_LINE_BYTES = 52

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_LITERAL_HEADER = re.compile(r"^(?P<kind>literal|delta) (?P<size>\d+)$")


class PatchError(RuntimeError):
    """Raised when patch text is malformed or cannot be processed."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PatchMode(str, Enum):
    """How strictly hunks must line up with the file they are applied to."""

    EXACT = "exact"
    OFFSET = "offset"
    FUZZY = "fuzzy"


@dataclass(slots=True)
class HunkLine:
    """Single hunk body line; ``text`` keeps its own line ending."""

    tag: str  # " ", "-" or "+"
    text: str


@dataclass(slots=True)
class Hunk:
    """One ``@@`` block of a unified diff."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[HunkLine] = field(default_factory=list)
    section: str = ""

    @property
    def old_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.tag in {" ", "-"}]

    @property
    def new_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.tag in {" ", "+"}]

    def render(self) -> str:
        header = (
            f"@@ -{_format_range(self.old_start, self.old_count)} "
            f"+{_format_range(self.new_start, self.new_count)} @@{self.section}\n"
        )
        return header + "".join(_render_line(line.tag, line.text) for line in self.lines)


@dataclass(slots=True)
class BinaryPatch:
    """Literal binary payloads; ``reverse`` is the expected base content."""

    forward: bytes
    reverse: bytes | None = None


@dataclass(slots=True)
class FilePatch:
    """Every change a patch describes for a single path."""

    old_path: str | None
    new_path: str | None
    change_type: str  # "add", "delete" or "modify"
    header: List[str] = field(default_factory=list)
    hunks: List[Hunk] = field(default_factory=list)
    binary: BinaryPatch | None = None

    @property
    def path(self) -> str | None:
        return self.new_path or self.old_path


@dataclass(slots=True)
class HunkApplication:
    """Result of placing a hunk list onto a sequence of lines."""

    lines: List[str]
    applied: List[int] = field(default_factory=list)
    failed: List[Hunk] = field(default_factory=list)
    offsets: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------- content


def split_lines(text: str) -> List[str]:
    """Split on LF only, keeping line endings (``\\r`` stays with its line)."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def is_binary(data: bytes) -> bool:
    """Return True for content that cannot be carried as text hunks."""
    if b"\0" in data[:_BINARY_SNIFF_BYTES]:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def git_blob_id(data: bytes | None) -> str:
    """Compute the git object id ``data`` would have as a blob."""
    if data is None:
        return NULL_BLOB_ID
    digest = hashlib.sha1()
    digest.update(f"blob {len(data)}\0".encode("ascii"))
    digest.update(data)
    return digest.hexdigest()


# -------------------------------------------------------------- rendering


def _format_range(start: int, count: int) -> str:
    if count == 1:
        return str(start)
    return f"{start},{count}"


def _render_line(tag: str, text: str) -> str:
    if text.endswith("\n"):
        return f"{tag}{text}"
    return f"{tag}{text}\n{NO_NEWLINE_MARKER}\n"


def _hunk_start(begin: int, length: int) -> int:
    # Empty ranges name the line *before* the change, per unified diff rules.
    return begin if length == 0 else begin + 1


def build_hunks(old_lines: Sequence[str], new_lines: Sequence[str], *, context: int = DEFAULT_CONTEXT) -> List[Hunk]:
    """Group the differences between two line lists into unified hunks."""
    if list(old_lines) == list(new_lines):
        return []
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    hunks: List[Hunk] = []
    for group in matcher.get_grouped_opcodes(context):
        i1, i2 = group[0][1], group[-1][2]
        j1, j2 = group[0][3], group[-1][4]
        hunk = Hunk(
            old_start=_hunk_start(i1, i2 - i1),
            old_count=i2 - i1,
            new_start=_hunk_start(j1, j2 - j1),
            new_count=j2 - j1,
        )
        for tag, a1, a2, b1, b2 in group:
            if tag == "equal":
                hunk.lines.extend(HunkLine(" ", text) for text in old_lines[a1:a2])
                continue
            if tag in {"replace", "delete"}:
                hunk.lines.extend(HunkLine("-", text) for text in old_lines[a1:a2])
            if tag in {"replace", "insert"}:
                hunk.lines.extend(HunkLine("+", text) for text in new_lines[b1:b2])
        hunks.append(hunk)
    return hunks


def _encode_binary_literal(data: bytes) -> List[str]:
    compressed = zlib.compress(data, 9)
    lines = [f"literal {len(data)}\n"]
    for index in range(0, len(compressed), _BINARY_LINE_BYTES):
        chunk = compressed[index : index + _BINARY_LINE_BYTES]
        size = len(chunk)
        marker = chr(ord("A") + size - 1) if size <= 26 else chr(ord("a") + size - 27)
        lines.append(marker + base64.b85encode(chunk, pad=True).decode("ascii") + "\n")
    lines.append("\n")
    return lines


def _decode_binary_literal(size: int, lines: Sequence[str]) -> bytes:
    payload = bytearray()
    for raw in lines:
        line = raw.rstrip("\n")
        if not line:
            continue
        marker = line[0]
        if "A" <= marker <= "Z":
            length = ord(marker) - ord("A") + 1
        elif "a" <= marker <= "z":
            length = ord(marker) - ord("a") + 27
        else:
            raise PatchError(f"Corrupt binary patch line: {line[:20]!r}")
        try:
            decoded = base64.b85decode(line[1:])
        except ValueError as error:
            raise PatchError("Corrupt binary patch payload.") from error
        payload.extend(decoded[:length])
    try:
        data = zlib.decompress(bytes(payload))
    except zlib.error as error:
        raise PatchError("Binary patch payload failed to inflate.") from error
    if len(data) != size:
        raise PatchError(f"Binary patch size mismatch: expected {size} bytes, got {len(data)}.")
    return data


def render_file_patch(
    path: str,
    old: bytes | None,
    new: bytes | None,
    *,
    old_mode: str = "100644",
    new_mode: str = "100644",
    context: int = DEFAULT_CONTEXT,
) -> str:
    """Render a git-style unified diff turning ``old`` into ``new``.

    ``None`` on either side marks an added or removed file.
    """
    if old is None and new is None:
        raise PatchError(f"Nothing to diff for {path}.")

    lines: List[str] = [f"diff --git a/{path} b/{path}\n"]
    old_id, new_id = git_blob_id(old), git_blob_id(new)
    if old is None:
        lines.append(f"new file mode {new_mode}\n")
        lines.append(f"index {old_id}..{new_id}\n")
    elif new is None:
        lines.append(f"deleted file mode {old_mode}\n")
        lines.append(f"index {old_id}..{new_id}\n")
    else:
        if old_mode != new_mode:
            lines.append(f"old mode {old_mode}\n")
            lines.append(f"new mode {new_mode}\n")
            lines.append(f"index {old_id}..{new_id}\n")
        else:
            lines.append(f"index {old_id}..{new_id} {new_mode}\n")

    old_bytes = old or b""
    new_bytes = new or b""
    if is_binary(old_bytes) or is_binary(new_bytes):
        lines.append("GIT binary patch\n")
        lines.extend(_encode_binary_literal(new_bytes))
        lines.extend(_encode_binary_literal(old_bytes))
        return "".join(lines)

    hunks = build_hunks(
        split_lines(old_bytes.decode("utf-8")),
        split_lines(new_bytes.decode("utf-8")),
        context=context,
    )
    if hunks:
        lines.append(f"--- {DEV_NULL if old is None else 'a/' + path}\n")
        lines.append(f"+++ {DEV_NULL if new is None else 'b/' + path}\n")
        lines.extend(hunk.render() for hunk in hunks)
    return "".join(lines)


def render_reject(patch: FilePatch, hunks: Iterable[Hunk]) -> str:
    """Render the header of ``patch`` followed by the hunks that failed."""
    old_label = DEV_NULL if patch.old_path is None else f"a/{patch.old_path}"
    new_label = DEV_NULL if patch.new_path is None else f"b/{patch.new_path}"
    body = [f"--- {old_label}\n", f"+++ {new_label}\n"]
    body.extend(hunk.render() for hunk in hunks)
    return "".join(body)


# ---------------------------------------------------------------- parsing


def _strip_prefix(raw: str) -> str | None:
    value = raw.split("\t", 1)[0].rstrip("\r\n")
    if value == DEV_NULL:
        return None
    if value.startswith(("a/", "b/")):
        value = value[2:]
    return value or None


def _parse_git_header(line: str) -> Tuple[str | None, str | None]:
    rest = line[len("diff --git ") :].rstrip("\r\n")
    half = (len(rest) - 1) // 2
    if len(rest) % 2 == 1 and rest[half] == " ":
        left, right = rest[:half], rest[half + 1 :]
        if left[2:] == right[2:]:
            return _strip_prefix(left), _strip_prefix(right)
    if " b/" in rest:
        left, right = rest.split(" b/", 1)
        return _strip_prefix(left), _strip_prefix("b/" + right)
    return None, None


def _parse_hunk(lines: Sequence[str], index: int, location: str) -> Tuple[Hunk, int]:
    header = lines[index]
    match = _HUNK_HEADER.match(header.rstrip("\r\n"))
    if not match:
        raise PatchError(f"Malformed hunk header in {location}: {header.rstrip()}")
    old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
    new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
    hunk = Hunk(
        old_start=int(match.group("old_start")),
        old_count=old_count,
        new_start=int(match.group("new_start")),
        new_count=new_count,
        section=match.group("section"),
    )
    remaining_old, remaining_new = old_count, new_count
    index += 1
    while remaining_old > 0 or remaining_new > 0:
        if index >= len(lines):
            raise PatchError(
                f"Truncated hunk in {location}: expected -{old_count}/+{new_count} lines.",
                details={"hunk": header.rstrip()},
            )
        raw = lines[index]
        if raw.startswith("\\"):
            if hunk.lines:
                _drop_final_newline(hunk.lines[-1])
            index += 1
            continue
        tag = raw[:1]
        text = raw[1:]
        if raw == "\n":
            tag, text = " ", "\n"
        if tag == " ":
            remaining_old -= 1
            remaining_new -= 1
        elif tag == "-":
            remaining_old -= 1
        elif tag == "+":
            remaining_new -= 1
        else:
            raise PatchError(f"Unexpected line inside hunk in {location}: {raw.rstrip()!r}")
        if remaining_old < 0 or remaining_new < 0:
            raise PatchError(f"Hunk line counts do not match its header in {location}.")
        hunk.lines.append(HunkLine(tag, text))
        index += 1
    if index < len(lines) and lines[index].startswith("\\"):
        if hunk.lines:
            _drop_final_newline(hunk.lines[-1])
        index += 1
    return hunk, index


def _drop_final_newline(line: HunkLine) -> None:
    if line.text.endswith("\n"):
        line.text = line.text[:-1]


def _parse_binary(lines: Sequence[str], index: int, location: str) -> Tuple[BinaryPatch, int]:
    payloads: List[bytes] = []
    while index < len(lines) and len(payloads) < 2:
        match = _LITERAL_HEADER.match(lines[index].rstrip("\r\n"))
        if not match:
            break
        if match.group("kind") == "delta":
            raise PatchError(f"Binary delta hunks are not supported in {location}.")
        size = int(match.group("size"))
        index += 1
        body: List[str] = []
        while index < len(lines) and lines[index].strip():
            body.append(lines[index])
            index += 1
        # Skip the blank separator line.
        if index < len(lines):
            index += 1
        payloads.append(_decode_binary_literal(size, body))
    if not payloads:
        raise PatchError(f"Binary patch without literal payload in {location}.")
    reverse = payloads[1] if len(payloads) > 1 else None
    return BinaryPatch(forward=payloads[0], reverse=reverse), index


def parse_patch(text: str, *, location: str = "<patch>") -> List[FilePatch]:
    """Parse unified diff ``text`` into one :class:`FilePatch` per file section.

    Both git-style sections and plain ``---``/``+++`` diffs are accepted.
    """
    lines = split_lines(text)
    patches: List[FilePatch] = []
    current: FilePatch | None = None
    index = 0

    def finish() -> None:
        if current is None:
            return
        if current.old_path is None and current.new_path is None:
            raise PatchError(f"Patch section without a target path in {location}.")
        if any(line.startswith("new file mode") for line in current.header) or (
            current.old_path is None and current.new_path is not None
        ):
            current.change_type = "add"
        elif any(line.startswith("deleted file mode") for line in current.header) or (
            current.new_path is None and current.old_path is not None
        ):
            current.change_type = "delete"
        patches.append(current)

    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            finish()
            old_path, new_path = _parse_git_header(line)
            current = FilePatch(old_path=old_path, new_path=new_path, change_type="modify", header=[line])
            index += 1
            continue
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            if current is None or current.hunks or current.binary is not None or any(
                entry.startswith("--- ") for entry in current.header
            ):
                finish()
                current = FilePatch(old_path=None, new_path=None, change_type="modify")
            current.old_path = _strip_prefix(line[4:])
            current.new_path = _strip_prefix(lines[index + 1][4:])
            current.header.extend([line, lines[index + 1]])
            index += 2
            continue
        if current is None:
            index += 1
            continue
        if line.startswith("@@"):
            hunk, index = _parse_hunk(lines, index, location)
            current.hunks.append(hunk)
            continue
        if line.rstrip("\r\n") == "GIT binary patch":
            current.binary, index = _parse_binary(lines, index + 1, location)
            continue
        if not current.hunks:
            current.header.append(line)
        index += 1

    finish()
    return patches


# ---------------------------------------------------------------- applying


def _trim_context(hunk: Hunk, amount: int) -> Tuple[Hunk, int] | None:
    """Drop up to ``amount`` context lines from both ends of ``hunk``."""
    leading = 0
    while leading < amount and leading < len(hunk.lines) and hunk.lines[leading].tag == " ":
        leading += 1
    trailing = 0
    while (
        trailing < amount
        and trailing < len(hunk.lines) - leading
        and hunk.lines[len(hunk.lines) - 1 - trailing].tag == " "
    ):
        trailing += 1
    if not leading and not trailing:
        return None
    body = hunk.lines[leading : len(hunk.lines) - trailing]
    trimmed = Hunk(
        old_start=hunk.old_start + leading,
        old_count=hunk.old_count - leading - trailing,
        new_start=hunk.new_start + leading,
        new_count=hunk.new_count - leading - trailing,
        lines=list(body),
        section=hunk.section,
    )
    return trimmed, leading


def _matches(lines: Sequence[str], pattern: Sequence[str], position: int) -> bool:
    return list(lines[position : position + len(pattern)]) == list(pattern)


def _locate(lines: Sequence[str], pattern: Sequence[str], expected: int, floor: int, search: bool) -> int | None:
    """Return the nearest index >= ``floor`` where ``pattern`` matches."""
    last = len(lines) - len(pattern)
    if last < floor:
        return None
    expected = min(max(expected, floor), last)
    if not pattern:
        return expected
    if _matches(lines, pattern, expected):
        return expected
    if not search:
        return None
    distance = 1
    while expected - distance >= floor or expected + distance <= last:
        before = expected - distance
        if before >= floor and _matches(lines, pattern, before):
            return before
        after = expected + distance
        if after <= last and _matches(lines, pattern, after):
            return after
        distance += 1
    return None


def apply_hunks(
    lines: Sequence[str],
    hunks: Sequence[Hunk],
    *,
    mode: PatchMode = PatchMode.OFFSET,
    fuzz: int = 2,
) -> HunkApplication:
    """Apply ``hunks`` in order, collecting the ones that cannot be placed.

    EXACT only accepts a hunk at its recorded line (adjusted by the size
    changes of earlier hunks), OFFSET searches outward from there for the
    nearest matching context, and FUZZY additionally retries with up to
    ``fuzz`` context lines dropped from each end.
    """
    result = HunkApplication(lines=list(lines))
    shift = 0
    floor = 0
    for number, hunk in enumerate(hunks, start=1):
        base_index = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        strict = mode is PatchMode.EXACT
        candidate, leading = hunk, 0
        position: int | None = None
        if strict:
            expected = base_index + shift
            if expected >= floor and expected + len(hunk.old_lines) <= len(result.lines):
                if _matches(result.lines, hunk.old_lines, expected):
                    position = expected
        else:
            position = _locate(result.lines, hunk.old_lines, base_index + shift, floor, True)
        if position is None and mode is PatchMode.FUZZY:
            for amount in range(1, max(fuzz, 0) + 1):
                trimmed = _trim_context(hunk, amount)
                if trimmed is None:
                    break
                candidate, leading = trimmed
                position = _locate(
                    result.lines, candidate.old_lines, base_index + leading + shift, floor, True
                )
                if position is not None:
                    break
        if position is None:
            result.failed.append(hunk)
            continue

        old_side, new_side = candidate.old_lines, candidate.new_lines
        result.lines[position : position + len(old_side)] = new_side
        found_shift = (position - leading) - (base_index + shift)
        if found_shift:
            result.offsets.append((number, found_shift))
        shift += found_shift + len(new_side) - len(old_side)
        floor = position + len(new_side)
        result.applied.append(number)
    return result


__all__ = [
    "BinaryPatch",
    "DEFAULT_CONTEXT",
    "DEV_NULL",
    "FilePatch",
    "Hunk",
    "HunkApplication",
    "HunkLine",
    "PatchError",
    "PatchMode",
    "apply_hunks",
    "build_hunks",
    "git_blob_id",
    "is_binary",
    "parse_patch",
    "render_file_patch",
    "render_reject",
    "split_lines",
]
