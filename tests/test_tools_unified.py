from __future__ import annotations

import textwrap

import pytest

from forkport.tools.unified import (
    PatchError,
    PatchMode,
    apply_hunks,
    build_hunks,
    git_blob_id,
    is_binary,
    parse_patch,
    render_file_patch,
    render_reject,
    split_lines,
)


def _apply_text(old: str, patch_text: str, mode: PatchMode = PatchMode.OFFSET) -> str:
    (patch,) = parse_patch(patch_text)
    application = apply_hunks(split_lines(old), patch.hunks, mode=mode)
    assert application.ok
    return "".join(application.lines)


def test_render_file_patch_modify_header_and_hunk() -> None:
    old = b"alpha\nbeta\ngamma\n"
    new = b"alpha\nBETA\ngamma\n"

    text = render_file_patch("src/app.txt", old, new)

    assert text.startswith("diff --git a/src/app.txt b/src/app.txt\n")
    assert f"index {git_blob_id(old)}..{git_blob_id(new)} 100644\n" in text
    assert "--- a/src/app.txt\n+++ b/src/app.txt\n" in text
    assert "@@ -1,3 +1,3 @@\n alpha\n-beta\n+BETA\n gamma\n" in text


def test_git_blob_id_matches_git() -> None:
    # ``printf 'hello\n' | git hash-object --stdin``
    assert git_blob_id(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"
    assert git_blob_id(None) == "0" * 40


def test_render_file_patch_new_and_deleted_files() -> None:
    added = render_file_patch("docs/new.md", None, b"one\ntwo\n")
    removed = render_file_patch("docs/old.md", b"bye\n", None)

    assert "new file mode 100644\n" in added
    assert "--- /dev/null\n+++ b/docs/new.md\n@@ -0,0 +1,2 @@\n+one\n+two\n" in added
    assert "deleted file mode 100644\n" in removed
    assert "--- a/docs/old.md\n+++ /dev/null\n@@ -1 +0,0 @@\n-bye\n" in removed

    (patch,) = parse_patch(added)
    assert patch.change_type == "add"
    assert patch.path == "docs/new.md"
    (patch,) = parse_patch(removed)
    assert patch.change_type == "delete"
    assert patch.old_path == "docs/old.md"


def test_mode_change_is_recorded_in_header() -> None:
    text = render_file_patch("gradlew", b"#!/bin/sh\n", b"#!/bin/sh\n", old_mode="100644", new_mode="100755")

    assert "old mode 100644\nnew mode 100755\n" in text
    assert "@@" not in text


def test_missing_final_newline_round_trip() -> None:
    old = "first\nsecond"
    new = "first\nsecond\nthird"

    text = render_file_patch("notes.txt", old.encode(), new.encode())

    assert text.count("\\ No newline at end of file\n") == 2
    assert _apply_text(old, text) == new


def test_crlf_content_round_trip() -> None:
    old = "one\r\ntwo\r\nthree\r\n"
    new = "one\r\n2\r\nthree\r\n"

    text = render_file_patch("win.bat", old.encode(), new.encode())

    assert "-two\r\n+2\r\n" in text
    assert _apply_text(old, text) == new


def test_binary_patch_round_trip() -> None:
    old = bytes(range(256)) * 3
    new = b"\x89PNG\r\n\x1a\n" + bytes(reversed(range(256)))

    text = render_file_patch("logo.png", old, new)
    (patch,) = parse_patch(text)

    assert "GIT binary patch\n" in text
    assert patch.binary is not None
    assert patch.binary.forward == new
    assert patch.binary.reverse == old
    assert is_binary(old)
    assert not is_binary("plain text é\n".encode("utf-8"))


def test_parse_plain_unified_diff_without_git_header() -> None:
    text = textwrap.dedent(
        """\
        --- a/config.ini
        +++ b/config.ini
        @@ -1,2 +1,2 @@
         [core]
        -debug = false
        +debug = true
        """
    )

    (patch,) = parse_patch(text)

    assert patch.old_path == patch.new_path == "config.ini"
    assert patch.change_type == "modify"
    assert _apply_text("[core]\ndebug = false\n", text) == "[core]\ndebug = true\n"


def test_parse_rejects_truncated_hunk() -> None:
    text = "--- a/x\n+++ b/x\n@@ -1,3 +1,3 @@\n a\n-b\n"

    with pytest.raises(PatchError) as excinfo:
        parse_patch(text, location="x.patch")

    assert "x.patch" in str(excinfo.value)
    assert excinfo.value.details["hunk"] == "@@ -1,3 +1,3 @@"


def test_parse_rejects_binary_delta() -> None:
    text = "diff --git a/x.bin b/x.bin\nindex 1..2 100644\nGIT binary patch\ndelta 12\nAbc\n\n"

    with pytest.raises(PatchError):
        parse_patch(text)


def test_offset_mode_tolerates_shifted_context() -> None:
    old = [f"line {number}\n" for number in range(1, 11)]
    new = list(old)
    new[6] = "line seven\n"
    hunks = build_hunks(old, new)
    shifted = ["header a\n", "header b\n", *old]

    exact = apply_hunks(shifted, hunks, mode=PatchMode.EXACT)
    offset = apply_hunks(shifted, hunks, mode=PatchMode.OFFSET)

    assert not exact.ok
    assert offset.ok
    assert offset.offsets == [(1, 2)]
    assert offset.lines[8] == "line seven\n"


def test_fuzzy_mode_drops_stale_context() -> None:
    old = ["a\n", "b\n", "c\n", "target\n", "d\n", "e\n", "f\n"]
    new = ["a\n", "b\n", "c\n", "TARGET\n", "d\n", "e\n", "f\n"]
    hunks = build_hunks(old, new)
    drifted = ["A changed\n", "b\n", "c\n", "target\n", "d\n", "e\n", "F changed\n"]

    assert not apply_hunks(drifted, hunks, mode=PatchMode.OFFSET).ok
    fuzzy = apply_hunks(drifted, hunks, mode=PatchMode.FUZZY, fuzz=2)

    assert fuzzy.ok
    assert fuzzy.lines == ["A changed\n", "b\n", "c\n", "TARGET\n", "d\n", "e\n", "F changed\n"]


def test_failed_hunks_are_reported_and_rendered() -> None:
    old = [f"{number}\n" for number in range(1, 21)]
    new = list(old)
    new[1] = "two\n"
    new[17] = "eighteen\n"
    hunks = build_hunks(old, new)
    assert len(hunks) == 2

    current = list(old)
    current[17] = "conflict\n"
    application = apply_hunks(current, hunks, mode=PatchMode.OFFSET)

    assert application.applied == [1]
    assert application.failed == [hunks[1]]
    assert application.lines[1] == "two\n"

    (patch,) = parse_patch(render_file_patch("numbers.txt", "".join(old).encode(), "".join(new).encode()))
    reject = render_reject(patch, application.failed)
    assert reject.startswith("--- a/numbers.txt\n+++ b/numbers.txt\n@@ -15,6 +15,6 @@")
    assert "+eighteen\n" in reject
    assert "+two\n" not in reject
