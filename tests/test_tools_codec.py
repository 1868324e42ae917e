from __future__ import annotations

from pathlib import Path

import pytest

from conftest import read_tree, write_tree
from forkport.tools import codec as codec_module
from forkport.tools.codec import DiffEngineError, PatchCodec
from forkport.tools.patch import PatchApplier


def _trees(tmp_path: Path, base: dict, working: dict) -> tuple[Path, Path]:
    base_dir = tmp_path / "base"
    working_dir = tmp_path / "working"
    base_dir.mkdir()
    working_dir.mkdir()
    write_tree(base_dir, base)
    write_tree(working_dir, working)
    return base_dir, working_dir


def test_generate_patches_classifies_changes(tmp_path: Path) -> None:
    base_dir, working_dir = _trees(
        tmp_path,
        {"a.txt": "hello\n"},
        {"a.txt": "hello world\n", "b.txt": "new\n"},
    )
    output = tmp_path / "patches"

    summary = PatchCodec().generate_patches(base_dir, working_dir, output)

    assert (summary.changed, summary.added, summary.removed, summary.unchanged) == (1, 1, 0, 0)
    assert summary.exit_code == 1
    assert sorted(read_tree(output)) == ["a.txt", "b.txt"]
    patch_a = (output / "a.txt").read_text(encoding="utf-8")
    assert "-hello\n+hello world\n" in patch_a
    assert "new file mode" in (output / "b.txt").read_text(encoding="utf-8")


def test_generate_patches_identical_trees(tmp_path: Path) -> None:
    files = {"src/Main.java": "class Main {}\n", "README": "docs\n"}
    base_dir, working_dir = _trees(tmp_path, files, files)
    output = tmp_path / "patches"

    summary = PatchCodec().generate_patches(base_dir, working_dir, output)

    assert summary.exit_code == 0
    assert summary.unchanged == 2
    assert read_tree(output) == {}


def test_generate_patches_records_removed_files(tmp_path: Path) -> None:
    base_dir, working_dir = _trees(tmp_path, {"keep.txt": "k\n", "gone/old.txt": "o\n"}, {"keep.txt": "k\n"})
    output = tmp_path / "patches"

    summary = PatchCodec().generate_patches(base_dir, working_dir, output)

    assert summary.removed == 1
    assert summary.patches == ["gone/old.txt"]
    assert "deleted file mode" in (output / "gone" / "old.txt").read_text(encoding="utf-8")


def test_generate_patches_skips_ignored_prefixes(tmp_path: Path) -> None:
    base_dir, working_dir = _trees(
        tmp_path,
        {
            "src/a.txt": "a\n",
            ".git/config": "[core]\n\tbare = false\n",
            "module/.idea/workspace.xml": "<project/>\n",
            ".gradle/cache.bin": b"\x00\x00",
            "out/generated/x.txt": "old\n",
        },
        {
            "src/a.txt": "a\n",
            ".git/config": "[core]\n",
            "module/.idea/workspace.xml": "<xml/>\n",
            ".gradle/cache.bin": b"\x00\x01",
            "out/generated/x.txt": "gen\n",
        },
    )
    output = tmp_path / "patches"

    summary = PatchCodec().generate_patches(
        base_dir, working_dir, output, ignore_prefixes=[".git", ".idea", ".gradle", "out/generated"]
    )

    assert summary.exit_code == 0
    assert summary.unchanged == 1
    assert read_tree(output) == {}


def test_generate_patches_skips_prune_names_and_clears_stale_output(tmp_path: Path) -> None:
    base_dir, working_dir = _trees(
        tmp_path,
        {"a.txt": "a\n", "src/build/Gen.java": "class Gen {}\n"},
        {
            "a.txt": "a changed\n",
            "src/build/Gen.java": "class Gen { int x; }\n",
            "build/out.txt": "artifact\n",
            "artifacts/x.txt": "x\n",
            "scripts/build": "#!/bin/sh\n",
        },
    )
    output = tmp_path / "patches"
    write_tree(output, {"stale/old.patch": "leftover\n"})

    summary = PatchCodec().generate_patches(base_dir, working_dir, output)

    assert sorted(read_tree(output)) == ["a.txt"]
    assert summary.patches == ["a.txt"]
    assert (summary.changed, summary.added, summary.removed) == (1, 0, 0)
    assert not (output / "stale").exists()
    assert [entry.name for entry in tmp_path.iterdir() if entry.name.startswith(".patches")] == []


def test_round_trip_with_build_directory_outside_prune_names(tmp_path: Path) -> None:
    base = {"src/build/Gen.java": "class Gen {}\n", "scripts/build": "#!/bin/sh\nmake\n"}
    working = {"src/build/Gen.java": "class Gen { int x; }\n", "scripts/build": "#!/bin/sh\nmake all\n"}
    base_dir, working_dir = _trees(tmp_path, base, working)
    patches = tmp_path / "patches"

    summary = PatchCodec(prune_names=[".idea", ".gradle"]).generate_patches(base_dir, working_dir, patches)
    applied = PatchApplier().apply_patches(base_dir, patches, tmp_path / "rebuilt", tmp_path / "rejects")

    assert sorted(read_tree(patches)) == summary.patches == ["scripts/build", "src/build/Gen.java"]
    assert applied.exit_code == 0
    assert read_tree(tmp_path / "rebuilt") == read_tree(working_dir)


def test_generate_then_apply_reproduces_working_tree(tmp_path: Path) -> None:
    base = {
        "src/Main.java": "".join(f"line {n}\n" for n in range(1, 30)),
        "docs/readme.md": "readme\n",
        "dos.bat": "@echo off\r\nexit\r\n",
        "image.bin": bytes(range(256)),
        "no-newline.txt": "tail",
    }
    working = {
        "src/Main.java": "".join(f"line {n}\n" if n != 15 else "patched\n" for n in range(1, 30)),
        "dos.bat": "@echo on\r\nexit\r\n",
        "image.bin": bytes(reversed(range(256))),
        "no-newline.txt": "tail changed",
        "src/New.java": "class New {}\n",
        "empty.txt": "",
    }
    base_dir, working_dir = _trees(tmp_path, base, working)
    patches = tmp_path / "patches"

    PatchCodec().generate_patches(base_dir, working_dir, patches)
    summary = PatchApplier().apply_patches(base_dir, patches, tmp_path / "rebuilt", tmp_path / "rejects")

    assert summary.exit_code == 0
    assert read_tree(tmp_path / "rebuilt") == read_tree(working_dir)
    assert not (tmp_path / "rejects").exists()


def test_generate_patches_failure_keeps_previous_patch_set(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    base_dir, working_dir = _trees(tmp_path, {"a.txt": "a\n", "b.txt": "b\n"}, {"a.txt": "A\n", "b.txt": "B\n"})
    output = tmp_path / "patches"
    PatchCodec().generate_patches(base_dir, working_dir, output)
    before = read_tree(output)
    (working_dir / "b.txt").write_text("B2\n", encoding="utf-8")
    original = codec_module.render_file_patch

    def flaky_render(path: str, *args, **kwargs) -> str:
        if path == "a.txt":
            raise OSError("disk vanished")
        return original(path, *args, **kwargs)

    monkeypatch.setattr(codec_module, "render_file_patch", flaky_render)

    with pytest.raises(DiffEngineError) as excinfo:
        PatchCodec().generate_patches(base_dir, working_dir, output)

    assert excinfo.value.exit_status == 2
    assert excinfo.value.errors == ("a.txt: disk vanished",)
    assert sorted(before) == ["a.txt", "b.txt"]
    assert read_tree(output) == before
    assert sorted(entry.name for entry in tmp_path.iterdir()) == ["base", "patches", "working"]
