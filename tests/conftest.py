from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def write_tree(root: Path, files: Mapping[str, bytes | str]) -> None:
    """Write ``files`` (POSIX relative path -> content) below ``root``."""
    for relative, content in files.items():
        path = root / Path(*relative.split("/"))
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_bytes(content.encode("utf-8"))
        else:
            path.write_bytes(content)


def read_tree(root: Path) -> Dict[str, bytes]:
    """Return every file below ``root`` keyed by POSIX relative path."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@dataclass(slots=True)
class UpstreamRepo:
    """Fixture payload representing a git repository holding the upstream branch."""

    root: Path

    def git(self, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout.strip()

    def commit(self, files: Mapping[str, bytes | str], message: str = "update") -> str:
        """Write ``files``, commit them and return the new commit id."""
        write_tree(self.root, files)
        self.git("add", "--", *files)
        self.git("commit", "-m", message)
        return self.git("rev-parse", "HEAD")

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m forkport.cli`` inside the repository."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath
        for key in list(env):
            if key.startswith("FORKPORT_"):
                env.pop(key)

        command = [sys.executable, "-m", "forkport.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


@pytest.fixture()
def upstream_repo(tmp_path: Path) -> UpstreamRepo:
    """Create a git repository with an ``upstream`` branch and a small tree."""

    repo_root = tmp_path / "fork"
    repo_root.mkdir()
    repo = UpstreamRepo(root=repo_root)
    repo.git("init")
    repo.git("config", "user.email", "porter@example.com")
    repo.git("config", "user.name", "Fork Porter")
    repo.git("config", "core.autocrlf", "false")
    repo.git("checkout", "-b", "upstream")

    repo.commit(
        {
            "README.md": "Upstream project\n",
            "server/src/Main.java": textwrap.dedent(
                """
                package server;

                public class Main {
                    public static void main(String[] args) {
                        System.out.println("upstream");
                    }
                }
                """
            ).lstrip(),
            "server/build.gradle": "plugins { id 'java' }\n",
            "api/Api.java": "public interface Api {}\n",
        },
        message="Initial upstream state",
    )
    return repo


def porting_config_yaml(*, targets: str = "[fork]", branch: str = "upstream") -> str:
    return textwrap.dedent(
        f"""
        project:
          root: .
          repository: .
        upstream_branch: {branch}
        porting_branches: {targets}
        patch_mode: offset
        paths:
          upstream: work/upstream
          workspace: work/workspace
          patches: patches
          rejects: work/rejects
          scratch: work/tmp
          commit_marker: commit.sha
        """
    ).lstrip()
