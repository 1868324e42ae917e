"""CLI commands for maintaining a fork as patches over an upstream branch."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigurationError,
    PortingConfig,
    default_config_data,
    load_config,
    write_config,
)
from .tools.codec import DEFAULT_IGNORE_PREFIXES, DiffSummary, PatchCodec
from .tools.patch import PatchApplier, PatchesRejectedError, PatchSummary
from .tools.snapshot import TreeExtractor
from .tools.unified import PatchError, PatchMode
from .tools.vcs import GitError
from .workflow import PortingWorkflow

APP_HELP = "Keep a fork as a set of patches over an upstream branch."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)


def _config_option() -> Any:
    return typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the porting configuration file.",
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log workflow progress to stderr."),
) -> None:
    """Keep a fork as a set of patches over an upstream branch."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Translate workflow exceptions into messages and exit codes."""
    try:
        yield
    except PatchesRejectedError as error:
        typer.echo(f"Patches rejected: {', '.join(error.rejected)}")
        typer.echo("Inspect the .rej files, fix the working tree and regenerate patches.")
        raise typer.Exit(code=1) from error
    except ConfigurationError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=2) from error
    except GitError as error:
        typer.echo(f"Git error: {error}")
        raise typer.Exit(code=2) from error
    except PatchError as error:
        typer.echo(f"Patch error: {error}")
        raise typer.Exit(code=2) from error


def _load_workflow(config: str) -> PortingWorkflow:
    config_path = Path(config)
    try:
        settings: PortingConfig = load_config(config_path)
    except ConfigurationError as error:
        typer.echo(str(error))
        raise typer.Exit(code=2) from error
    return PortingWorkflow(settings)


def _render_diff(name: str, summary: DiffSummary) -> None:
    typer.echo(
        f"{name}: {summary.changed} changed, {summary.added} added, "
        f"{summary.removed} removed, {summary.unchanged} unchanged"
    )
    for path in summary.patches:
        typer.echo(f"  - {path}")


def _render_apply(name: str, summary: PatchSummary) -> None:
    if summary.copied:
        typer.echo(f"{name}: no patches, copied upstream")
        return
    typer.echo(f"{name}: {summary.applied} applied, {summary.failed} rejected")
    for outcome in summary.outcomes:
        for number, offset in outcome.offsets:
            typer.echo(f"  {outcome.path}: hunk #{number} at offset {offset}")
        if outcome.reject_path is not None:
            typer.echo(f"  ! {outcome.path} -> {outcome.reject_path.as_posix()}")


@app.command()
def init(
    config: str = _config_option(),
    upstream_branch: Optional[str] = typer.Option(
        None,
        "--upstream-branch",
        "-u",
        help="Upstream branch the fork tracks.",
    ),
    target: List[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Porting target directory (repeatable).",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default porting configuration."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    data = default_config_data()
    if upstream_branch:
        data["upstream_branch"] = upstream_branch.strip()
    if target:
        data["porting_branches"] = [entry.strip() for entry in target if entry.strip()]
    write_config(config_path, data)
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command("setup-workspace")
def setup_workspace(config: str = _config_option()) -> None:
    """Extract upstream and apply each target's patches into the workspace."""
    workflow = _load_workflow(config)
    with _handle_errors():
        try:
            report = workflow.setup_workspace()
        except PatchesRejectedError:
            typer.echo("Workspace set up with rejected patches.")
            raise
    typer.echo(f"Upstream commit: {report.commit}")
    for name, summary in report.targets.items():
        _render_apply(name, summary)


@app.command("clean-workspace")
def clean_workspace(config: str = _config_option()) -> None:
    """Delete the upstream snapshot, working trees and scratch directory."""
    workflow = _load_workflow(config)
    with _handle_errors():
        workflow.clean_workspace()
    typer.echo("Cleaned up working directories.")


@app.command("update-commit-ref")
def update_commit_ref(config: str = _config_option()) -> None:
    """Record the current upstream commit in the commit marker."""
    workflow = _load_workflow(config)
    with _handle_errors():
        commit = workflow.update_commit_ref()
    if commit is None:
        typer.echo("Failed to update commit ref; see the log for details.")
        return
    typer.echo(f"Recorded upstream commit {commit}.")


@app.command("split-sources")
def split_sources(config: str = _config_option()) -> None:
    """Copy each working tree out to its standalone directory."""
    workflow = _load_workflow(config)
    with _handle_errors():
        written = workflow.split_sources()
    for path in written:
        typer.echo(f"- {path.as_posix()}")


@app.command("generate-patches")
def generate_patches(config: str = _config_option()) -> None:
    """Regenerate each target's patches from its working tree."""
    workflow = _load_workflow(config)
    with _handle_errors():
        results = workflow.generate_patches()
    for name, summary in results.items():
        _render_diff(name, summary)


@app.command("rebuild-patches")
def rebuild_patches(config: str = _config_option()) -> None:
    """Rebuild all patches from the split source directories."""
    workflow = _load_workflow(config)
    with _handle_errors():
        results = workflow.rebuild_patches()
    for name, summary in results.items():
        _render_diff(name, summary)


@app.command()
def status(
    config: str = _config_option(),
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Show the state of every porting target."""
    workflow = _load_workflow(config)
    statuses = workflow.describe()
    if as_json:
        typer.echo(json.dumps([entry.to_dict() for entry in statuses], indent=2))
        return

    typer.echo(f"Upstream branch: {workflow.config.upstream_branch}")
    typer.echo(f"Recorded commit: {workflow.marker.read() or 'none'}")
    if not statuses:
        typer.echo("No porting targets configured.")
        return
    for entry in statuses:
        typer.echo(
            f"- {entry.name} [{entry.state.value}] patches={entry.patches} rejects={entry.rejects}"
            f" working_tree={'yes' if entry.working_tree else 'no'}"
        )


@app.command()
def extract(
    repository: Path = typer.Argument(..., help="Path to the git repository."),
    reference: str = typer.Argument(..., help="Branch, tag or commit to extract."),
    destination: Path = typer.Argument(..., help="Directory to write the files into."),
) -> None:
    """Write the tree of a commit into a plain directory."""
    with _handle_errors():
        commit = TreeExtractor().extract_snapshot(repository, reference, destination)
    typer.echo(commit)


@app.command()
def diff(
    base: Path = typer.Argument(..., help="Base tree."),
    working: Path = typer.Argument(..., help="Modified tree."),
    output: Path = typer.Argument(..., help="Directory to write patches into."),
    ignore: List[str] = typer.Option(
        None,
        "--ignore",
        "-i",
        help="Ignore path prefix (repeatable; defaults to .git, .idea and .gradle).",
    ),
) -> None:
    """Write one patch per differing file; exits 1 when differences were found."""
    prefixes = tuple(ignore) if ignore else DEFAULT_IGNORE_PREFIXES
    with _handle_errors():
        summary = PatchCodec().generate_patches(base, working, output, prefixes)
    _render_diff(working.as_posix(), summary)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


@app.command()
def apply(
    base: Path = typer.Argument(..., help="Base tree."),
    patches: Path = typer.Argument(..., help="Directory holding the patch files."),
    output: Path = typer.Argument(..., help="Directory to write the patched tree into."),
    rejects: Path = typer.Argument(..., help="Directory for .rej files."),
    mode: PatchMode = typer.Option(PatchMode.OFFSET, "--mode", "-m", help="Hunk placement mode."),
    fuzz: int = typer.Option(2, "--fuzz", min=0, help="Context lines fuzzy mode may drop."),
) -> None:
    """Apply a patch directory onto a base tree; exits 1 when hunks were rejected."""
    with _handle_errors():
        summary = PatchApplier(mode=mode, fuzz=fuzz).apply_patches(base, patches, output, rejects, strict=False)
    _render_apply(output.as_posix(), summary)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


if __name__ == "__main__":
    app()
