"""Command line entry point: ``pi-release-upgrade``."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Callable, Optional

import click

from . import __version__, exit_codes
from .config import APP_NAME, Settings, configure_logging
from .engine import UpgradeEngine
from .pipeline import Runner, run_cmd
from .presentation import Presentation, TextPresentation, select_presentation

logger = logging.getLogger(__name__)

MENU_REFRESH = 1
MENU_TRANSITION = 2
MENU_EXIT = 3


@dataclass
class AppContext:
    settings: Settings = field(default_factory=Settings.from_environ)
    prefer_gui: Optional[bool] = None
    runner: Runner = run_cmd
    presentation: Optional[Presentation] = None
    log_path: Optional[Path] = None

    def engine(self) -> UpgradeEngine:
        presentation = self.presentation or TextPresentation()
        return UpgradeEngine(self.settings, presentation, runner=self.runner)

    def wants_gui(self) -> bool:
        return self.presentation is None and select_presentation(self.prefer_gui) == "gtk"


def _finish(ctx: click.Context, action: Callable[[], int], engine: Optional[UpgradeEngine] = None) -> None:
    try:
        code = action()
    except KeyboardInterrupt:
        if engine is not None:
            engine.cancel()
        logger.warning("Interrupted by user")
        click.secho("\nInterrupted.", fg="yellow", err=True)
        code = exit_codes.INTERRUPTED
    ctx.exit(code)


def _run_gui(app: AppContext, action: Optional[str]) -> int:
    from .gtk_ui import run_gui

    return run_gui(app.settings, action=action)


def run_menu(engine: UpgradeEngine) -> int:
    """Interactive text menu; returns the exit code of the last operation."""

    code = exit_codes.SUCCESS
    while True:
        click.echo(f"\n{APP_NAME}")
        click.echo(f"  {MENU_REFRESH}) Refresh packages (current release)")
        click.echo(f"  {MENU_TRANSITION}) Upgrade to the next major release")
        click.echo(f"  {MENU_EXIT}) Exit")
        try:
            choice = click.prompt("Choose an option", type=click.IntRange(1, 3), default=MENU_EXIT)
        except click.Abort:
            return code
        if choice == MENU_REFRESH:
            code = engine.refresh_packages()
        elif choice == MENU_TRANSITION:
            code = engine.major_transition()
        else:
            return code


@click.group(invoke_without_command=True)
@click.option("--gui/--text", "prefer_gui", default=None, help="Force the graphical or the terminal front-end.")
@click.option("--verbose", "-v", is_flag=True, help="Write debug messages to the log.")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context, prefer_gui: Optional[bool], verbose: bool) -> None:
    """Upgrade Raspberry Pi OS packages or move to the next major release.

    Without a command an interactive menu is shown.
    """

    if ctx.obj is None:
        ctx.obj = AppContext()
    app: AppContext = ctx.obj
    if prefer_gui is not None:
        app.prefer_gui = prefer_gui
    app.log_path = configure_logging(app.settings.log_path, verbose=verbose)
    logger.info("%s %s started", APP_NAME, __version__)

    if ctx.invoked_subcommand is not None:
        return
    if app.wants_gui():
        _finish(ctx, lambda: _run_gui(app, None))
    click.echo(f"Logging to: {app.log_path}")
    engine = app.engine()
    _finish(ctx, lambda: run_menu(engine), engine)


@cli.command()
@click.pass_obj
@click.pass_context
def refresh(ctx: click.Context, app: AppContext) -> None:
    """Refresh package lists and upgrade within the current release."""

    if app.wants_gui():
        _finish(ctx, lambda: _run_gui(app, "refresh"))
    engine = app.engine()
    _finish(ctx, engine.refresh_packages, engine)


@cli.command()
@click.pass_obj
@click.pass_context
def transition(ctx: click.Context, app: AppContext) -> None:
    """Upgrade to the newest release supported by Debian and Raspberry Pi."""

    if app.wants_gui():
        _finish(ctx, lambda: _run_gui(app, "transition"))
    engine = app.engine()
    _finish(ctx, engine.major_transition, engine)


@cli.command()
@click.pass_obj
def backups(app: AppContext) -> None:
    """List the apt sources backups, newest first."""

    found = app.engine().list_backups()
    if not found:
        click.echo(f"No backups in {app.settings.backup_root}")
        return
    for backup in found:
        note = "" if backup.drop_in_copied else "  (sources.list.d not copied)"
        click.echo(f"{backup.path}{note}")


@cli.command()
@click.argument("backup_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_obj
@click.pass_context
def restore(ctx: click.Context, app: AppContext, backup_dir: Path) -> None:
    """Restore the apt sources from BACKUP_DIR and refresh the package lists."""

    engine = app.engine()
    _finish(ctx, lambda: engine.restore_backup(backup_dir), engine)


def main() -> None:
    cli(prog_name="pi-release-upgrade")


if __name__ == "__main__":
    main()
