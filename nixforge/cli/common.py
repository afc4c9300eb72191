"""Shared CLI plumbing: logging setup, config file loading, error reporting."""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
import tomllib
from collections.abc import Iterator
from pathlib import Path
from typing import NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from nixforge.config import ForgeSettings
from nixforge.errors import ConfigFileError
from nixforge.models.settings import DeploymentConfig, InstanceConfig

console = Console()
err_console = Console(stderr=True)

DEFAULT_CONFIG_FILE = Path("nixforge.toml")

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_FILE,
    "--config",
    "-c",
    help="Path to the TOML configuration file.",
)
INSTANCE_OPTION = typer.Option(
    None,
    "--instance",
    "-i",
    help="Limit to these instances (repeatable). Default: all.",
)
STATE_OPTION = typer.Option(
    None,
    "--state",
    "-s",
    help="State directory (overrides NIXFORGE_STATE_PATH).",
)


def configure_logging(settings: ForgeSettings) -> None:
    """Route nixforge logs through Rich on stderr."""
    level = "DEBUG" if settings.debug else settings.log_level.upper()
    root = logging.getLogger("nixforge")
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(
        console=err_console,
        show_path=False,
        rich_tracebacks=settings.debug,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)


def fail(message: object) -> NoReturn:
    """Print one red diagnostic line and exit with status 1."""
    err_console.print(f"[bold red]Error:[/bold red] {message}", markup=True, highlight=False)
    raise typer.Exit(code=1)


def load_config(path: Path) -> DeploymentConfig:
    """Parse and validate a configuration file.

    Relative instance ``configuration`` paths are taken relative to the
    file's directory.
    """
    try:
        with path.open("rb") as fh:
            raw = tomllib.load(fh)
    except OSError as exc:
        raise ConfigFileError(f"cannot read {path}: {exc.strerror or exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigFileError(f"invalid TOML in {path}: {exc}") from exc

    base = path.parent
    for item in (raw.get("instances") or {}).values():
        if isinstance(item, dict) and isinstance(item.get("configuration"), str):
            configuration = Path(item["configuration"])
            if not configuration.is_absolute():
                item["configuration"] = str(base / configuration)

    try:
        return DeploymentConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid configuration in {path}:\n{exc}") from exc


def select_instances(
    config: DeploymentConfig, names: list[str] | None
) -> list[InstanceConfig]:
    if not names:
        return list(config.instances.values())
    unknown = [n for n in names if n not in config.instances]
    if unknown:
        raise ConfigFileError(
            f"unknown instance(s): {', '.join(unknown)} "
            f"(declared: {', '.join(config.instances) or 'none'})"
        )
    return [config.instances[n] for n in names]


def forge_settings(state_path: Path | None) -> ForgeSettings:
    settings = ForgeSettings()
    if state_path is not None:
        settings = settings.model_copy(update={"state_path": state_path})
    return settings


@contextlib.contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Yield an event that is set on the first Ctrl+C.

    A second Ctrl+C restores the default behaviour and interrupts.
    """
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum: int, frame: object) -> None:
        err_console.print("[yellow]Cancelling after the current step...[/yellow]")
        cancel.set()
        signal.signal(signal.SIGINT, previous)

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)
