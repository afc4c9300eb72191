"""``nixforge plan`` — show which instances would change.

Builds each instance locally and checks its secrets against the stored
fingerprint.  Nothing is sent to any target.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.table import Table

from nixforge.cli.common import (
    CONFIG_OPTION,
    INSTANCE_OPTION,
    STATE_OPTION,
    console,
    fail,
    forge_settings,
    load_config,
    select_instances,
)
from nixforge.core.instance import Instance
from nixforge.core.state_store import StateStore
from nixforge.errors import NixforgeError


def _flag(changed: bool) -> str:
    return "[yellow]changed[/yellow]" if changed else "[green]unchanged[/green]"


def plan_cmd(
    config: Path = CONFIG_OPTION,
    instance: Optional[list[str]] = INSTANCE_OPTION,
    state_path: Optional[Path] = STATE_OPTION,
) -> None:
    """Preview convergence for the declared instances."""
    settings = forge_settings(state_path)
    store = StateStore(settings.state_path)
    try:
        deployment = load_config(config)
        targets = select_instances(deployment, instance)
        manager = Instance(deployment.provider, settings)
        table = Table(title="Plan")
        table.add_column("Instance", style="cyan")
        table.add_column("Identity")
        table.add_column("Artifacts")
        table.add_column("Secrets")
        table.add_column("Action", style="bold")
        try:
            for target in targets:
                state = store.load(target.name)
                diff = manager.diff(target, state)
                if state is None:
                    action = "[green]create[/green]"
                elif diff.needs_convergence:
                    action = "[yellow]update[/yellow]"
                else:
                    action = "[dim]none[/dim]"
                identity = diff.artifacts.content_hash()[:12] if diff.artifacts else "-"
                table.add_row(
                    target.name,
                    identity,
                    _flag(diff.artifacts_changed),
                    _flag(diff.secrets_changed),
                    action,
                )
        finally:
            manager.close()
    except NixforgeError as exc:
        fail(exc)

    console.print(table)
