"""``nixforge apply`` — converge instances and record their state.

New instances are created; known ones are updated only when their artifacts
or secrets changed.  Ctrl+C stops before the next build or copy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.panel import Panel

from nixforge.cli.common import (
    CONFIG_OPTION,
    INSTANCE_OPTION,
    STATE_OPTION,
    cancel_on_interrupt,
    console,
    fail,
    forge_settings,
    load_config,
    select_instances,
)
from nixforge.core.instance import Instance
from nixforge.core.state_store import StateStore
from nixforge.errors import NixforgeError


def apply_cmd(
    config: Path = CONFIG_OPTION,
    instance: Optional[list[str]] = INSTANCE_OPTION,
    state_path: Optional[Path] = STATE_OPTION,
) -> None:
    """Converge the declared instances."""
    settings = forge_settings(state_path)
    store = StateStore(settings.state_path)
    lines: list[str] = []
    try:
        deployment = load_config(config)
        targets = select_instances(deployment, instance)
        manager = Instance(deployment.provider, settings)
        with cancel_on_interrupt() as cancel:
            try:
                for target in targets:
                    previous = store.load(target.name)
                    if previous is None:
                        state = manager.create(target, cancel)
                    else:
                        state = manager.update(target, previous, cancel)

                    if state is None:
                        lines.append(f"[yellow]{target.name}[/yellow]  skipped (cancelled)")
                    elif state is previous:
                        lines.append(f"[dim]{target.name}[/dim]  up to date")
                    else:
                        store.save(state)
                        lines.append(
                            f"[bold green]{target.name}[/bold green]  "
                            f"{state.address}  {state.identity[:12]}"
                        )
                    if cancel.is_set():
                        break
            finally:
                manager.close()
    except NixforgeError as exc:
        fail(exc)

    console.print(
        Panel(
            "\n".join(lines) or "[dim]No instances declared.[/dim]",
            title="[bold]nixforge apply[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
