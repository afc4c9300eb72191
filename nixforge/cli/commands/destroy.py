"""``nixforge destroy`` — forget instances.

Removes the stored state only; target machines keep running whatever they
last activated.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

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


def destroy_cmd(
    config: Path = CONFIG_OPTION,
    instance: Optional[list[str]] = INSTANCE_OPTION,
    state_path: Optional[Path] = STATE_OPTION,
) -> None:
    """Drop recorded state for the declared instances."""
    settings = forge_settings(state_path)
    store = StateStore(settings.state_path)
    try:
        deployment = load_config(config)
        targets = select_instances(deployment, instance)
        manager = Instance(deployment.provider, settings)
        try:
            for target in targets:
                state = store.load(target.name)
                if state is None:
                    console.print(f"[dim]{target.name}: no state[/dim]")
                    continue
                manager.delete(state)
                store.delete(target.name)
                console.print(f"[bold]{target.name}[/bold]: state removed")
        finally:
            manager.close()
    except NixforgeError as exc:
        fail(exc)
