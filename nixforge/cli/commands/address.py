"""``nixforge address`` — show the address each instance would be reached at."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.table import Table

from nixforge.cli.common import (
    CONFIG_OPTION,
    INSTANCE_OPTION,
    console,
    fail,
    load_config,
    select_instances,
)
from nixforge.core.address import AddressSelector
from nixforge.errors import NixforgeError


def address_cmd(
    config: Path = CONFIG_OPTION,
    instance: Optional[list[str]] = INSTANCE_OPTION,
) -> None:
    """Apply address filters and priorities without contacting anything."""
    try:
        deployment = load_config(config)
        targets = select_instances(deployment, instance)
        selector = AddressSelector(
            deployment.provider.address_filter, deployment.provider.address_priority
        )
        table = Table(title="Addresses")
        table.add_column("Instance", style="cyan")
        table.add_column("Selected", style="green")
        table.add_column("Ranked")
        for target in targets:
            selected = selector.select(target.address)
            ranked = ", ".join(str(a) for a in selector.rank(target.address))
            table.add_row(target.name, selected, ranked)
    except NixforgeError as exc:
        fail(exc)

    console.print(table)
