"""
Service Refresher.

Restarts the VMware networking services so they pick up freshly loaded
modules. Each attempt is independent and best effort: a missing mechanism
or a failing restart is logged and the next attempt still runs.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence

from modtrust.constants import NETWORKS_TOOL, SERVICE_UNITS, SYSTEMCTL
from modtrust.host import CommandRunner

logger = logging.getLogger(__name__)


@dataclass
class ServiceAction:
    """One restart mechanism, attempted only when available on the host."""
    name: str
    argv: Sequence[str]
    available: Callable[[], bool]


@dataclass
class ServiceAttempt:
    name: str
    attempted: bool
    ok: bool


def default_actions(runner: CommandRunner, init_script: Path) -> List[ServiceAction]:
    """systemd units first, then the legacy helpers."""
    actions = [
        ServiceAction(
            name=f"systemctl restart {unit}",
            argv=[SYSTEMCTL, "restart", unit],
            available=lambda: runner.which(SYSTEMCTL) is not None,
        )
        for unit in SERVICE_UNITS
    ]
    actions.append(ServiceAction(
        name=f"{NETWORKS_TOOL} --restart",
        argv=[NETWORKS_TOOL, "--restart"],
        available=lambda: runner.which(NETWORKS_TOOL) is not None,
    ))
    actions.append(ServiceAction(
        name=f"{init_script} restart",
        argv=[str(init_script), "restart"],
        available=lambda: runner.is_executable(init_script),
    ))
    return actions


def refresh_dependent_services(runner: CommandRunner, actions: List[ServiceAction]) -> List[ServiceAttempt]:
    logger.info("🔄 Restarting VMware network services...")
    attempts = []
    for action in actions:
        if not action.available():
            attempts.append(ServiceAttempt(name=action.name, attempted=False, ok=False))
            continue

        result = runner.run(action.argv)
        attempts.append(ServiceAttempt(name=action.name, attempted=True, ok=result.ok))
        if result.ok:
            logger.info(f"✅ {action.name}")
        else:
            logger.warning(f"⚠️  {action.name} failed (exit {result.returncode})")

    if not any(a.ok for a in attempts):
        logger.warning("⚠️  No service restart mechanism succeeded")
    return attempts
