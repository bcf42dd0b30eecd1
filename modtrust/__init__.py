"""
modtrust
========

Secure Boot trust orchestrator for out-of-tree kernel modules (VMware
vmmon/vmnet by default).

Module Structure:
    constants.py    - Fixed file names, signing digest, tool names, EFI GUIDs
    config.py       - Environment-driven settings (HostLayout)
    host.py         - External command runner and privilege/tool checks
    identity.py     - MOK key pair creation and lookup
    trust.py        - Secure Boot / enrollment state probe
    enrollment.py   - One-time MOK enrollment hand-off
    artifacts.py    - Build, presence check, signing, depmod, load
    autoload.py     - modules-load.d declaration
    services.py     - Best-effort VMware service restarts
    hook.py         - Kernel postinst hook installer
    reconciler.py   - Control flow of a full run and of a hook run
    cli.py          - `modtrust` and `modtrust-hook` commands

Usage:
    $ sudo modtrust
"""

__version__ = "1.0.0"

from modtrust.trust import TrustState
from modtrust.reconciler import Reconciler, RunOutcome

__all__ = [
    "__version__",
    "TrustState",
    "Reconciler",
    "RunOutcome",
]
