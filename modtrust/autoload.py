"""
Autoload Registrar.

Declares the managed modules in a modules-load.d file so systemd loads them
at boot. Purely additive: existing lines (ours or anyone else's) are never
removed or reordered.
"""

import logging
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


def read_declared(conf_path: Path) -> List[str]:
    """Module names declared in conf_path, ignoring blanks and comments."""
    try:
        lines = conf_path.read_text().splitlines()
    except FileNotFoundError:
        return []
    return [
        line.strip()
        for line in lines
        if line.strip() and not line.strip().startswith(("#", ";"))
    ]


def ensure_autoload(conf_path: Path, module_names: Iterable[str]) -> List[str]:
    """
    Append every module name not yet declared in conf_path.

    Returns:
        The names appended by this call (empty when already up to date)
    """
    conf_path = Path(conf_path)
    declared = set(read_declared(conf_path))

    to_add = []
    for name in module_names:
        if name not in declared and name not in to_add:
            to_add.append(name)
    if not to_add:
        logger.info(f"Autoload already declares {', '.join(sorted(declared))}")
        return []

    conf_path.parent.mkdir(parents=True, exist_ok=True)
    existing = conf_path.read_bytes() if conf_path.exists() else b""
    with open(conf_path, "a") as f:
        if existing and not existing.endswith(b"\n"):
            f.write("\n")
        for name in to_add:
            f.write(f"{name}\n")

    logger.info(f"✅ Added {', '.join(to_add)} to {conf_path}")
    return to_add
