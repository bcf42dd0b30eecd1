"""
Update-Hook Installer
=====================

Installs the kernel post-install hook that re-runs the unattended part of the
reconciliation (build, sign all kernels, depmod, autoload, service refresh)
whenever the package system installs a new kernel.

The hook file is a small POSIX shell wrapper around this package's hook
routine. run-parts calls it as:

    /etc/kernel/postinst.d/zz-vmware-sign <kernel-version> <image-path>

The wrapper exits 0 when the interpreter or the package is gone, so removing
modtrust can never break a kernel upgrade. The routine itself never prompts
and never enrolls keys.

The settings in effect at install time (the env file path and every MODTRUST_*
value that differs from its default) are exported by the wrapper, so the hook
uses the same key directory, modules and paths as the run that installed it.

Rendering is deterministic; installing twice produces the same bytes. The file
is written under a temporary name, marked executable and renamed over the
fixed path, so a partially written hook is never executable under that path.
"""

import logging
import os
import shlex
import sys
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Tuple

from modtrust.constants import HOOK_MARKER

logger = logging.getLogger(__name__)

HOOK_MODE = 0o755

_HOOK_TEMPLATE = """\
#!/bin/sh
{marker}
# Rebuild, sign and register the managed kernel modules after a kernel
# install. The new kernel version arrives as $1; without it the running
# kernel is used.
{exports}PYTHON={python}
[ -x "$PYTHON" ] || exit 0
"$PYTHON" -c 'import modtrust' 2>/dev/null || exit 0
exec "$PYTHON" -c 'from modtrust.cli import hook_main; hook_main(prog_name="modtrust-hook")' "$@"
"""


def render_hook(python: Optional[str] = None, environment: Iterable[Tuple[str, str]] = ()) -> str:
    """
    environment is a sequence of (name, value) pairs exported before the
    interpreter starts, so the hook sees the settings it was installed with.
    """
    exports = "".join(f"export {name}={shlex.quote(value)}\n" for name, value in environment)
    return _HOOK_TEMPLATE.format(
        marker=HOOK_MARKER,
        exports=exports,
        python=shlex.quote(python or sys.executable),
    )


def is_managed_hook(path: Path) -> bool:
    try:
        return HOOK_MARKER in Path(path).read_text().splitlines()[:3]
    except (OSError, UnicodeDecodeError):
        return False


def install_hook(
    hook_path: Path,
    python: Optional[str] = None,
    environment: Iterable[Tuple[str, str]] = (),
) -> Path:
    """
    Write the hook to hook_path, replacing any previous version.

    Returns:
        hook_path
    """
    hook_path = Path(hook_path)
    hook_path.parent.mkdir(parents=True, exist_ok=True)

    if hook_path.exists() and not is_managed_hook(hook_path):
        logger.warning(f"⚠️  Replacing unmanaged file at {hook_path}")

    content = render_hook(python, environment)
    fd, tmp_path = tempfile.mkstemp(dir=hook_path.parent, prefix=f".{hook_path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, HOOK_MODE)
        os.replace(tmp_path, hook_path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)

    logger.info(f"✅ Hook installed at {hook_path}")
    return hook_path

