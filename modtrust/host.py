"""
Host command execution and platform queries.

Every external capability modtrust relies on (mokutil, the module build tool,
sign-file, depmod, modprobe, systemctl) goes through CommandRunner so the
reconciliation logic can be exercised against a scripted runner in tests.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from modtrust.errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Exit status and captured output of one external command."""
    argv: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands synchronously; never raises on a non-zero exit."""

    def run(
        self,
        argv: Sequence[str],
        interactive: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        Run argv to completion.

        Args:
            argv: Command and arguments
            interactive: Inherit the terminal instead of capturing output
                (used for mokutil password prompts)
            env: Extra environment variables layered over os.environ

        Returns:
            CommandResult; a missing executable yields returncode 127
        """
        argv = [str(part) for part in argv]
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug(f"$ {' '.join(argv)}")
        try:
            completed = subprocess.run(
                argv,
                capture_output=not interactive,
                text=True,
                check=False,
                env=full_env,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=argv, returncode=127, stderr=str(e))
        except PermissionError as e:
            return CommandResult(argv=argv, returncode=126, stderr=str(e))

        return CommandResult(
            argv=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def which(self, name: str) -> Optional[str]:
        """Resolve a command on PATH (plus the sbin directories root normally has)."""
        search = os.pathsep.join(
            [os.environ.get("PATH", ""), "/usr/local/sbin", "/usr/sbin", "/sbin"]
        )
        return shutil.which(name, path=search)

    def is_executable(self, path) -> bool:
        return os.path.isfile(path) and os.access(path, os.X_OK)

    def running_kernel(self) -> str:
        """Release string of the running kernel (`uname -r`)."""
        return os.uname().release

    def is_privileged(self) -> bool:
        return os.geteuid() == 0


def require_root(runner: CommandRunner):
    """FAIL-CLOSED: abort before any mutation unless running as root."""
    if not runner.is_privileged():
        raise PreconditionError("modtrust must run as root. Try: sudo modtrust")


def require_tools(runner: CommandRunner, tools: Sequence[str]):
    """Abort when any required external tool is missing."""
    missing = [tool for tool in tools if runner.which(tool) is None]
    if missing:
        raise PreconditionError(f"Missing required tool(s): {', '.join(missing)}")
