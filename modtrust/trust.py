"""
Trust Prober
============

Classifies the host's Secure Boot trust phase from live platform state.
Nothing is cached: probe() is evaluated at the start of every run.

KNOWN LIMITATION:
Enrollment is detected by matching the certificate's common name in
`mokutil --list-enrolled`. The platform exposes no identifier modtrust
controls, so a different key issued under the same name is reported as
enrolled.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from modtrust.constants import MOKUTIL, SECURE_BOOT_VARIABLE
from modtrust.host import CommandRunner

logger = logging.getLogger(__name__)


class TrustState(str, Enum):
    """Secure Boot trust phase of the host"""

    DISABLED = "disabled"
    ENABLED_UNENROLLED = "enabled_unenrolled"
    ENABLED_ENROLLED = "enabled_enrolled"


class TrustProber:
    def __init__(self, runner: CommandRunner, efivars_dir: Path):
        self.runner = runner
        self.efivars_dir = Path(efivars_dir)

    def secure_boot_enabled(self) -> bool:
        """
        Whether firmware enforces signatures at boot.

        Tries `mokutil --sb-state` first, then reads the SecureBoot EFI
        variable directly. A host without EFI variables is treated as disabled.
        """
        result = self.runner.run([MOKUTIL, "--sb-state"])
        output = (result.stdout + result.stderr).strip()
        if output:
            logger.info(f"Secure Boot state: {output}")
        if result.ok and output:
            return "enabled" in output.lower()

        from_efivars = self._read_efivar()
        if from_efivars is None:
            logger.info("Secure Boot state unavailable (no EFI variables); treating as disabled")
            return False
        return from_efivars

    def _read_efivar(self) -> Optional[bool]:
        # efivarfs layout: 4 attribute bytes, then the value (0x01 = enabled)
        variable = self.efivars_dir / SECURE_BOOT_VARIABLE
        try:
            data = variable.read_bytes()
        except OSError:
            return None
        if not data:
            return None
        return data[-1] == 1

    def is_enrolled(self, common_name: str) -> bool:
        result = self.runner.run([MOKUTIL, "--list-enrolled"])
        if not result.ok:
            logger.warning(f"⚠️  mokutil --list-enrolled failed: {result.stderr.strip()}")
            return False
        return common_name in result.stdout

    def is_enrollment_pending(self, common_name: str) -> bool:
        """Whether a key with this name is already queued for the next boot."""
        result = self.runner.run([MOKUTIL, "--list-new"])
        return result.ok and common_name in result.stdout

    def probe(self, common_name: str) -> TrustState:
        if not self.secure_boot_enabled():
            return TrustState.DISABLED
        if self.is_enrolled(common_name):
            return TrustState.ENABLED_ENROLLED
        return TrustState.ENABLED_UNENROLLED
