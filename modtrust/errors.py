"""
Error taxonomy for modtrust.

Fatal conditions raise a subclass of ModTrustError and unwind to the CLI,
which prints the cause and exits non-zero. Recoverable per-item failures
(one signer missing, one service restart failing, a module refusing to load
before reboot) are logged where they happen and never become exceptions.
"""

from typing import Sequence


class ModTrustError(Exception):
    """Base class for every fatal modtrust error."""
    pass


class PreconditionError(ModTrustError):
    """Raised before any mutation when the host cannot be reconciled safely."""
    pass


class EnrollmentError(ModTrustError):
    """Raised when the certificate could not be queued for MOK enrollment."""
    pass


class PipelineIntegrityError(ModTrustError):
    """Raised when a managed module is missing after the build step."""

    def __init__(self, kernel_version: str, missing: Sequence[str]):
        self.kernel_version = kernel_version
        self.missing = list(missing)
        super().__init__(
            f"Kernel {kernel_version}: missing {', '.join(self.missing)} after build. "
            "Refusing to sign or load a partial module set."
        )
