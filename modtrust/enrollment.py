"""
Enrollment Coordinator
======================

Drives the one human-in-the-loop step: queueing the MOK certificate for
enrollment and handing control to the operator.

User space cannot wait for the firmware-side confirmation, so the contract is:
    1. queue the certificate (`mokutil --import`, prompts for a one-time password)
    2. print the MOK Manager steps
    3. offer to reboot now
    4. end the run; the next invocation after reboot observes ENABLED_ENROLLED

Modules are never signed against a key that firmware does not trust yet.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import click

from modtrust.constants import ENROLLMENT_STEPS, MOKUTIL
from modtrust.errors import EnrollmentError
from modtrust.host import CommandRunner
from modtrust.identity import SigningIdentity
from modtrust.trust import TrustProber

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentOutcome:
    submitted: bool
    already_pending: bool
    reboot_requested: bool


class EnrollmentCoordinator:
    def __init__(
        self,
        runner: CommandRunner,
        prober: TrustProber,
        confirm: Optional[Callable[[str], bool]] = None,
        echo: Callable[[str], None] = click.echo,
    ):
        """
        Args:
            runner: Host command runner
            prober: Used to detect a request already queued for the next boot
            confirm: Asks the operator whether to reboot now; None when there
                is no terminal to ask (never reboots)
            echo: Where operator instructions are written
        """
        self.runner = runner
        self.prober = prober
        self.confirm = confirm
        self.echo = echo

    def request_enrollment(self, identity: SigningIdentity) -> EnrollmentOutcome:
        """
        Queue identity's certificate for enrollment and instruct the operator.

        Raises:
            EnrollmentError: mokutil refused the import
        """
        already_pending = self.prober.is_enrollment_pending(identity.common_name)
        submitted = False

        if already_pending:
            logger.info(f"MOK '{identity.common_name}' is already queued; not resubmitting")
        else:
            self.echo("🔐 Enrolling key (one-time). mokutil will ask for a one-time password.")
            result = self.runner.run(
                [MOKUTIL, "--import", str(identity.certificate_path)],
                interactive=True,
            )
            if not result.ok:
                raise EnrollmentError(
                    f"mokutil --import {identity.certificate_path} failed "
                    f"(exit {result.returncode}) {result.stderr.strip()}".strip()
                )
            submitted = True
            logger.info(f"✅ Queued {identity.certificate_path} for MOK enrollment")

        self._print_instructions()
        reboot_requested = self._offer_reboot()
        return EnrollmentOutcome(
            submitted=submitted,
            already_pending=already_pending,
            reboot_requested=reboot_requested,
        )

    def _print_instructions(self):
        self.echo()
        self.echo("⚠️  Reboot required to finish MOK enrollment.")
        self.echo(f"   Blue screen flow: {' -> '.join(ENROLLMENT_STEPS)}")
        self.echo("   Run modtrust again after the reboot to build, sign and load the modules.")
        self.echo()

    def _offer_reboot(self) -> bool:
        if self.confirm is None:
            return False
        if not self.confirm("Reboot now?"):
            self.echo("Reboot skipped. Reboot manually when ready.")
            return False

        result = self.runner.run(["reboot"])
        if not result.ok:
            logger.warning(f"⚠️  reboot failed: {result.stderr.strip()}")
            return False
        return True
