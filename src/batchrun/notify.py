# notify.py
from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from .errors import NotificationFailure

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers the result of a finished job run."""

    def notify(self, subject: str, log_path: Path, attachments: Sequence[Path]) -> bool:
        """Send `log_path` as the message body with `attachments`; True if sent."""


class NullNotifier:
    """Notifier used when nobody subscribed to the run's results."""

    def notify(self, subject: str, log_path: Path, attachments: Sequence[Path]) -> bool:
        logger.debug("no email subscribers, so no email sent")
        return True


class MailCommandNotifier:
    """
    Email the run log (as body) plus step output files (as attachments) by
    handing them to the `mutt` command line mailer.

    Raises NotificationFailure if mutt is missing or exits non-zero.
    """

    def __init__(self, subscribers: Sequence[str], *, mailer: str = "mutt"):
        self.subscribers = [s.strip() for s in subscribers if s.strip()]
        self.mailer = mailer

    def build_command(self, subject: str, attachments: Sequence[Path]) -> list[str]:
        cmd = [self.mailer, "-s", subject]
        if attachments:
            cmd.append("-a")
            cmd.extend(str(a) for a in attachments)
        cmd.append("--")
        cmd.append(",".join(self.subscribers))
        return cmd

    def notify(self, subject: str, log_path: Path, attachments: Sequence[Path]) -> bool:
        if not self.subscribers:
            logger.debug("no email subscribers, so no email sent")
            return True

        if shutil.which(self.mailer) is None:
            raise NotificationFailure(f"mail command '{self.mailer}' not found on PATH")

        cmd = self.build_command(subject, attachments)
        logger.debug("email command constructed: %s", cmd)
        try:
            with open(log_path, "rb") as body:
                proc = subprocess.run(cmd, stdin=body, capture_output=True)
        except OSError as e:
            raise NotificationFailure(f"could not run '{self.mailer}'", {"reason": str(e)}) from e

        if proc.returncode != 0:
            raise NotificationFailure(
                f"'{self.mailer}' exited with {proc.returncode}",
                {"stderr": proc.stderr.decode("utf-8", "replace").strip()[-500:]},
            )
        logger.debug("email sent to %s", ", ".join(self.subscribers))
        return True


def notifier_for(subscribers: Sequence[str]) -> Notifier:
    if not subscribers:
        return NullNotifier()
    return MailCommandNotifier(subscribers)
