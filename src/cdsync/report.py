"""Per-command batch report."""

import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Outcome of one batch command.

    Per-item problems are collected here instead of stopping the batch.

    Attributes:
        command: Command name, used in the summary
        actions: Remote actions performed (or planned, in dry-run)
        errors: Unexpected per-item errors
        failures: Policy failures (e.g. account could not be balanced)
        pending: Ownership transfers waiting for the recipient's consent
        skipped: Items deliberately not processed
    """

    command: str
    actions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def action(self, message: str) -> None:
        self.actions.append(message)

    def error(self, subject: str, exc: BaseException) -> None:
        message = f"{subject}: {exc}"
        logger.error(message)
        self.errors.append(message)

    def failure(self, message: str) -> None:
        logger.warning(message)
        self.failures.append(message)

    def pending_transfer(self, message: str) -> None:
        logger.info(f"Pending owner: {message}")
        self.pending.append(message)

    def skip(self, message: str) -> None:
        logger.info(f"Skipped: {message}")
        self.skipped.append(message)

    def merge(self, other: 'BatchReport') -> 'BatchReport':
        self.actions.extend(other.actions)
        self.errors.extend(other.errors)
        self.failures.extend(other.failures)
        self.pending.extend(other.pending)
        self.skipped.extend(other.skipped)
        return self

    @property
    def ok(self) -> bool:
        return not self.errors and not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def summary_lines(self) -> List[str]:
        lines = [
            f"{self.command}: {len(self.actions)} action(s), {len(self.errors)} error(s), "
            f"{len(self.failures)} failure(s), {len(self.pending)} pending transfer(s)"
        ]
        for title, items in (
            ('Errors', self.errors),
            ('Failures', self.failures),
            ('Pending ownership transfers', self.pending),
        ):
            if items:
                lines.append(f"{title}:")
                lines.extend(f"  - {item}" for item in items)
        return lines

    def log_summary(self) -> None:
        for line in self.summary_lines():
            logger.info(line)
