"""Retention policy: decide which backups to prune by count and age."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from profilevault.core.models import BackupEntry, BackupSettings, now_ms

log = logging.getLogger(__name__)


@dataclass
class RetentionPlan:
    """Result of a retention pass. Nothing has been deleted yet."""

    keep: list[BackupEntry] = field(default_factory=list)
    remove: list[BackupEntry] = field(default_factory=list)


class RetentionPolicy:
    """Count cap and age cap, unioned.

    A limit ``<= 0`` disables that rule. The most recent entry is always
    kept, even if it is older than the age cap.
    """

    def prune(
        self,
        backups: list[BackupEntry],
        settings: BackupSettings,
        *,
        now: int | None = None,
        protect: set[str] | None = None,
    ) -> RetentionPlan:
        """Split ``backups`` (most-recent-first) into keep and remove lists.

        Args:
            backups: The index's backup list, most recent first.
            settings: Supplies max_count and max_age_ms.
            now: Reference time in epoch ms (defaults to the current time).
            protect: Ids that must survive this pass regardless of policy.

        Returns:
            RetentionPlan preserving the input order in both lists.
        """
        if now is None:
            now = now_ms()
        protect = protect or set()
        cutoff = now - settings.max_age_ms

        plan = RetentionPlan()
        for position, entry in enumerate(backups):
            over_count = settings.max_count > 0 and position >= settings.max_count
            too_old = settings.max_age_ms > 0 and entry.timestamp < cutoff
            if position == 0 or entry.id in protect or not (over_count or too_old):
                plan.keep.append(entry)
            else:
                plan.remove.append(entry)

        if plan.remove:
            log.debug(
                "Retention: keeping %d, pruning %d (max_count=%d, max_age_ms=%d)",
                len(plan.keep), len(plan.remove), settings.max_count, settings.max_age_ms,
            )
        return plan
