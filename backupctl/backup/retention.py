"""
Generational rotation of backups.

Keeps the newest `daily_keep` backups, then one backup per calendar week
for up to `weekly_keep` older weeks, then one per calendar month for up to
`monthly_keep` older months. Everything else is deleted together with its
digest record.

Only backups that have a digest record take part. An unstamped archive is
treated as not existing yet and is never deleted by rotation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Tuple

from backupctl.config import RetentionPolicy
from .storage import BackupEntry, BackupStore


logger = logging.getLogger(__name__)

TIER_DAILY = 'daily'
TIER_WEEKLY = 'weekly'
TIER_MONTHLY = 'monthly'


@dataclass
class RotationResult:
    kept: List[BackupEntry] = field(default_factory=list)
    deleted: List[BackupEntry] = field(default_factory=list)
    skipped: List[BackupEntry] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    tiers: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False


def _week_key(timestamp: datetime) -> Tuple[int, int]:
    iso = timestamp.isocalendar()
    return iso[0], iso[1]


def _month_key(timestamp: datetime) -> Tuple[int, int]:
    return timestamp.year, timestamp.month


def order_entries(entries: List[BackupEntry]) -> List[BackupEntry]:
    """Newest first; names break timestamp ties so the order is deterministic."""
    return sorted(entries, key=lambda e: (e.timestamp, e.name), reverse=True)


def classify(entries: List[BackupEntry], policy: RetentionPolicy) -> Dict[str, str]:
    """
    Decide which backups the policy keeps.

    Args:
        entries: Backups to classify (should all have digest records)
        policy: Retention counts

    Returns:
        Dict mapping each kept entry's name to its tier ('daily', 'weekly'
        or 'monthly'). Entries not in the dict are to be deleted.
    """
    ordered = order_entries(entries)
    tiers = {}

    daily = ordered[:policy.daily_keep]
    older = ordered[policy.daily_keep:]
    for entry in daily:
        tiers[entry.name] = TIER_DAILY

    # A week already represented by a kept backup gets no extra weekly copy
    weeks = {_week_key(e.timestamp) for e in daily}
    weekly_count = 0
    for entry in older:
        if weekly_count >= policy.weekly_keep:
            break
        key = _week_key(entry.timestamp)
        if key in weeks:
            continue
        weeks.add(key)
        tiers[entry.name] = TIER_WEEKLY
        weekly_count += 1

    months = {_month_key(e.timestamp) for e in ordered if e.name in tiers}
    monthly_count = 0
    for entry in older:
        if monthly_count >= policy.monthly_keep:
            break
        if entry.name in tiers:
            continue
        key = _month_key(entry.timestamp)
        if key in months:
            continue
        months.add(key)
        tiers[entry.name] = TIER_MONTHLY
        monthly_count += 1

    return tiers


class RetentionManager:
    """
    Applies a retention policy to the backups in a BackupStore.
    """

    def __init__(self, store: BackupStore):
        """
        Initialize retention manager.

        Args:
            store: Destination whose backups are rotated
        """
        self.store = store
        self.logs = []

    def enforce_policy(self, policy: RetentionPolicy, dry_run: bool = False) -> RotationResult:
        """Rotate everything currently in the store."""
        return self.rotate(self.store.list_entries(), policy, dry_run=dry_run)

    def rotate(
        self,
        entries: List[BackupEntry],
        policy: RetentionPolicy,
        dry_run: bool = False
    ) -> RotationResult:
        """
        Apply the policy to a backup set.

        Each deletion is logged before the files are removed, so an
        interrupted run still records what it meant to do.

        Args:
            entries: The backup set
            policy: Retention counts
            dry_run: Log the plan without deleting anything

        Returns:
            RotationResult with kept, deleted and skipped (unstamped) entries
        """
        prefix = '[DRY-RUN] ' if dry_run else ''
        self._log(
            f"{prefix}Rotating backups (daily={policy.daily_keep}, "
            f"weekly={policy.weekly_keep}, monthly={policy.monthly_keep})"
        )

        result = RotationResult(dry_run=dry_run)
        candidates = []
        for entry in entries:
            if entry.is_verified:
                candidates.append(entry)
            else:
                result.skipped.append(entry)
                self._log(f"Skipping unverified backup (no digest record): {entry.name}")

        result.tiers = classify(candidates, policy)

        for entry in order_entries(candidates):
            tier = result.tiers.get(entry.name)
            if tier is not None:
                result.kept.append(entry)
                logger.debug(f"Keeping {entry.name} ({tier})")
                continue

            if dry_run:
                self._log(f"[DRY-RUN] Would delete old backup: {entry.name}")
                result.deleted.append(entry)
                continue

            self._log(f"Deleting old backup: {entry.name}")
            try:
                self.store.delete(entry)
                result.deleted.append(entry)
            except OSError as e:
                error_msg = f"Failed to delete {entry.name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                result.errors.append(error_msg)

        if not dry_run:
            self._remove_orphans(result)

        self._log(
            f"{prefix}Rotation complete. Kept: {len(result.kept)}, "
            f"Deleted: {len(result.deleted)}, Skipped: {len(result.skipped)}"
        )
        return result

    def _remove_orphans(self, result: RotationResult):
        """Remove digest records left behind by archives deleted outside rotation."""
        for path in self.store.orphan_digests():
            self._log(f"Deleting orphaned digest record: {path}")
            try:
                self.store.delete_file(path)
                result.orphans_removed.append(path)
            except OSError as e:
                error_msg = f"Failed to delete {path}: {e}"
                self._log(error_msg, level=logging.ERROR)
                result.errors.append(error_msg)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Record a rotation event.

        Args:
            message: Log message
            level: logging level
        """
        self.logs.append(message)
        logger.log(level, message)


def rotate_backups(store: BackupStore, policy: RetentionPolicy, dry_run: bool = False) -> RotationResult:
    """
    Rotate the backups in a store.

    Returns:
        RotationResult from RetentionManager.enforce_policy()
    """
    manager = RetentionManager(store)
    return manager.enforce_policy(policy, dry_run=dry_run)
