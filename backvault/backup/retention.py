"""
Retention policy enforcement for nightly backups in the object store.

Policy:
- Keep the last `daily_count` backups
- From the older ones, keep the most recent backup of each of the last
  `weekly_count` weeks
- Delete everything else

Each pass reads a fresh listing; nothing is cached between runs.
"""

import logging
from datetime import datetime, timezone
from typing import List, Dict, Optional, Union

from .types import (
    SpacesObject,
    RetentionConfig,
    RetentionResult,
    DEFAULT_RETENTION,
    parse_iso_datetime,
)
from .storage import StorageError, node_prefix


logger = logging.getLogger(__name__)


def iso_week_key(value: Union[str, datetime]) -> str:
    """
    Return the 'YYYY-Wnn' bucket label for a date.

    Days are counted from Jan 1 of the date's own (UTC) year and grouped in
    sevens, so weeks run from the weekday of Jan 1. This is a stable bucketing
    scheme that approximates calendar weeks, not a certified ISO-8601 week
    number (year boundaries never share a bucket).
    """
    dt = parse_iso_datetime(value)
    jan4 = datetime(dt.year, 1, 4, tzinfo=timezone.utc)

    # timedelta.days floors toward negative infinity
    day_of_year = (dt - jan4).days + 4
    week = -(-day_of_year // 7)

    return f"{dt.year}-W{week:02d}"


def sort_newest_first(objects: List[SpacesObject]) -> List[SpacesObject]:
    """Sort by date descending; equal dates keep listing order."""
    return sorted(objects, key=lambda o: o.date, reverse=True)


def select_retained(sorted_objects: List[SpacesObject], config: RetentionConfig = DEFAULT_RETENTION) -> List[SpacesObject]:
    """
    Select the objects to keep under the daily + weekly policy.

    Args:
        sorted_objects: Objects sorted newest first
        config: Retention configuration

    Returns:
        Retained objects, unique by path
    """
    retained: Dict[str, SpacesObject] = {}

    # Phase 1: most recent `daily_count` backups
    for obj in sorted_objects[:config.daily_count]:
        retained[obj.path] = obj

    # Phase 2: newest backup per week among the rest
    week_buckets: Dict[str, SpacesObject] = {}
    for obj in sorted_objects:
        if obj.path in retained:
            continue
        week_buckets.setdefault(iso_week_key(obj.date), obj)

    for week in sorted(week_buckets, reverse=True)[:config.weekly_count]:
        obj = week_buckets[week]
        retained[obj.path] = obj

    return list(retained.values())


class RetentionPolicyEngine:
    """
    Applies the retention policy to one container prefix at a time.
    """

    def __init__(self, store):
        """
        Args:
            store: Object store client (SpacesClient interface)
        """
        self.store = store
        self.logs: List[str] = []

    def enforce(self, prefix: str, config: RetentionConfig = DEFAULT_RETENTION,
                now: Optional[datetime] = None) -> RetentionResult:
        """
        Enforce retention for a single container's backups.

        Args:
            prefix: Container prefix, e.g. "nightly/node-1/tenant_abc/"
            config: Retention configuration
            now: Current time (kept for callers that pin the clock)

        Returns:
            RetentionResult. Listing and deletion failures are reported in
            `errors`, never raised.
        """
        now = now or datetime.now(timezone.utc)

        try:
            objects = self.store.list(prefix)
        except StorageError as e:
            self._log(f"Retention listing failed for {prefix}: {e}", level=logging.ERROR)
            return RetentionResult()

        if not objects:
            return RetentionResult()

        sorted_objects = sort_newest_first(objects)
        keep_set = {obj.path for obj in select_retained(sorted_objects, config)}

        kept = [obj.path for obj in sorted_objects if obj.path in keep_set]
        to_delete = [obj.path for obj in sorted_objects if obj.path not in keep_set]
        # `deleted` lists the paths attempted; a non-empty `errors` means some may remain
        result = RetentionResult(kept=kept, deleted=to_delete)

        if to_delete:
            try:
                self.store.remove_many(to_delete)
            except StorageError as e:
                result.errors.append(str(e))
                self._log(f"Retention cleanup failed for {prefix}: {e}", level=logging.ERROR)

        self._log(
            f"Retention for {prefix} at {now.isoformat()}: "
            f"kept={len(result.kept)}, deleted={len(result.deleted)}"
        )
        return result

    def enforce_node(self, node_id: str, config: RetentionConfig = DEFAULT_RETENTION,
                     now: Optional[datetime] = None) -> Dict[str, RetentionResult]:
        """
        Enforce retention for every container prefix under nightly/{node_id}/.

        Container prefixes are discovered from one listing of the node prefix;
        each prefix is then enforced independently.

        Returns:
            Dict mapping container prefix to its RetentionResult
        """
        root = node_prefix(node_id)

        try:
            objects = self.store.list(root)
        except StorageError as e:
            self._log(f"Retention listing failed for {root}: {e}", level=logging.ERROR)
            return {}

        prefixes = []
        for obj in objects:
            relative = obj.path[len(root):]
            if '/' not in relative:
                continue
            prefix = f"{root}{relative.split('/', 1)[0]}/"
            if prefix not in prefixes:
                prefixes.append(prefix)

        self._log(f"Enforcing retention for {len(prefixes)} containers under {root}")

        summary = {}
        for prefix in prefixes:
            summary[prefix] = self.enforce(prefix, config, now)

        return summary

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
