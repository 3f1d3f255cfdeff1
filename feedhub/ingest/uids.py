"""Workspace-scoped UID allocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Collection, Mapping, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from feedhub.ingest.coercion import is_absent
from feedhub.ingest.errors import AllocationError
from feedhub.ingest.models import AllocationResult, ParsedRecord
from feedhub.ingest.upsert import lookup

logger = logging.getLogger(__name__)


class UidAllocator:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def allocate(self, workspace_id: str, count: int) -> AllocationResult:
        if count <= 0:
            return AllocationResult(uids=[])
        try:
            last_uid = self._reserve(workspace_id, count)
        except (SQLAlchemyError, AllocationError) as exc:
            logger.warning(
                "UID allocation failed for workspace %s, using local counters: %s", workspace_id, exc
            )
            return AllocationResult(uids=[str(n) for n in range(1, count + 1)], degraded=True)
        first = last_uid - count + 1
        return AllocationResult(uids=[str(n) for n in range(first, last_uid + 1)])

    def _reserve(self, workspace_id: str, count: int) -> int:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO workspace_uid_counters (workspace_id, last_uid)
                    VALUES (:workspace_id, 0)
                    ON CONFLICT (workspace_id) DO NOTHING
                    """
                ),
                {"workspace_id": workspace_id},
            )
            last_uid = conn.execute(
                text(
                    """
                    UPDATE workspace_uid_counters
                    SET last_uid = last_uid + :count
                    WHERE workspace_id = :workspace_id
                    RETURNING last_uid
                    """
                ),
                {"workspace_id": workspace_id, "count": count},
            ).scalar_one_or_none()
        if last_uid is None or int(last_uid) < count:
            raise AllocationError(f"Invalid counter value {last_uid!r}")
        return int(last_uid)


@dataclass(slots=True)
class UidAssignment:
    uids: list[str]
    source_uids: list[str | None]
    degraded: bool = False


def assign_stable_uids(
    records: Sequence[ParsedRecord],
    *,
    uid_source_key: str | None,
    known: Mapping[str, str],
    allocate: Callable[[int], AllocationResult],
    taken: Collection[str] = (),
) -> UidAssignment:
    """Give every record a persisted UID, reusing UIDs of previously seen source keys.

    Records without a value for ``uid_source_key`` and records whose value has
    no stored row take freshly allocated UIDs in parse order. A key repeated
    within the feed maps to the UID of its first occurrence. ``taken`` lists
    UIDs of stored rows that degraded local numbering must not reuse.
    """
    if not uid_source_key:
        result = allocate(len(records))
        return UidAssignment(uids=list(result.uids), source_uids=[None] * len(records), degraded=result.degraded)

    source_uids: list[str | None] = []
    slots: list[str | int] = []
    pending: dict[str, int] = {}
    needed = 0
    for record in records:
        value = lookup(record.fields, uid_source_key)
        source = None if is_absent(value) else str(value).strip()
        source_uids.append(source)
        if source is not None and source in known:
            slots.append(known[source])
        elif source is not None and source in pending:
            slots.append(pending[source])
        else:
            if source is not None:
                pending[source] = needed
            slots.append(needed)
            needed += 1

    result = allocate(needed)
    fresh = list(result.uids)
    if result.degraded:
        fresh = _free_local_uids(needed, taken=set(known.values()) | set(taken))
    uids = [slot if isinstance(slot, str) else fresh[slot] for slot in slots]
    return UidAssignment(uids=uids, source_uids=source_uids, degraded=result.degraded)


def _free_local_uids(count: int, taken: set[str]) -> list[str]:
    uids: list[str] = []
    candidate = 0
    while len(uids) < count:
        candidate += 1
        if str(candidate) not in taken:
            uids.append(str(candidate))
    return uids
