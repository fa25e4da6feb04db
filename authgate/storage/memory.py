from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from authgate.logging import get_logger
from authgate.storage.models import ProfileRecord

logger = get_logger(__name__)


class MemoryProfileStore:
    """Dict-backed profile store for development and tests.

    ``hold()`` makes subsequent lookups wait until the returned event is set,
    and ``fail_with`` makes them raise, so callers can stage slow or failing
    round trips.
    """

    def __init__(self, profiles: Optional[Dict[str, ProfileRecord]] = None) -> None:
        self.profiles: Dict[str, ProfileRecord] = dict(profiles or {})
        self.lookups = 0
        self.updates = 0
        self.fail_with: Optional[BaseException] = None
        self._gate: Optional[asyncio.Event] = None

    def upsert(
        self,
        user_id: str,
        role: Optional[str],
        *,
        must_change_password: bool = False,
        meta: Optional[dict] = None,
    ) -> ProfileRecord:
        record = ProfileRecord(
            user_id=user_id,
            role=role,
            must_change_password=must_change_password,
            meta=meta,
        )
        self.profiles[user_id] = record
        return record

    def delete(self, user_id: str) -> bool:
        return self.profiles.pop(user_id, None) is not None

    def hold(self) -> asyncio.Event:
        self._gate = asyncio.Event()
        return self._gate

    def release(self) -> None:
        gate, self._gate = self._gate, None
        if gate is not None:
            gate.set()

    async def _round_trip(self) -> None:
        gate = self._gate
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with

    async def get_profile(self, user_id: str) -> Optional[ProfileRecord]:
        self.lookups += 1
        await self._round_trip()
        record = self.profiles.get(user_id)
        if record is None:
            logger.debug("memory_profile_missing", user_id=user_id)
            return None
        return replace(record)

    async def set_must_change_password(self, user_id: str, value: bool) -> None:
        self.updates += 1
        await self._round_trip()
        record = self.profiles.get(user_id)
        if record is None:
            return
        record.must_change_password = value
        record.updated_at = datetime.now(timezone.utc)
