"""
Lazy Update Queue & Self-Healing

In-process outbox for deferred catalog writes and a small healing queue
for stale or missing data. The interactive path only ever enqueues;
processing happens in maintenance ticks or opportunistic background
tasks. Every write is an upsert, so replaying an item is harmless.
"""

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import TypeAdapter, ValidationError

from ..models.config_models import EngineConfig
from ..models.game_models import ArtistProfile, TrackDetails
from .persistence import MusicStore
from .profile_cache import ArtistProfileCache
from .similarity import is_valid_catalog_id

logger = structlog.get_logger(__name__)

_TRACK_LIST = TypeAdapter(List[TrackDetails])

HEALING_TICK_RESERVE_SECONDS = 0.5


class LazyUpdateType(str, Enum):
    ARTIST_PROFILE = "artist_profile"
    ARTIST_TOP_TRACKS = "artist_top_tracks"
    TRACK_DETAILS = "track_details"
    TRACK_UNAVAILABLE = "track_unavailable"


class UpdateStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class LazyUpdate:
    """A deferred write, keyed by type and catalog id."""
    type: LazyUpdateType
    spotify_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return f"{self.type.value}:{self.spotify_id}"


@dataclass
class LazyUpdateRecord:
    id: str
    update: LazyUpdate
    attempts: int = 0
    status: UpdateStatus = UpdateStatus.PENDING
    error_message: Optional[str] = None
    updated_at: float = field(default_factory=time.time)


class LazyUpdateQueue:
    """
    Deduplicating outbox with an enqueue/drain contract.

    Enqueuing the same type and id twice merges the payloads into the
    pending entry and resets it to pending.
    """

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._records: "OrderedDict[str, LazyUpdateRecord]" = OrderedDict()
        self._by_id: Dict[str, str] = {}
        self.logger = logger.bind(component="LazyUpdateQueue")

    def enqueue(self, update: LazyUpdate) -> Optional[str]:
        """
        Add or merge a deferred update. Never raises.

        Args:
            update: Update to store

        Returns:
            Record id, or None if the update was dropped
        """
        try:
            if not update.spotify_id:
                self.logger.warning("Dropping lazy update without id", type=update.type.value)
                return None

            key = update.dedupe_key
            record = self._records.get(key)
            if record is not None:
                record.update.payload = {**record.update.payload, **update.payload}
                record.status = UpdateStatus.PENDING
                record.attempts = 0
                record.error_message = None
                record.updated_at = time.time()
                return record.id

            if len(self._records) >= self.max_size:
                self.logger.warning("Lazy update queue full, dropping update", key=key)
                return None

            record = LazyUpdateRecord(id=uuid.uuid4().hex, update=update)
            self._records[key] = record
            self._by_id[record.id] = key
            self.logger.debug("Lazy update enqueued", key=key)
            return record.id
        except Exception as e:
            self.logger.warning("Failed to enqueue lazy update", error=str(e))
            return None

    def fetch_pending(self, limit: int) -> List[LazyUpdateRecord]:
        pending = [r for r in self._records.values() if r.status is UpdateStatus.PENDING]
        pending.sort(key=lambda r: r.updated_at)
        return pending[:max(limit, 0)]

    def mark_processing(self, ids: List[str]) -> None:
        for record_id in ids:
            record = self._get(record_id)
            if record is not None:
                record.status = UpdateStatus.PROCESSING
                record.updated_at = time.time()

    def mark_result(
        self,
        record_id: str,
        status: UpdateStatus,
        attempts: int,
        error: Optional[str] = None
    ) -> None:
        """Record the outcome of one item; completed items leave the queue."""
        record = self._get(record_id)
        if record is None:
            return
        if status is UpdateStatus.COMPLETED:
            key = self._by_id.pop(record_id)
            self._records.pop(key, None)
            return
        record.status = status
        record.attempts = attempts
        record.error_message = error
        record.updated_at = time.time()

    def drain(self, limit: int) -> List[LazyUpdateRecord]:
        """Take up to ``limit`` pending items and mark them processing."""
        batch = self.fetch_pending(limit)
        self.mark_processing([r.id for r in batch])
        return batch

    def get_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UpdateStatus if status is not UpdateStatus.COMPLETED}
        for record in self._records.values():
            counts[record.status.value] += 1
        return counts

    def __len__(self) -> int:
        return sum(1 for r in self._records.values() if r.status is UpdateStatus.PENDING)

    def _get(self, record_id: str) -> Optional[LazyUpdateRecord]:
        key = self._by_id.get(record_id)
        return self._records.get(key) if key else None


class HealingType(str, Enum):
    ARTIST_PROFILE = "artist_profile"
    RELATED_ARTISTS = "related_artists"
    TARGET_ARTIST = "target_artist"
    TRACK_DETAILS = "track_details"


@dataclass
class HealingAction:
    type: HealingType
    entity_id: str
    error: str
    entity_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class HealingResult:
    success: bool
    action: HealingAction
    resolution: Optional[str] = None


class HealingQueue:
    """
    Best-effort repair of stale or missing catalog data.

    Processing needs a catalog client, so it only runs where a player's
    token is available.
    """

    def __init__(
        self,
        store: MusicStore,
        lazy_queue: LazyUpdateQueue,
        cache: Optional[ArtistProfileCache] = None
    ):
        self.store = store
        self.lazy_queue = lazy_queue
        self.cache = cache
        self._actions: List[HealingAction] = []
        self.logger = logger.bind(component="HealingQueue")

    def enqueue_healing(self, action: HealingAction) -> bool:
        if any(a.type == action.type and a.entity_id == action.entity_id for a in self._actions):
            return False
        self._actions.append(action)
        self.logger.debug("Healing enqueued", type=action.type.value, entity_id=action.entity_id)
        return True

    async def process_healing_queue(self, catalog, limit: int = 2) -> Dict[str, Any]:
        """
        Process a small batch of healing actions.

        Args:
            catalog: Catalog client used to refetch data
            limit: Maximum actions to process

        Returns:
            Dict with processed, succeeded, failed and per-action results
        """
        if not self._actions:
            return {"processed": 0, "succeeded": 0, "failed": 0, "results": []}

        batch, self._actions = self._actions[:limit], self._actions[limit:]
        results: List[HealingResult] = []
        for action in batch:
            try:
                results.append(await self._heal(action, catalog))
            except Exception as e:
                self.logger.warning(
                    "Healing action failed",
                    type=action.type.value,
                    entity_id=action.entity_id,
                    error=str(e)
                )
                results.append(HealingResult(False, action, f"Error: {e}"))

        succeeded = sum(1 for r in results if r.success)
        self.logger.info(
            "Healing batch processed",
            processed=len(batch),
            succeeded=succeeded,
            remaining=len(self._actions)
        )
        return {
            "processed": len(batch),
            "succeeded": succeeded,
            "failed": len(batch) - succeeded,
            "results": results,
        }

    async def _heal(self, action: HealingAction, catalog) -> HealingResult:
        if action.type is HealingType.TRACK_DETAILS:
            self.lazy_queue.enqueue(LazyUpdate(
                type=LazyUpdateType.TRACK_UNAVAILABLE,
                spotify_id=action.entity_id,
                payload={"is_playable": False, "unavailable_since": time.time()},
            ))
            return HealingResult(True, action, "Marked track as unplayable")

        if action.type is HealingType.RELATED_ARTISTS:
            related = await catalog.get_related_artists(action.entity_id)
            if self.cache is not None:
                self.cache.set_related(action.entity_id, related)
            return HealingResult(True, action, f"Refreshed {len(related)} related artists")

        if action.type is HealingType.TARGET_ARTIST and not is_valid_catalog_id(action.entity_id):
            profile = await catalog.search_artist(action.entity_name or "")
        else:
            profile = await catalog.get_artist(action.entity_id)

        if profile is None:
            return HealingResult(False, action, "Artist not found in catalog")
        await self.store.upsert_artist_profile(profile)
        if self.cache is not None:
            self.cache.set_profile(profile)
        if profile.needs_genre_backfill:
            return HealingResult(True, action, "Profile refreshed, genres still missing")
        return HealingResult(True, action, "Profile refreshed")

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue_size": len(self._actions),
            "actions": [
                {"type": a.type.value, "entity_name": a.entity_name, "timestamp": a.timestamp}
                for a in self._actions
            ],
        }

    def __len__(self) -> int:
        return len(self._actions)


class LazyUpdateProcessor:
    """Runs one bounded maintenance tick over both queues."""

    def __init__(
        self,
        queue: LazyUpdateQueue,
        healing: HealingQueue,
        store: MusicStore,
        config: Optional[EngineConfig] = None
    ):
        self.queue = queue
        self.healing = healing
        self.store = store
        self.config = config or EngineConfig()
        self.logger = logger.bind(component="LazyUpdateProcessor")

    async def tick(self, catalog=None) -> Dict[str, Any]:
        """
        Apply a batch of pending updates, then heal if time allows.

        Args:
            catalog: Catalog client; healing is skipped without one

        Returns:
            Dict with processed, failed, remaining, duration_ms and healing
        """
        start = time.monotonic()
        deadline = self.config.lazy_update_deadline_seconds
        pending = self.queue.drain(self.config.lazy_update_batch_size)

        processed = 0
        failed = 0
        attempted = set()
        for record in pending:
            if time.monotonic() - start > deadline:
                break
            attempted.add(record.id)
            try:
                await self._apply(record.update)
                processed += 1
                self.queue.mark_result(record.id, UpdateStatus.COMPLETED, record.attempts + 1)
            except Exception as e:
                failed += 1
                self.logger.warning(
                    "Failed processing lazy update",
                    record_id=record.id,
                    type=record.update.type.value,
                    error=str(e)
                )
                self.queue.mark_result(record.id, UpdateStatus.FAILED, record.attempts + 1, str(e))

        for record in pending:
            if record.id not in attempted:
                self.queue.mark_result(record.id, UpdateStatus.PENDING, record.attempts)

        healing = {"processed": 0, "succeeded": 0, "failed": 0}
        time_left = deadline - (time.monotonic() - start)
        if time_left > HEALING_TICK_RESERVE_SECONDS and catalog is not None:
            result = await self.healing.process_healing_queue(catalog, self.config.healing_batch_size)
            healing = {k: result[k] for k in ("processed", "succeeded", "failed")}
        elif catalog is None:
            self.logger.info("Skipping healing - no catalog credential")

        duration_ms = int((time.monotonic() - start) * 1000)
        self.logger.info(
            "Lazy update tick complete",
            processed=processed,
            failed=failed,
            duration_ms=duration_ms
        )
        return {
            "processed": processed,
            "failed": failed,
            "remaining": len(self.queue),
            "duration_ms": duration_ms,
            "healing": healing,
        }

    async def _apply(self, update: LazyUpdate) -> None:
        payload = update.payload

        if update.type is LazyUpdateType.ARTIST_PROFILE:
            await self.store.upsert_artist_profile(ArtistProfile(
                id=update.spotify_id,
                name=payload.get("name") or "",
                genres=list(payload.get("genres") or []),
                popularity=payload.get("popularity"),
                followers=payload.get("followers"),
            ))
            reason = payload.get("reason")
            if reason:
                self.healing.enqueue_healing(HealingAction(
                    type=HealingType.ARTIST_PROFILE,
                    entity_id=update.spotify_id,
                    error=reason,
                    entity_name=payload.get("name"),
                ))

        elif update.type is LazyUpdateType.ARTIST_TOP_TRACKS:
            tracks = self._tracks_from_payload(payload)
            if tracks:
                await self.store.upsert_top_tracks(update.spotify_id, tracks)

        elif update.type is LazyUpdateType.TRACK_DETAILS:
            tracks = self._tracks_from_payload(payload)
            if tracks:
                await self.store.upsert_track_details(tracks)

        elif update.type is LazyUpdateType.TRACK_UNAVAILABLE:
            await self.store.mark_track_unplayable(update.spotify_id)

    def _tracks_from_payload(self, payload: Dict[str, Any]) -> List[TrackDetails]:
        try:
            tracks = _TRACK_LIST.validate_python(payload.get("tracks") or [])
        except ValidationError as e:
            self.logger.warning("Invalid track payload", error=str(e))
            return []
        return [t for t in tracks if t.id and t.id.strip()]
