from __future__ import annotations

from datetime import datetime, timedelta, timezone

from video_ingest.config import settings
from video_ingest.coordinator import UploadCoordinator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _session_id_from_key(key: str) -> str | None:
    parts = key.split("/")
    if len(parts) < 3 or parts[0] != "sessions":
        return None
    return parts[1]


def cleanup_once(coordinator: UploadCoordinator, now: datetime | None = None) -> dict[str, int]:
    """Purge sessions that stopped receiving chunks and storage keys no session owns."""
    now = now or _utc_now()
    stale_before = now - timedelta(seconds=settings.stale_session_ttl_seconds)

    deleted_storage_keys = 0
    stale_deleted = 0
    for session_id in coordinator.store.stale_session_ids(stale_before):
        # A session completed or written to since the listing is skipped.
        if not coordinator.store.claim_stale(session_id, stale_before):
            continue
        deleted_storage_keys += coordinator.purge_session(session_id, reason="stale")
        stale_deleted += 1

    # Keys are listed before the live ids so a session created mid-sweep is never treated as an orphan.
    keys = coordinator.storage.list_keys("sessions/")
    live_ids = coordinator.store.session_ids()
    orphan_deleted = 0
    for key in keys:
        if _session_id_from_key(key) not in live_ids:
            coordinator.storage.delete_key(key)
            orphan_deleted += 1

    return {
        "stale_sessions_deleted": stale_deleted,
        "storage_keys_deleted": deleted_storage_keys + orphan_deleted,
    }
