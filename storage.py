"""LanceDB database layer: connection, tables, id allocation, and the
message / settings / sync-state records that sit beside the memory table."""

from __future__ import annotations

import logging
import threading
from typing import Any

import lancedb
import pyarrow.compute as pc

from config import CONFIG
from models import Memory, Message, Role, Settings, SyncHistory, SyncState
from utils import now_iso

logger = logging.getLogger(__name__)

MEMORIES = "memories"
MESSAGES = "messages"
SETTINGS = "settings"
SYNC_STATE = "sync_state"
SYNC_HISTORY = "sync_history"

SCHEMAS = {
    MEMORIES: Memory,
    MESSAGES: Message,
    SETTINGS: Settings,
    SYNC_STATE: SyncState,
    SYNC_HISTORY: SyncHistory,
}

# =============================================================================
# Thread-Safety Lock (singleton initialization and id allocation)
# =============================================================================

_lock = threading.RLock()  # RLock allows reentrant calls (get_table -> get_db)

_db: lancedb.DBConnection | None = None
_tables: dict[str, Any] = {}
_id_counters: dict[str, int] = {}


def get_db() -> lancedb.DBConnection:
    """Get or create LanceDB connection (thread-safe)."""
    global _db
    if _db is None:
        with _lock:
            if _db is None:  # Double-check after acquiring lock
                CONFIG.db_path.parent.mkdir(parents=True, exist_ok=True)
                _db = lancedb.connect(str(CONFIG.db_path))
    return _db


def get_table(name: str):
    """Get or create one of the known tables (thread-safe)."""
    table = _tables.get(name)
    if table is None:
        with _lock:
            table = _tables.get(name)
            if table is None:  # Double-check after acquiring lock
                db = get_db()
                try:
                    table = db.open_table(name)
                except Exception:
                    try:
                        listing = db.list_tables()
                        table_names = getattr(listing, "tables", listing)
                    except AttributeError:
                        table_names = db.table_names()
                    except Exception:
                        table_names = []
                    if name in table_names:
                        raise
                    table = db.create_table(name, schema=SCHEMAS[name])
                _tables[name] = table
    return table


def reset() -> None:
    """Drop cached handles so the next call reconnects to CONFIG.db_path."""
    global _db
    with _lock:
        _db = None
        _tables.clear()
        _id_counters.clear()


def next_id(name: str) -> int:
    """Allocate the next monotonic integer id for a table."""
    with _lock:
        if name not in _id_counters:
            table = get_table(name)
            current = 0
            total = table.count_rows()
            if total:
                ids = table.search().select(["id"]).limit(total).to_arrow()["id"]
                current = pc.max(ids).as_py() or 0
            _id_counters[name] = current
        _id_counters[name] += 1
        return _id_counters[name]


def fetch_rows(name: str, where: str | None = None, columns: list[str] | None = None) -> list[dict]:
    """Read every row of a table (optionally filtered / projected).

    ``search()`` defaults to 10 rows, so the limit is always set explicitly.
    """
    table = get_table(name)
    total = table.count_rows()
    if total == 0:
        return []
    query = table.search()
    if where:
        query = query.where(where)
    if columns:
        query = query.select(columns)
    return query.limit(total).to_list()


def init_database() -> None:
    """Create every table and, once the memory table is large enough, its ANN index."""
    for name in SCHEMAS:
        get_table(name)

    table = get_table(MEMORIES)
    try:
        indices = table.list_indices()
        if any("ivf" in str(idx).lower() for idx in indices):
            logger.info("Vector index already exists")
            return
        row_count = table.count_rows()
        if row_count >= CONFIG.vector_index_min_rows:
            table.create_index(
                metric="cosine",
                num_partitions=max(4, int(row_count**0.5)),
                num_sub_vectors=48 if CONFIG.embedding_dim % 48 == 0 else 16,
                index_type="IVF_PQ",
                vector_column_name="vector",
                replace=True,
            )
            logger.info("IVF-PQ index created over %d memories", row_count)
    except Exception as e:
        logger.warning("Vector index warning: %s", e)


# =============================================================================
# Messages
# =============================================================================


def create_message(content: str, role: str, model_id: str) -> Message:
    message = Message(
        id=next_id(MESSAGES),
        content=content,
        role=Role(role).value,
        timestamp=now_iso(),
        model_id=model_id,
    )
    get_table(MESSAGES).add([message.model_dump()])
    return message


def get_message(message_id: int) -> Message | None:
    rows = get_table(MESSAGES).search().where(f"id = {int(message_id)}").limit(1).to_list()
    return Message(**rows[0]) if rows else None


def recent_messages(limit: int, before_id: int | None = None) -> list[Message]:
    """The newest ``limit`` messages (optionally older than ``before_id``), oldest first."""
    where = f"id < {int(before_id)}" if before_id is not None else None
    rows = sorted(fetch_rows(MESSAGES, where), key=lambda r: r["id"])
    return [Message(**row) for row in rows[-limit:]] if limit > 0 else []


def count_messages() -> int:
    return get_table(MESSAGES).count_rows()


def clear_messages() -> int:
    table = get_table(MESSAGES)
    count = table.count_rows()
    if count:
        table.delete("id >= 0")
    return count


# =============================================================================
# Settings (singleton)
# =============================================================================


def get_settings() -> Settings:
    """Read the settings row, creating defaults on first use."""
    table = get_table(SETTINGS)
    rows = table.search().limit(1).to_list()
    if rows:
        return Settings(**rows[0])
    with _lock:
        rows = table.search().limit(1).to_list()
        if rows:
            return Settings(**rows[0])
        settings = Settings()
        table.add([settings.model_dump()])
        return settings


def update_settings(**changes: Any) -> Settings:
    current = get_settings()
    unknown = set(changes) - set(Settings.model_fields) - {"id"}
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)}")
    updated = current.model_copy(update={k: v for k, v in changes.items() if k != "id"})
    get_table(SETTINGS).update(where=f"id = {current.id}", values=updated.model_dump(exclude={"id"}))
    return updated


# =============================================================================
# Sync state and history
# =============================================================================


def get_sync_state() -> SyncState:
    table = get_table(SYNC_STATE)
    rows = table.search().limit(1).to_list()
    if rows:
        return SyncState(**rows[0])
    with _lock:
        rows = table.search().limit(1).to_list()
        if rows:
            return SyncState(**rows[0])
        state = SyncState()
        table.add([state.model_dump()])
        return state


def update_sync_state(**changes: Any) -> SyncState:
    current = get_sync_state()
    updated = current.model_copy(update=changes)
    get_table(SYNC_STATE).update(where=f"id = {current.id}", values=updated.model_dump(exclude={"id"}))
    return updated


def record_sync_history(entry: dict[str, Any]) -> SyncHistory:
    row = SyncHistory(id=next_id(SYNC_HISTORY), **entry)
    get_table(SYNC_HISTORY).add([row.model_dump()])
    return row


def latest_sync_history(operation: str) -> SyncHistory | None:
    rows = fetch_rows(SYNC_HISTORY, f"operation = '{operation}'")
    if not rows:
        return None
    return SyncHistory(**max(rows, key=lambda r: r["id"]))


def reset_sync_metrics(operations: tuple[str, ...]) -> list[str]:
    """Zero the dedup figures on the newest history row of each operation.

    Counts and timestamps are kept. Returns the operations that had a row.
    """
    reset = []
    for operation in operations:
        latest = latest_sync_history(operation)
        if latest is None:
            continue
        get_table(SYNC_HISTORY).update(
            where=f"id = {latest.id}", values={"duplicate_count": 0, "dedup_rate": 0.0}
        )
        reset.append(operation)
    return reset
