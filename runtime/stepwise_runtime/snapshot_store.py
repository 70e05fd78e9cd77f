"""
Stepwise Content-Addressed Snapshot Store

Persists paused interpreter states: deterministic, deduplicated, queryable.

A snapshot is the ST text of a serialized state. Its handle is the blake2b
hash of that text, so pausing the same computation twice stores it once.
Text lives under objects/, searchable metadata in an SQLite index.
"""

from typing import Optional, Dict, List, Any, Union
from pathlib import Path
import datetime
import hashlib
import json
import logging
import sqlite3

from .st_codec import encode_state, decode_state
from .stepwise_runtime import Interpreter, PrintSink


logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".stepwise" / "snapshots"


class SnapshotHandle:
    """
    Content-addressed snapshot handle.

    Format: &h_snap_<blake2b_256_hex>

    The handle is deterministic: same state text = same handle.
    """
    PREFIX = "&h_snap_"

    def __init__(self, handle: str):
        if not handle.startswith(self.PREFIX):
            raise ValueError(f"Invalid snapshot handle: {handle}")
        digest = handle[len(self.PREFIX):]
        if len(digest) != 64 or any(c not in '0123456789abcdef' for c in digest):
            raise ValueError(f"Invalid snapshot handle: {handle}")
        self._handle = handle
        self._hash = digest

    @classmethod
    def from_text(cls, text: str) -> "SnapshotHandle":
        """Create handle from ST text (deterministic)."""
        h = hashlib.blake2b(text.encode('ascii'), digest_size=32).hexdigest()
        return cls(f"{cls.PREFIX}{h}")

    @property
    def hash(self) -> str:
        """64-char hex hash."""
        return self._hash

    @property
    def prefix(self) -> str:
        """First 2 chars for filesystem lookup."""
        return self._hash[:2]

    @property
    def suffix(self) -> str:
        """Remaining chars for filename."""
        return self._hash[2:]

    def __str__(self) -> str:
        return self._handle

    def __repr__(self) -> str:
        return f"SnapshotHandle({self._handle!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, SnapshotHandle):
            return self._handle == other._handle
        return self._handle == other

    def __hash__(self) -> int:
        return hash(self._handle)


class SnapshotStore:
    """
    Content-addressed store of paused interpreter states.

    Usage:
        store = SnapshotStore("/tmp/stepwise")

        # Store (deterministic - same state = same handle)
        handle = store.add_snapshot(interp, label="after-first-print")

        # Query
        results = store.query(label="after-first-print", halted=False)

        # Resume
        interp = store.load(handle)
        interp.run()
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_STORE_PATH):
        self.root = Path(path)
        self.objects_dir = self.root / "objects"
        self.index_path = self.root / "index.sqlite"

        # Ensure directories exist
        self.objects_dir.mkdir(parents=True, exist_ok=True)

        self._init_index()

    def _init_index(self):
        """Initialize SQLite index."""
        self._conn = sqlite3.connect(str(self.index_path))
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                handle TEXT PRIMARY KEY,
                label TEXT,
                depth INTEGER,
                halted INTEGER,
                text_size INTEGER,
                created_at TEXT,
                metadata_json TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_label ON snapshots(label)
        """)
        self._conn.commit()

    def _object_path(self, handle: SnapshotHandle) -> Path:
        return self.objects_dir / handle.prefix / handle.suffix

    def add_snapshot(
        self,
        state: Union[Interpreter, Dict[str, Any]],
        *,
        label: str = "unnamed",
        tags: Optional[List[str]] = None
    ) -> SnapshotHandle:
        """
        Store a paused interpreter (or its serialized dict).

        Content-addressed: same state = same handle = no duplicate storage.
        """
        if isinstance(state, Interpreter):
            state = state.serialize()
        else:
            # Reject anything that would not resume
            Interpreter.deserialize(state)

        text = encode_state(state)
        handle = SnapshotHandle.from_text(text)

        obj_path = self._object_path(handle)
        if obj_path.exists():
            existing = obj_path.read_text(encoding='ascii')
            if existing != text:
                raise ValueError(f"Hash collision detected for {handle}")
            logger.debug("Snapshot %s already stored", handle)
        else:
            obj_path.parent.mkdir(exist_ok=True)
            obj_path.write_text(text, encoding='ascii')

        now = datetime.datetime.now(datetime.timezone.utc).isoformat()
        self._conn.execute("""
            INSERT OR REPLACE INTO snapshots
            (handle, label, depth, halted, text_size, created_at, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            str(handle), label,
            len(state['stateStack']), int(state['halted']),
            len(text), now,
            json.dumps({"tags": tags or []})
        ))
        self._conn.commit()

        logger.info("Stored snapshot %s (label=%s)", handle, label)
        return handle

    def get(self, handle: Union[str, SnapshotHandle]) -> Dict[str, Any]:
        """Get the serialized state dict by handle."""
        if isinstance(handle, str):
            handle = SnapshotHandle(handle)

        obj_path = self._object_path(handle)
        if not obj_path.exists():
            raise KeyError(f"Snapshot not found: {handle}")

        return decode_state(obj_path.read_text(encoding='ascii'))

    def load(self, handle: Union[str, SnapshotHandle], print_sink: Optional[PrintSink] = None) -> Interpreter:
        """Rebuild a resumable interpreter from a stored snapshot."""
        interp = Interpreter.deserialize(self.get(handle), print_sink)
        logger.info("Loaded snapshot %s", handle)
        return interp

    def exists(self, handle: Union[str, SnapshotHandle]) -> bool:
        """Check if snapshot exists in the store."""
        if isinstance(handle, str):
            handle = SnapshotHandle(handle)
        return self._object_path(handle).exists()

    def delete(self, handle: Union[str, SnapshotHandle]) -> bool:
        """Remove a snapshot; returns False if it was not stored."""
        if isinstance(handle, str):
            handle = SnapshotHandle(handle)

        obj_path = self._object_path(handle)
        found = obj_path.exists()
        if found:
            obj_path.unlink()
        self._conn.execute("DELETE FROM snapshots WHERE handle = ?", (str(handle),))
        self._conn.commit()
        return found

    def query(
        self,
        *,
        label: Optional[str] = None,
        halted: Optional[bool] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Query snapshots by metadata."""
        sql = "SELECT * FROM snapshots WHERE 1=1"
        params: List[Any] = []

        if label:
            # Substring match; LIKE wildcards in the label match literally
            escaped = label.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            sql += " AND label LIKE ? ESCAPE '\\'"
            params.append(f"%{escaped}%")

        if halted is not None:
            sql += " AND halted = ?"
            params.append(int(halted))

        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)

        cursor = self._conn.execute(sql, params)
        results = []

        for row in cursor.fetchall():
            meta_json = json.loads(row[6]) if row[6] else {}

            results.append({
                "handle": row[0],
                "label": row[1],
                "depth": row[2],
                "halted": bool(row[3]),
                "text_size": row[4],
                "created_at": row[5],
                "tags": meta_json.get("tags", [])
            })

        return results

    def list_all(self, limit: int = 100) -> List[str]:
        """List all snapshot handles."""
        cursor = self._conn.execute("SELECT handle FROM snapshots LIMIT ?", (limit,))
        return [row[0] for row in cursor.fetchall()]

    def stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        cursor = self._conn.execute("SELECT COUNT(*), SUM(text_size) FROM snapshots")
        count, total_size = cursor.fetchone()
        return {
            "snapshot_count": count or 0,
            "total_text_bytes": total_size or 0,
            "index_path": str(self.index_path),
            "objects_path": str(self.objects_dir)
        }

    def close(self):
        """Close database connection."""
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


# Global convenience instance
_global_store: Optional[SnapshotStore] = None

def get_snapshot_store(path: Union[str, Path] = DEFAULT_STORE_PATH) -> SnapshotStore:
    """Get or create global snapshot store."""
    global _global_store
    if _global_store is None:
        _global_store = SnapshotStore(path)
    return _global_store
