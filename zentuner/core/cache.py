"""
Persistent cache for decoded audio, analysis results and presets.

Everything lives in one SQLite file accessed through aiosqlite. The
public CacheService methods never raise: storage failures are logged and
reported as a miss (or, for presets, as the factory defaults), and a
database that cannot be opened even after a reset disables caching for
the rest of the session.
"""

import asyncio
import hashlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar, Union

import aiosqlite
import numpy as np

from zentuner.core.models import (
    AnalysisResult,
    AudioSource,
    BassHistoryEntry,
    Preset,
    merge_bass_history,
    now_ms,
)
from zentuner.core.presets import FACTORY_PRESETS, sort_presets
from zentuner.utils.errors import CacheError, StorageUnavailableError

T = TypeVar("T")

SCHEMA_VERSION = 3
MAX_CACHED_TRACKS = 5
MAX_CACHE_SIZE_BYTES = 500 * 1024 * 1024

ANALYSIS_SUFFIX = "_master"
BUFFER_SUFFIX = "_buffer"


class Fingerprinter(Protocol):
    """Turns a file into the identity string cache keys are built from."""

    def fingerprint(self, path: Path) -> str:
        ...


class StatFingerprinter:
    """
    Cheap identity from name, size and modification time.

    Two different files with identical metadata collide; use
    ContentHashFingerprinter where that matters.
    """

    def fingerprint(self, path: Path) -> str:
        stat = Path(path).stat()
        return f"{Path(path).name}_{stat.st_size}_{int(stat.st_mtime * 1000)}"


class ContentHashFingerprinter:
    """SHA-256 of the file contents."""

    def __init__(self, chunk_size: int = 8192):
        self.chunk_size = chunk_size

    def fingerprint(self, path: Path) -> str:
        sha256 = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b''):
                sha256.update(chunk)
        return sha256.hexdigest()


def create_fingerprinter(kind: str = "stat") -> Fingerprinter:
    if kind == "stat":
        return StatFingerprinter()
    if kind in ("sha256", "content"):
        return ContentHashFingerprinter()
    raise ValueError(f"Unknown fingerprint kind: {kind}")


def _is_connection_invalidated(error: BaseException) -> bool:
    """Errors that mean the connection itself is gone, not the query."""
    if isinstance(error, sqlite3.ProgrammingError):
        return True
    if isinstance(error, ValueError) and "no active connection" in str(error).lower():
        return True
    return "closed" in str(error).lower()


def _sensitivity_key(sensitivity: float) -> str:
    return f"{float(sensitivity):g}"


async def _create_analysis_store(db: aiosqlite.Connection) -> None:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS analysis (key TEXT PRIMARY KEY, payload TEXT NOT NULL)"
    )


async def _create_buffer_store(db: aiosqlite.Connection) -> None:
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS audio_buffers (
            key TEXT PRIMARY KEY,
            sample_rate INTEGER NOT NULL,
            n_channels INTEGER NOT NULL,
            n_frames INTEGER NOT NULL,
            size_bytes INTEGER NOT NULL,
            data BLOB NOT NULL,
            last_access INTEGER NOT NULL
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_audio_buffers_last_access ON audio_buffers (last_access)"
    )


async def _create_preset_store(db: aiosqlite.Connection) -> None:
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'presets'"
    )
    exists = await cursor.fetchone() is not None
    await cursor.close()
    if exists:
        return
    await db.execute(
        """
        CREATE TABLE presets (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_factory INTEGER NOT NULL,
            created_at INTEGER NOT NULL,
            data TEXT NOT NULL
        )
        """
    )
    # Seeded only here, when the store is created
    await db.executemany(
        "INSERT INTO presets (id, name, is_factory, created_at, data) VALUES (?, ?, ?, ?, ?)",
        [_preset_row(p) for p in FACTORY_PRESETS],
    )


# Each step brings the schema from version index to index + 1
MIGRATIONS: List[Callable[[aiosqlite.Connection], Awaitable[None]]] = [
    _create_analysis_store,
    _create_buffer_store,
    _create_preset_store,
]


def _preset_row(preset: Preset) -> Tuple[str, str, int, int, str]:
    return (
        preset.id,
        preset.name,
        int(preset.is_factory),
        int(preset.created_at),
        json.dumps(preset.data.to_dict(), sort_keys=True),
    )


def _preset_from_row(row: Tuple[Any, ...]) -> Preset:
    return Preset.from_dict({
        'id': row[0],
        'name': row[1],
        'is_factory': bool(row[2]),
        'created_at': row[3],
        'data': json.loads(row[4]),
    })


class CacheService:
    """
    Async SQLite cache.

    Features:
    - Decoded buffer cache with LRU eviction by entry count and byte size
    - Analysis results per sensitivity plus a shared bass-history list
    - Preset store seeded with the factory presets on creation
    - One reconnect-and-retry for operations that hit a dead connection

    Args:
        path: SQLite file (created on first use)
        max_entries: Maximum number of cached buffers
        max_bytes: Maximum total size of cached buffers
        clock: Millisecond clock used for access timestamps
    """

    def __init__(
        self,
        path: Union[str, Path],
        max_entries: int = MAX_CACHED_TRACKS,
        max_bytes: int = MAX_CACHE_SIZE_BYTES,
        clock: Callable[[], int] = now_ms,
    ):
        self.path = Path(path).expanduser()
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._connect_task: Optional["asyncio.Task[aiosqlite.Connection]"] = None
        self._disabled = False
        # One operation at a time on the shared connection
        self._lock: Optional[asyncio.Lock] = None
        self.logger = logging.getLogger("cache")

        self._hits = 0
        self._misses = 0

    @property
    def disabled(self) -> bool:
        return self._disabled

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def _get_db(self) -> aiosqlite.Connection:
        if self._disabled:
            raise StorageUnavailableError("Persistent cache is disabled", path=str(self.path))
        if self._db is not None:
            return self._db
        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._open_with_reset())
        task = self._connect_task
        try:
            return await task
        finally:
            if task.done() and (task.cancelled() or task.exception() is not None):
                if self._connect_task is task:
                    self._connect_task = None

    async def _open_with_reset(self) -> aiosqlite.Connection:
        try:
            return await self._open()
        except (sqlite3.Error, OSError) as first_error:
            self.logger.info(f"Cache open failed, resetting database: {first_error}")
            try:
                self.path.unlink(missing_ok=True)
                return await self._open()
            except (sqlite3.Error, OSError) as e:
                self._disabled = True
                self.logger.warning(f"Cache unavailable, running without persistence: {e}")
                raise StorageUnavailableError(f"Cannot open cache: {e}", path=str(self.path)) from e

    def _check_openable(self) -> None:
        sqlite3.connect(str(self.path)).close()

    async def _open(self) -> aiosqlite.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # No aiosqlite worker thread for a file sqlite cannot open
        await asyncio.get_running_loop().run_in_executor(None, self._check_openable)
        db = await aiosqlite.connect(str(self.path), isolation_level=None)
        try:
            await self._migrate(db)
        except BaseException:
            await db.close()
            raise
        self._db = db
        return db

    async def _migrate(self, db: aiosqlite.Connection) -> None:
        cursor = await db.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        await cursor.close()
        version = int(row[0]) if row else 0
        if version >= SCHEMA_VERSION:
            return

        await db.execute("BEGIN IMMEDIATE")
        try:
            for step in MIGRATIONS[version:SCHEMA_VERSION]:
                await step(db)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await db.execute("COMMIT")
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        self.logger.info(f"Cache schema upgraded from v{version} to v{SCHEMA_VERSION}")

    async def _reset_connection(self) -> None:
        db, self._db = self._db, None
        self._connect_task = None
        if db is not None:
            try:
                await db.close()
            except (sqlite3.Error, ValueError) as e:
                self.logger.debug(f"Ignoring error while closing cache connection: {e}")

    async def _run(self, operation: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        """
        Run ``operation`` alone on the connection.

        Operations are serialized so a transaction never opens inside
        another one. An invalidated connection is reopened and the
        operation retried once.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            return await self._run_unlocked(operation)

    async def _run_unlocked(self, operation: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        db = await self._get_db()
        try:
            return await operation(db)
        except (sqlite3.Error, ValueError) as e:
            if not _is_connection_invalidated(e):
                raise
            self.logger.info(f"Cache connection lost, retrying once: {e}")
            await self._reset_connection()
            db = await self._get_db()
            return await operation(db)

    async def _transaction(self, db: aiosqlite.Connection, body: Callable[[], Awaitable[T]]) -> T:
        await db.execute("BEGIN IMMEDIATE")
        try:
            result = await body()
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")
        return result

    async def close(self) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            await self._reset_connection()

    async def __aenter__(self) -> "CacheService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def _load_analysis_payload(self, db: aiosqlite.Connection, key: str) -> Dict[str, Any]:
        cursor = await db.execute("SELECT payload FROM analysis WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return {'results': {}, 'history': []}
        return json.loads(row[0])

    async def get_analysis(self, fingerprint: str, sensitivity: float = 50) -> Optional[AnalysisResult]:
        """Cached analysis at ``sensitivity`` with the shared bass history, or None."""
        key = fingerprint + ANALYSIS_SUFFIX
        try:
            payload = await self._run(lambda db: self._load_analysis_payload(db, key))
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Analysis lookup failed for {key}: {e}")
            self._misses += 1
            return None

        data = payload.get('results', {}).get(_sensitivity_key(sensitivity))
        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        data = dict(data, bass_history=payload.get('history', []), from_cache=True)
        return AnalysisResult.from_dict(data)

    async def save_analysis(self, fingerprint: str, result: AnalysisResult) -> Tuple[BassHistoryEntry, ...]:
        """
        Store ``result`` under its sensitivity and append to the bass history.

        Returns:
            The updated history (newest first), or the result's own history
            when storage failed
        """
        key = fingerprint + ANALYSIS_SUFFIX
        entry = BassHistoryEntry(
            sensitivity=result.bass_sensitivity,
            frequency=result.bass_root_hz,
            timestamp=self._clock(),
        )

        async def operation(db: aiosqlite.Connection) -> Tuple[BassHistoryEntry, ...]:
            async def body() -> Tuple[BassHistoryEntry, ...]:
                payload = await self._load_analysis_payload(db, key)
                stored = result.to_dict()
                stored.pop('bass_history', None)
                stored.pop('from_cache', None)
                payload.setdefault('results', {})[_sensitivity_key(result.sensitivity)] = stored
                history = merge_bass_history(
                    [BassHistoryEntry.from_dict(e) for e in payload.get('history', [])], entry
                )
                payload['history'] = [e.to_dict() for e in history]
                await db.execute(
                    "INSERT OR REPLACE INTO analysis (key, payload) VALUES (?, ?)",
                    (key, json.dumps(payload)),
                )
                return history

            return await self._transaction(db, body)

        try:
            return await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Analysis save failed for {key}: {e}")
            return merge_bass_history(list(result.bass_history), entry)

    # ------------------------------------------------------------------
    # Decoded buffers
    # ------------------------------------------------------------------

    async def get_buffer(self, fingerprint: str, name: Optional[str] = None) -> Optional[AudioSource]:
        """Cached decoded audio, refreshing its access time; None on miss."""
        key = fingerprint + BUFFER_SUFFIX

        async def operation(db: aiosqlite.Connection) -> Optional[Tuple[Any, ...]]:
            async def body() -> Optional[Tuple[Any, ...]]:
                cursor = await db.execute(
                    "SELECT sample_rate, n_channels, n_frames, data FROM audio_buffers WHERE key = ?",
                    (key,),
                )
                row = await cursor.fetchone()
                await cursor.close()
                if row is not None:
                    await db.execute(
                        "UPDATE audio_buffers SET last_access = ? WHERE key = ?",
                        (self._clock(), key),
                    )
                return row

            return await self._transaction(db, body)

        try:
            row = await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Buffer lookup failed for {key}: {e}")
            self._misses += 1
            return None

        if row is None:
            self._misses += 1
            return None
        sample_rate, n_channels, n_frames, blob = row
        channels = np.frombuffer(blob, dtype=np.float32).reshape(n_channels, n_frames)
        self._hits += 1
        self.logger.debug(f"Cache hit: {key}")
        return AudioSource(channels.copy(), int(sample_rate), name=name or fingerprint, file_size=0)

    async def save_buffer(self, fingerprint: str, source: AudioSource) -> bool:
        """
        Cache decoded audio, evicting least recently used buffers first.

        Eviction and insert share one transaction: entries are walked
        oldest first and removed while the count would reach the cap or
        the incoming buffer would not fit. A buffer larger than the whole
        byte cap is not stored.

        Returns:
            True if the buffer was stored
        """
        key = fingerprint + BUFFER_SUFFIX
        data = np.ascontiguousarray(source.channels, dtype=np.float32)
        incoming = int(data.nbytes)
        if incoming > self.max_bytes:
            self.logger.info(f"Buffer {key} ({incoming} bytes) exceeds cache limit, not cached")
            return False

        async def operation(db: aiosqlite.Connection) -> int:
            async def body() -> int:
                cursor = await db.execute(
                    "SELECT key, size_bytes FROM audio_buffers WHERE key != ? "
                    "ORDER BY last_access ASC, rowid ASC",
                    (key,),
                )
                items = await cursor.fetchall()
                await cursor.close()

                total = sum(size for _, size in items)
                count = len(items)
                evicted = 0
                for item_key, size in items:
                    if count >= self.max_entries or total + incoming > self.max_bytes:
                        await db.execute("DELETE FROM audio_buffers WHERE key = ?", (item_key,))
                        total -= size
                        count -= 1
                        evicted += 1
                    else:
                        break

                await db.execute(
                    "INSERT OR REPLACE INTO audio_buffers "
                    "(key, sample_rate, n_channels, n_frames, size_bytes, data, last_access) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (key, source.sample_rate, source.n_channels, source.n_frames,
                     incoming, data.tobytes(), self._clock()),
                )
                return evicted

            return await self._transaction(db, body)

        try:
            evicted = await self._run(operation)
        except sqlite3.OperationalError as e:
            if "full" in str(e).lower():
                self.logger.warning("Cache storage full, clearing buffers")
                await self._clear_buffers_quietly()
            else:
                self.logger.warning(f"Buffer save failed for {key}: {e}")
            return False
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Buffer save failed for {key}: {e}")
            return False

        if evicted:
            self.logger.debug(f"Evicted {evicted} buffer(s) to fit {key}")
        return True

    async def _clear_buffers_quietly(self) -> None:
        try:
            await self._run(lambda db: db.execute("DELETE FROM audio_buffers"))
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Clearing buffers failed: {e}")

    async def buffer_usage(self) -> Tuple[int, int]:
        """(entry count, total bytes) of the buffer store; (0, 0) when unavailable."""
        async def operation(db: aiosqlite.Connection) -> Tuple[int, int]:
            cursor = await db.execute("SELECT COUNT(*), COALESCE(SUM(size_bytes), 0) FROM audio_buffers")
            row = await cursor.fetchone()
            await cursor.close()
            return int(row[0]), int(row[1])

        try:
            return await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Buffer usage query failed: {e}")
            return 0, 0

    async def buffer_keys(self) -> List[str]:
        """Fingerprints of cached buffers, least recently used first."""
        async def operation(db: aiosqlite.Connection) -> List[str]:
            cursor = await db.execute("SELECT key FROM audio_buffers ORDER BY last_access ASC, rowid ASC")
            rows = await cursor.fetchall()
            await cursor.close()
            return [row[0][:-len(BUFFER_SUFFIX)] for row in rows]

        try:
            return await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Buffer listing failed: {e}")
            return []

    # ------------------------------------------------------------------
    # Presets
    # ------------------------------------------------------------------

    async def get_all_presets(self) -> List[Preset]:
        """All presets, factory first then newest; factory defaults if storage fails."""
        async def operation(db: aiosqlite.Connection) -> List[Preset]:
            cursor = await db.execute("SELECT id, name, is_factory, created_at, data FROM presets")
            rows = await cursor.fetchall()
            await cursor.close()
            return [_preset_from_row(row) for row in rows]

        try:
            presets = await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Preset load failed, using factory presets: {e}")
            return list(FACTORY_PRESETS)
        if not presets:
            return list(FACTORY_PRESETS)
        return sort_presets(presets)

    async def save_preset(self, preset: Preset) -> bool:
        if preset.is_factory:
            self.logger.warning(f"Refusing to overwrite factory preset {preset.id}")
            return False

        async def operation(db: aiosqlite.Connection) -> None:
            await db.execute(
                "INSERT OR REPLACE INTO presets (id, name, is_factory, created_at, data) "
                "VALUES (?, ?, ?, ?, ?)",
                _preset_row(preset),
            )

        try:
            await self._run(operation)
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Preset save failed for {preset.id}: {e}")
            return False
        return True

    async def delete_preset(self, preset_id: str) -> bool:
        """Delete a user preset; factory presets are read-only."""
        async def operation(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "DELETE FROM presets WHERE id = ? AND is_factory = 0", (preset_id,)
            )
            count = cursor.rowcount
            await cursor.close()
            return count

        try:
            return await self._run(operation) > 0
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Preset delete failed for {preset_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def clear(self) -> None:
        """Drop cached buffers and analysis; presets are kept."""
        async def operation(db: aiosqlite.Connection) -> None:
            async def body() -> None:
                await db.execute("DELETE FROM audio_buffers")
                await db.execute("DELETE FROM analysis")

            await self._transaction(db, body)

        try:
            await self._run(operation)
            self.logger.info("Cache cleared")
        except (CacheError, sqlite3.Error, ValueError, OSError) as e:
            self.logger.warning(f"Cache clear failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            'hits': self._hits,
            'misses': self._misses,
            'hit_ratio': self._hits / total if total > 0 else 0.0,
            'max_entries': self.max_entries,
            'max_bytes': self.max_bytes,
            'disabled': self._disabled,
            'path': str(self.path),
        }


def create_cache_service(config: Optional[Dict[str, Any]] = None) -> Optional[CacheService]:
    """
    Factory function to create a CacheService from the ``cache`` config section.

    Returns:
        CacheService, or None when caching is disabled
    """
    if config is None:
        config = {}
    if not config.get('enabled', True):
        return None
    return CacheService(
        path=config.get('path', '~/.zentuner/cache.sqlite3'),
        max_entries=config.get('max_entries', MAX_CACHED_TRACKS),
        max_bytes=config.get('max_bytes', MAX_CACHE_SIZE_BYTES),
    )
