"""
Session management for the gateway.

Handles:
- Session keys derived from agent, channel, chat type and peer
- Per-agent session index (sessions.json) with atomic, locked writes
- Session reset (new session id, old transcript archived)
- JSONL transcripts beside the index
"""

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

# fcntl is Unix-only; on Windows use msvcrt for file locking
try:
    import fcntl
except ImportError:
    fcntl = None
    try:
        import msvcrt
    except ImportError:
        msvcrt = None

from agent.scope import normalize_agent_id
from gateway.config import atomic_write_json
from gateway.errors import StoreError
from oni_constants import get_state_dir

logger = logging.getLogger(__name__)

SESSIONS_FILENAME = "sessions.json"


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Session keys
# =============================================================================

def _key_part(value: Any) -> str:
    return str(value).strip().lower()


def build_session_key(
    agent_id: str,
    channel: str,
    chat_type: str = "direct",
    peer_id: Optional[str] = None,
    thread_id: Optional[str] = None,
    dm_scope: str = "main",
) -> str:
    """
    Build the session key for one conversation.

    Direct messages collapse according to ``dm_scope``:
      main              -> agent:<id>:main
      per-peer          -> agent:<id>:dm:<peer>
      per-channel-peer  -> agent:<id>:<channel>:dm:<peer>

    Groups and channels always get their own key, with an optional
    ``:thread:<tid>`` suffix.
    """
    agent = normalize_agent_id(agent_id)
    channel = _key_part(channel)

    if chat_type in ("group", "channel"):
        if not peer_id:
            raise ValueError(f"{chat_type} session key needs a peer id")
        key = f"agent:{agent}:{channel}:{chat_type}:{_key_part(peer_id)}"
        if thread_id:
            key += f":thread:{_key_part(thread_id)}"
        return key

    if dm_scope == "main" or not peer_id:
        return f"agent:{agent}:main"
    if dm_scope == "per-peer":
        return f"agent:{agent}:dm:{_key_part(peer_id)}"
    if dm_scope == "per-channel-peer":
        return f"agent:{agent}:{channel}:dm:{_key_part(peer_id)}"
    raise ValueError(f"unknown dm scope: {dm_scope}")


@dataclass
class ParsedSessionKey:
    agent_id: str
    rest: str


def parse_agent_session_key(key: Optional[str]) -> Optional[ParsedSessionKey]:
    """Split ``agent:<id>:<rest...>``; anything else returns None."""
    if not key:
        return None
    parts = str(key).strip().split(":")
    if len(parts) < 3 or parts[0] != "agent":
        return None
    agent_id = parts[1].strip()
    rest = ":".join(parts[2:])
    if not agent_id or not rest:
        return None
    return ParsedSessionKey(agent_id=agent_id.lower(), rest=rest)


# =============================================================================
# Records
# =============================================================================

@dataclass
class SessionRecord:
    """
    Entry in the session index.

    Maps a session key to its current session id, the model it last ran
    with and where it came from (for delivery back to the origin).
    """
    key: str
    session_id: str
    agent_id: str
    updated_at: int
    created_at: int
    model: Optional[str] = None
    channel: Optional[str] = None
    chat_type: Optional[str] = None
    display_name: Optional[str] = None
    transcript: Optional[str] = None
    origin: Optional[Dict[str, Any]] = None
    model_override: Optional[str] = None

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "sessionId": self.session_id,
            "agentId": self.agent_id,
            "updatedAt": self.updated_at,
            "createdAt": self.created_at,
            "model": self.model,
            "channel": self.channel,
            "chatType": self.chat_type,
            "displayName": self.display_name,
            "transcript": self.transcript,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }
        if self.origin:
            result["origin"] = self.origin
        if self.model_override:
            result["modelOverride"] = self.model_override
        return result

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "SessionRecord":
        parsed = parse_agent_session_key(key)
        updated_at = int(data.get("updatedAt") or 0)
        return cls(
            key=key,
            session_id=str(data.get("sessionId") or ""),
            agent_id=data.get("agentId") or (parsed.agent_id if parsed else ""),
            updated_at=updated_at,
            created_at=int(data.get("createdAt") or updated_at),
            model=data.get("model"),
            channel=data.get("channel"),
            chat_type=data.get("chatType"),
            display_name=data.get("displayName"),
            transcript=data.get("transcript"),
            origin=data.get("origin"),
            model_override=data.get("modelOverride"),
            input_tokens=int(data.get("inputTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
            total_tokens=int(data.get("totalTokens") or 0),
        )


def new_session_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def resolve_sessions_dir(agent_id: str, state_dir: Optional[Path] = None) -> Path:
    base = Path(state_dir) if state_dir else get_state_dir()
    return base / "agents" / normalize_agent_id(agent_id) / "sessions"


def resolve_store_path(agent_id: str, state_dir: Optional[Path] = None) -> Path:
    return resolve_sessions_dir(agent_id, state_dir) / SESSIONS_FILENAME


# =============================================================================
# Store
# =============================================================================

@contextmanager
def store_lock(path: Path) -> Iterator[None]:
    """Exclusive lock on ``<store>.lock`` for the duration of a write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    lock_fd = open(lock_path, "w")
    try:
        if fcntl:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
        elif msvcrt:
            msvcrt.locking(lock_fd.fileno(), msvcrt.LK_LOCK, 1)
        yield
    finally:
        if fcntl:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
        elif msvcrt:
            try:
                msvcrt.locking(lock_fd.fileno(), msvcrt.LK_UNLCK, 1)
            except OSError:
                pass
        lock_fd.close()


def read_store_file(path: Path) -> Dict[str, SessionRecord]:
    """Read one sessions.json; raises StoreError when it is not a JSON object."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise StoreError(f"Cannot read session store {path}: {e}", path=path) from e
    if not isinstance(data, dict):
        raise StoreError(f"Session store {path} does not hold a JSON object", path=path)
    records = {}
    for key, entry in data.items():
        if not isinstance(entry, dict):
            raise StoreError(f"Session store {path} has a malformed entry for {key}", path=path)
        records[key] = SessionRecord.from_dict(key, entry)
    return records


def dump_store_file(path: Path, records: Dict[str, SessionRecord]) -> None:
    """Write the index; the caller holds ``store_lock(path)``."""
    atomic_write_json(path, {key: record.to_dict() for key, record in records.items()})


def write_store_file(path: Path, records: Dict[str, SessionRecord]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with store_lock(path):
        dump_store_file(path, records)


def archive_transcript(path: Path, now: Optional[int] = None) -> Optional[Path]:
    """Rename a transcript to ``<name>.deleted.<timestamp>``; returns the new path."""
    if not path.exists():
        return None
    stamp = now if now is not None else now_ms()
    target = path.with_name(f"{path.name}.deleted.{stamp}")
    os.replace(path, target)
    return target


class SessionStore:
    """
    Manages the session index for one agent.

    Reads are served from a cache filled by ``load()``. Every mutation takes
    the store lock, re-reads the file, changes only its own key and writes
    the result back, so another process's edits (a cleanup run, a second
    gateway) are kept.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.sessions_dir = self.path.parent
        self._records: Dict[str, SessionRecord] = {}
        self._loaded = False

    @classmethod
    def for_agent(cls, agent_id: str, state_dir: Optional[Path] = None) -> "SessionStore":
        return cls(resolve_store_path(agent_id, state_dir))

    def load(self) -> Dict[str, SessionRecord]:
        self._records = read_store_file(self.path)
        self._loaded = True
        return dict(self._records)

    def load_tolerant(self) -> Dict[str, SessionRecord]:
        """Like ``load`` but a corrupt file reads as empty (with a warning)."""
        try:
            return self.load()
        except StoreError as e:
            logger.warning("%s; starting with an empty session index", e)
            self._records = {}
            self._loaded = True
            return {}

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load_tolerant()

    @contextmanager
    def _mutate(self) -> Iterator[Dict[str, SessionRecord]]:
        """Yield the on-disk records under the store lock; written back on exit."""
        with store_lock(self.path):
            try:
                records = read_store_file(self.path)
            except StoreError as e:
                logger.warning("%s; rewriting the session index", e)
                records = {}
            yield records
            dump_store_file(self.path, records)
        self._records = records
        self._loaded = True

    def save(self) -> None:
        """Overwrite the file with the cached index."""
        write_store_file(self.path, self._records)

    def records(self) -> Dict[str, SessionRecord]:
        self._ensure_loaded()
        return dict(self._records)

    def get(self, key: str) -> Optional[SessionRecord]:
        self._ensure_loaded()
        return self._records.get(key)

    def upsert(self, record: SessionRecord) -> SessionRecord:
        with self._mutate() as records:
            records[record.key] = record
        return record

    def touch(
        self,
        key: str,
        model: Optional[str] = None,
        channel: Optional[str] = None,
        chat_type: Optional[str] = None,
        display_name: Optional[str] = None,
        origin: Optional[Dict[str, Any]] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> SessionRecord:
        """Get or create the record for ``key`` and bump ``updated_at``."""
        with self._mutate() as records:
            ts = now_ms()
            record = records.get(key)
            if record is None:
                parsed = parse_agent_session_key(key)
                session_id = new_session_id()
                record = SessionRecord(
                    key=key,
                    session_id=session_id,
                    agent_id=parsed.agent_id if parsed else "",
                    updated_at=ts,
                    created_at=ts,
                    transcript=f"{session_id}.jsonl",
                )
                logger.debug("New session %s for %s", session_id, key)
            record.updated_at = max(ts, record.updated_at)
            if model:
                record.model = model
            if channel:
                record.channel = channel
            if chat_type:
                record.chat_type = chat_type
            if display_name:
                record.display_name = display_name
            if origin:
                record.origin = origin
            record.input_tokens += input_tokens
            record.output_tokens += output_tokens
            record.total_tokens = record.input_tokens + record.output_tokens
            records[key] = record
        return record

    def reset(self, key: str) -> Optional[SessionRecord]:
        """Force a new session id for ``key``; the old transcript is archived."""
        with self._mutate() as records:
            old = records.get(key)
            if old is None:
                return None
            archive_transcript(self.get_transcript_path(old))

            ts = now_ms()
            session_id = new_session_id()
            record = SessionRecord(
                key=key,
                session_id=session_id,
                agent_id=old.agent_id,
                updated_at=ts,
                created_at=ts,
                model=old.model,
                channel=old.channel,
                chat_type=old.chat_type,
                display_name=old.display_name,
                transcript=f"{session_id}.jsonl",
                origin=old.origin,
            )
            records[key] = record
        logger.info("Reset session %s (%s -> %s)", key, old.session_id, session_id)
        return record

    def delete(self, key: str, archive: bool = True) -> bool:
        with self._mutate() as records:
            record = records.pop(key, None)
            if record is None:
                return False
            if archive:
                archive_transcript(self.get_transcript_path(record))
        return True

    def list(self, active_minutes: Optional[int] = None, limit: Optional[int] = None) -> List[SessionRecord]:
        """List sessions newest first, optionally filtered by activity."""
        self._ensure_loaded()
        records = list(self._records.values())
        if active_minutes is not None:
            cutoff = now_ms() - active_minutes * 60 * 1000
            records = [r for r in records if r.updated_at >= cutoff]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        if limit is not None:
            records = records[:limit]
        return records

    # -------------------------------------------------------------------------
    # Transcripts
    # -------------------------------------------------------------------------

    def get_transcript_path(self, record: SessionRecord) -> Path:
        return self.sessions_dir / (record.transcript or f"{record.session_id}.jsonl")

    def append_to_transcript(self, record: SessionRecord, message: Dict[str, Any]) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        entry = dict(message)
        entry.setdefault("ts", now_ms())
        with open(self.get_transcript_path(record), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def load_transcript(self, record: SessionRecord) -> List[Dict[str, Any]]:
        path = self.get_transcript_path(record)
        if not path.exists():
            return []
        messages = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(json.loads(line))
                except ValueError:
                    logger.warning("Skipping malformed transcript line in %s", path)
        return messages

    def preview(self, key: str, limit: int = 10) -> Dict[str, Any]:
        """Last ``limit`` transcript messages for a session key."""
        record = self.get(key)
        if record is None:
            return {"key": key, "found": False, "messages": []}
        messages = self.load_transcript(record)
        return {
            "key": key,
            "found": True,
            "sessionId": record.session_id,
            "model": record.model,
            "updatedAt": record.updated_at,
            "total": len(messages),
            "messages": messages[-limit:] if limit > 0 else [],
        }
