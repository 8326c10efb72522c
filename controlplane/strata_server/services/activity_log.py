"""
Audit (activity) log: recording, filtered reads and CSV export.

Entries are kept per process in memory. The CSV layout is fixed:

    time,level,account,event,entity,description
    "<ISO-8601 time>",<level>,<actor email>,<event>,<entity name>,"<description>"

Rows follow the order of the entries handed to ``write_activity_csv``. The
entity column names the entity of the event's prefix (``node.create`` ->
the entry's ``node`` entity); object entities are named by their key.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..store.data import StoreData

logger = logging.getLogger(__name__)

CSV_HEADER = "time,level,account,event,entity,description"
AUDIT_FILE_NAME = "audit.csv"
DEFAULT_READ_LIMIT = 100


@dataclass
class ActivityEntry:
    """One audit record.

    Attributes:
        event: Dotted event name, e.g. ``conf.create_system``
        system: Id of the system the event belongs to
        level: info, warning or alert
        actor: Id of the account that caused the event, if any
        desc: Description lines
        entities: Entity snapshots keyed by entity type (``node``, ``obj``, ...)
        time: Milliseconds since epoch
    """

    event: str
    system: str
    level: str = "info"
    actor: str | None = None
    desc: list[str] = field(default_factory=list)
    entities: dict[str, dict[str, Any]] = field(default_factory=dict)
    time: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.desc, str):
            self.desc = [self.desc]
        if not self.time:
            self.time = int(datetime.now(timezone.utc).timestamp() * 1000)

    @property
    def entity_type(self) -> str:
        return self.event.split(".")[0]

    @property
    def entity_name(self) -> str:
        entity = self.entities.get(self.entity_type)
        if not entity:
            return ""
        key = "key" if self.entity_type == "obj" else "name"
        return str(entity.get(key, ""))

    def to_dict(self, data: StoreData | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {
            "time": self.time,
            "level": self.level,
            "event": self.event,
            "desc": list(self.desc),
        }
        out.update(self.entities)
        if self.actor:
            account = data.get("accounts", self.actor) if data is not None else None
            out["actor"] = {"email": account["email"]} if account else {"id": self.actor}
        return out


@dataclass
class ActivityQuery:
    """Filter for ``ActivityLog.read``; unset fields do not filter."""

    event: str | None = None
    events: list[str] | None = None
    since: int | None = None
    till: int | None = None
    skip: int = 0
    limit: int | None = DEFAULT_READ_LIMIT

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ActivityQuery:
        return cls(
            event=params.get("event"),
            events=params.get("events"),
            since=params.get("since"),
            till=params.get("till"),
            skip=params.get("skip", 0),
            limit=params.get("limit", DEFAULT_READ_LIMIT),
        )

    def matches(self, entry: ActivityEntry) -> bool:
        if self.event is not None and entry.event != self.event:
            return False
        if self.events is not None and entry.event not in self.events:
            return False
        if self.since is not None and entry.time < self.since:
            return False
        if self.till is not None and entry.time > self.till:
            return False
        return True


class ActivityLog(Protocol):
    def record(self, entry: ActivityEntry) -> None: ...

    def read(self, system_id: str, query: ActivityQuery | None = None) -> list[ActivityEntry]: ...


class InMemoryActivityLog:
    """Process-local ActivityLog. Reads return newest first."""

    def __init__(self, max_entries: int = 10000) -> None:
        self.max_entries = max_entries
        self._entries: list[ActivityEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: ActivityEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self.max_entries:
                del self._entries[: len(self._entries) - self.max_entries]
        logger.info(
            "Activity recorded",
            extra={"event": entry.event, "system": entry.system, "level": entry.level},
        )

    def read(self, system_id: str, query: ActivityQuery | None = None) -> list[ActivityEntry]:
        query = query or ActivityQuery()
        with self._lock:
            matching = [e for e in self._entries if e.system == system_id and query.matches(e)]
        matching.sort(key=lambda e: e.time, reverse=True)
        end = None if query.limit is None else query.skip + query.limit
        return matching[query.skip:end]

    def __len__(self) -> int:
        return len(self._entries)


def _iso_time(ms: int) -> str:
    seconds, millis = divmod(ms, 1000)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def _quoted(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def format_activity_csv(entries: list[ActivityEntry], data: StoreData | None = None) -> str:
    """Render entries as CSV text (header first, no trailing newline)."""
    lines = [CSV_HEADER]
    for entry in entries:
        email = ""
        if entry.actor and data is not None:
            account = data.get("accounts", entry.actor)
            email = account["email"] if account else ""
        lines.append(
            ",".join(
                [
                    _quoted(_iso_time(entry.time)),
                    entry.level,
                    email,
                    entry.event,
                    entry.entity_name,
                    _quoted(" ".join(entry.desc)),
                ]
            )
        )
    return "\n".join(lines)


def write_activity_csv(
    entries: list[ActivityEntry], public_dir: str, data: StoreData | None = None
) -> str:
    """Write ``audit.csv`` under ``public_dir``.

    Returns:
        The public path of the file, ``/public/audit.csv``
    """
    os.makedirs(public_dir, exist_ok=True)
    path = os.path.join(public_dir, AUDIT_FILE_NAME)
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(format_activity_csv(entries, data))
    except OSError as e:
        logger.error(f"Failed to write audit csv file {path}: {e}")
        raise
    return f"/public/{AUDIT_FILE_NAME}"
