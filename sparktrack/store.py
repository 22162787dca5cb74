import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

ALL = "all"
UNIQUE = "unique"
COLLECTIONS = (ALL, UNIQUE)

# collection name -> backing file
FILENAMES = {
    UNIQUE: "visits.json",
    ALL: "all-visits.json",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    """
    2024-05-01T12:00:00.000Z
    """
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(value: str) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
def text(value, default: str) -> str:
    return str(value) if value not in (None, "") else default


def flag(value) -> bool:
    """
    Hand-edited files sometimes carry "false" or 0 instead of a JSON boolean.
    """
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


@dataclass(frozen=True)
class VisitRecord:
    ip: str
    user_agent: str
    os: str
    location: str
    path: str = "/"
    browser: str | None = None
    timestamp: str = field(default_factory=lambda: format_ts(utc_now()))
    is_bot: bool = False

    def to_dict(self) -> dict:
        data = {
            "ip": self.ip,
            "userAgent": self.user_agent,
            "os": self.os,
            "location": self.location,
            "timestamp": self.timestamp,
            "path": self.path,
            "isBot": self.is_bot,
        }
        if self.browser is not None:
            data["browser"] = self.browser
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VisitRecord":
        browser = data.get("browser")
        return cls(
            ip=text(data.get("ip"), "Unknown"),
            user_agent=text(data.get("userAgent"), ""),
            os=text(data.get("os"), "Unknown"),
            location=text(data.get("location"), "Unknown"),
            path=text(data.get("path"), "/"),
            browser=str(browser) if browser else None,
            timestamp=data.get("timestamp") if isinstance(data.get("timestamp"), str) else "",
            is_bot=flag(data.get("isBot", False)),
        )

    @property
    def captured_at(self) -> datetime | None:
        return parse_ts(self.timestamp)


@dataclass(frozen=True)
class DedupPolicy:
    """
    key: "ip" matches on address only, "ip+ua" on address and raw user agent.
    window: how far back a previous visit still makes this one a repeat.
    """
    key: str = "ip"
    window: timedelta = timedelta(hours=1)

    def __post_init__(self):
        if self.key not in ("ip", "ip+ua"):
            raise ValueError(f"unknown dedup key {self.key!r}")

    def same_visitor(self, a: VisitRecord, b: VisitRecord) -> bool:
        if a.ip != b.ip:
            return False
        return self.key == "ip" or a.user_agent == b.user_agent

    def is_repeat(self, record: VisitRecord, existing, now: datetime | None = None) -> bool:
        cutoff = (now or utc_now()) - self.window
        for old in existing:
            if not self.same_visitor(old, record):
                continue
            ts = old.captured_at
            if ts is not None and ts > cutoff:
                return True
        return False


# -----------------------------------------------------------------------------
# Stores
# -----------------------------------------------------------------------------
class VisitStore:
    """
    Two append-only collections of VisitRecord, "all" and "unique".
    Subclasses provide read() / write() of a whole collection.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def read(self, name: str) -> list:
        raise NotImplementedError

    def write(self, name: str, records: list) -> None:
        raise NotImplementedError

    def load_collection(self, name: str) -> list:
        check_name(name)
        return self.read(name)

    def append_always(self, record: VisitRecord) -> None:
        with self._lock:
            records = self.read(ALL)
            records.append(record)
            self.write(ALL, records)

    def append_if_unique(self, record: VisitRecord, policy: DedupPolicy | None = None) -> bool:
        policy = policy or DedupPolicy()
        with self._lock:
            records = self.read(UNIQUE)
            if policy.is_repeat(record, records, now=record.captured_at):
                return False
            records.append(record)
            self.write(UNIQUE, records)
        return True


def check_name(name: str):
    if name not in COLLECTIONS:
        raise ValueError(f"unknown collection {name!r}")


class MemoryStore(VisitStore):

    def __init__(self):
        super().__init__()
        self._collections = {name: [] for name in COLLECTIONS}

    def read(self, name):
        return list(self._collections[name])

    def write(self, name, records):
        self._collections[name] = list(records)


class JsonFileStore(VisitStore):
    """
    One indented JSON array per collection under data_dir.

    The lock only serializes writers inside this process; separate processes
    writing the same directory can still lose each other's appends.
    """

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = data_dir

    def path_for(self, name: str) -> str:
        check_name(name)
        return os.path.join(self.data_dir, FILENAMES[name])

    def read(self, name):
        path = self.path_for(name)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Error reading %s: %s", path, e)
            return []
        if not isinstance(payload, list):
            logger.error("Error reading %s: expected a JSON array", path)
            return []
        return [VisitRecord.from_dict(item) for item in payload if isinstance(item, dict)]

    def write(self, name, records):
        path = self.path_for(name)
        os.makedirs(self.data_dir, exist_ok=True)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([r.to_dict() for r in records], f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
