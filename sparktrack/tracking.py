import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

from sparktrack.geo import Locator
from sparktrack.store import ALL, UNIQUE, DedupPolicy, VisitRecord, VisitStore, format_ts, utc_now
from sparktrack.useragent import is_bot, parse_browser, parse_os

logger = logging.getLogger(__name__)


class MissingUserAgent(ValueError):
    pass


@dataclass
class TrackResult:
    message: str
    unique: bool | None = None

    def to_dict(self) -> dict:
        data = {"message": self.message}
        if self.unique is not None:
            data["unique"] = self.unique
        return data


BOT_RESULT_MESSAGE = "Bot detected, not tracked"


def client_ip_from_headers(headers, remote_addr: str | None = None) -> str:
    """
    Best guess at the visitor's address behind proxies.
    """
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return (headers.get("X-Real-IP")
            or headers.get("CF-Connecting-IP")
            or remote_addr
            or "Unknown")


# -----------------------------------------------------------------------------
# Ingestion
# -----------------------------------------------------------------------------
async def ingest_visit(store: VisitStore, locator: Locator, policy: DedupPolicy,
                       ip: str | None, user_agent: str | None, path: str | None = None,
                       captured_at: str | None = None) -> TrackResult:
    """
    Classify, locate and persist one visit.

    captured_at is the ISO timestamp of the original request; it defaults to
    now, so callers that queue work must take it before queueing.

    Raises MissingUserAgent for an empty user agent; everything else that
    goes wrong in here is the caller's 500.
    """
    if not user_agent:
        raise MissingUserAgent("No user agent")

    if is_bot(user_agent):
        return TrackResult(BOT_RESULT_MESSAGE)

    ip = (ip or "").strip() or "Unknown"
    location = await locator.resolve_location(ip)

    visit = VisitRecord(
        ip=ip,
        user_agent=user_agent,
        os=parse_os(user_agent),
        browser=parse_browser(user_agent),
        location=location,
        path=path or "/",
        timestamp=captured_at or format_ts(utc_now()),
        is_bot=False,
    )

    try:
        store.append_always(visit)
    except Exception:
        logger.exception("Error saving visit to %r collection", ALL)

    unique = store.append_if_unique(visit, policy)
    if unique:
        logger.info("Visit tracked: ip=%s path=%s os=%s location=%s", ip, visit.path, visit.os, location)
        return TrackResult("Visit tracked", True)

    logger.debug("Duplicate visit (not tracked): ip=%s path=%s", ip, visit.path)
    return TrackResult("Duplicate visit (not tracked)", False)


# -----------------------------------------------------------------------------
# Reporting
# -----------------------------------------------------------------------------
def load_report(store: VisitStore) -> dict:
    """
    Both collections, bots filtered out, newest last.
    """
    return {
        name: [r for r in store.load_collection(name) if not r.is_bot]
        for name in (UNIQUE, ALL)
    }


# -----------------------------------------------------------------------------
# Background tracking
# -----------------------------------------------------------------------------
class VisitTracker:
    """
    Fire-and-forget ingestion for the page request hook.

    Jobs run on a small thread pool, each in its own event loop. Failures go
    to this module's logger and never reach the request that triggered them.
    At most max_pending jobs wait at once; beyond that visits are dropped.
    """

    def __init__(self, store: VisitStore, locator: Locator, policy: DedupPolicy,
                 workers: int = 2, max_pending: int = 100):
        self.store = store
        self.locator = locator
        self.policy = policy
        self.max_pending = max(1, max_pending)
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="visit-tracker")
        self._pending = set()
        self._pending_lock = threading.Lock()

    def run(self, ip, user_agent, path, captured_at=None):
        try:
            return asyncio.run(
                ingest_visit(self.store, self.locator, self.policy, ip, user_agent, path, captured_at)
            )
        except MissingUserAgent:
            logger.debug("Skipping visit to %s without user agent", path)
        except Exception:
            logger.exception("Background visit tracking failed for %s", path)
        return None

    def submit(self, ip: str, user_agent: str, path: str, captured_at: str | None = None):
        """
        Queue one visit. Returns the future, or None when the backlog is full.
        """
        captured_at = captured_at or format_ts(utc_now())
        with self._pending_lock:
            if sum(1 for f in self._pending if not f.done()) >= self.max_pending:
                logger.warning("Visit tracker backlog full (%d), dropping visit to %s", self.max_pending, path)
                return None
            future = self._executor.submit(self.run, ip, user_agent, path, captured_at)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future):
        with self._pending_lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = None):
        """
        Block until every submitted job has finished. Used by tests and shutdown.
        """
        with self._pending_lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self):
        self._executor.shutdown(wait=True)
