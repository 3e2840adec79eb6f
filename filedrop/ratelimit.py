import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from filedrop.errors import LockedOutError, RateLimitedError
from filedrop.models import RateLimitEntry
from filedrop.repository import RateLimitRepository, utc_now

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(minutes=1)
RATE_LIMIT_MAX = 300
MAX_FAILED_ATTEMPTS = 10
BLOCK_DURATION = timedelta(minutes=5)


def client_ip(headers: Mapping[str, str], peer: str | None) -> str:
    forwarded = headers.get("x-forwarded-for", "")
    for candidate in forwarded.split(","):
        candidate = candidate.strip()
        if candidate:
            return candidate
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


class RateLimitGuard:
    def __init__(
        self,
        repository: RateLimitRepository,
        *,
        window: timedelta = RATE_LIMIT_WINDOW,
        max_requests: int = RATE_LIMIT_MAX,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
        block_duration: timedelta = BLOCK_DURATION,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.window = window
        self.max_requests = max_requests
        self.max_failed_attempts = max_failed_attempts
        self.block_duration = block_duration
        self.clock = clock

    def is_blocked(self, ip: str) -> bool:
        entry = self.repository.get(ip)
        if entry is None or entry.blocked_until is None:
            return False
        if self.clock() < entry.blocked_until:
            return True
        # The block has run out: forget it along with the failures that caused it.
        self.repository.clear_block(ip)
        logger.info("lockout expired: ip=%s", ip)
        return False

    def allow_request(self, ip: str) -> bool:
        now = self.clock()
        entry = self.repository.get(ip)
        if entry is None or now - entry.window_start > self.window:
            self.repository.start_window(ip, now)
            return True
        if entry.request_count >= self.max_requests:
            return False
        self.repository.increment_requests(ip)
        return True

    def check(self, ip: str) -> None:
        if self.is_blocked(ip):
            raise LockedOutError("too many failed attempts, try again later")
        if not self.allow_request(ip):
            logger.warning("rate limit exceeded: ip=%s", ip)
            raise RateLimitedError("rate limit exceeded")

    def record_failure(self, ip: str) -> RateLimitEntry:
        now = self.clock()
        entry = self.repository.record_failure(
            ip,
            now,
            max_attempts=self.max_failed_attempts,
            blocked_until=now + self.block_duration,
        )
        if entry.blocked_until is not None and entry.blocked_until > now:
            logger.warning("ip locked out: ip=%s failures=%d until=%s", ip, entry.failed_attempts, entry.blocked_until)
        return entry
