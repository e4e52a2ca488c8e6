"""
Sliding-window rate limiter with lockout, persisted in the RateLimitAttempt table.

Only attempts inside `window` count toward the limit. Once the in-window
failures reach `max_attempts`, the caller is blocked until `block_duration`
has passed since its most recent failure. The block is measured from that
failure, not from the window, so a caller that kept failing stays locked
out after its failures have aged out of the counting window.

Successes are recorded but never clear earlier failures and never count
against the limit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from yardsync.models.sync import RateLimitAttempt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window: timedelta
    block_duration: timedelta

    @property
    def retention(self) -> timedelta:
        return max(self.window, self.block_duration)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining_attempts: Optional[int] = None
    reset_time: Optional[datetime] = None


DEFAULT_RULES: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(5, timedelta(minutes=15), timedelta(minutes=30)),
    "signup": RateLimitRule(3, timedelta(hours=1), timedelta(hours=1)),
    "password_reset": RateLimitRule(3, timedelta(hours=1), timedelta(hours=1)),
    "bulk_sync": RateLimitRule(3, timedelta(minutes=10), timedelta(minutes=30)),
}


class RateLimiter:
    """Per (action, identifier) attempt tracking backed by the database."""

    def __init__(
        self,
        engine,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self.rules = dict(DEFAULT_RULES if rules is None else rules)
        self._clock = clock

    def check(self, action: str, identifier: str) -> RateLimitStatus:
        rule = self._rule(action)
        now = self._clock()
        key = identifier.lower()

        with Session(self.engine) as s:
            self._prune_key(s, action, key, now - rule.retention)
            s.commit()
            failures = [
                a.attempted_at
                for a in s.exec(
                    select(RateLimitAttempt)
                    .where(RateLimitAttempt.action == action)
                    .where(RateLimitAttempt.identifier == key)
                    .where(RateLimitAttempt.success == False)  # noqa: E712
                    .order_by(RateLimitAttempt.attempted_at)
                ).all()
            ]

        if failures:
            last_failure = failures[-1]
            reset_time = last_failure + rule.block_duration
            if now < reset_time and _tripped(failures, rule):
                return RateLimitStatus(allowed=False, reset_time=reset_time)

        in_window = sum(1 for ts in failures if now - ts < rule.window)
        return RateLimitStatus(
            allowed=in_window < rule.max_attempts,
            remaining_attempts=max(0, rule.max_attempts - in_window),
        )

    def record(self, action: str, identifier: str, success: bool) -> None:
        rule = self._rule(action)
        now = self._clock()
        key = identifier.lower()

        with Session(self.engine) as s:
            s.add(RateLimitAttempt(
                action=action, identifier=key, attempted_at=now, success=success
            ))
            self._prune_key(s, action, key, now - rule.retention)
            s.commit()

        if not success:
            logger.info("Failed %s attempt recorded for %s", action, key)

    def prune(self) -> int:
        """Delete every attempt older than its action's retention. Returns rows removed."""
        now = self._clock()
        removed = 0
        with Session(self.engine) as s:
            for action, rule in self.rules.items():
                result = s.connection().execute(
                    delete(RateLimitAttempt)
                    .where(RateLimitAttempt.action == action)
                    .where(RateLimitAttempt.attempted_at < now - rule.retention)
                )
                removed += result.rowcount or 0
            s.commit()
        return removed

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _rule(self, action: str) -> RateLimitRule:
        try:
            return self.rules[action]
        except KeyError:
            raise ValueError(f"Unknown rate-limited action: {action!r}") from None

    @staticmethod
    def _prune_key(s: Session, action: str, key: str, cutoff: datetime) -> None:
        s.connection().execute(
            delete(RateLimitAttempt)
            .where(RateLimitAttempt.action == action)
            .where(RateLimitAttempt.identifier == key)
            .where(RateLimitAttempt.attempted_at < cutoff)
        )


def _tripped(failures: List[datetime], rule: RateLimitRule) -> bool:
    """True if the failures ending at the most recent one reached the limit within one window."""
    last = failures[-1]
    count = sum(1 for ts in failures if last - ts < rule.window)
    return count >= rule.max_attempts
