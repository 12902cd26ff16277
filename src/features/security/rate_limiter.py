"""Sliding-window abuse limiter for sensitive actions.

Each ``(action, client)`` pair owns a record in the client's session under the
``rate_limits`` key. A record moves Fresh -> Accumulating -> Blocked and back
to Fresh once its window (or its block) has run out.
"""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from src.config.settings import DEFAULT_RATE_LIMIT, RateLimitRule
from src.features.auth.exceptions import RateLimitedError
from src.features.session.store import SessionStore

logger = logging.getLogger(__name__)


class Attempt(BaseModel):
    """One gated attempt; ``success`` is flipped once the handler succeeds."""

    timestamp: int
    success: bool = False


class RateLimitRecord(BaseModel):
    """Throttling state for one ``(action, client)`` key."""

    attempts: list[Attempt] = Field(default_factory=list)
    first_attempt_time: int
    blocked_until: int | None = None
    total_blocks: int = 0

    @classmethod
    def fresh(cls, now: int, total_blocks: int = 0) -> "RateLimitRecord":
        return cls(
            attempts=[Attempt(timestamp=now)],
            first_attempt_time=now,
            total_blocks=total_blocks,
        )

    def is_blocked(self, now: int) -> bool:
        return self.blocked_until is not None and self.blocked_until > now

    def prune(self, now: int, window: int) -> None:
        self.attempts = [a for a in self.attempts if now - a.timestamp <= window]

    def failed_attempts(self) -> int:
        return sum(1 for a in self.attempts if not a.success)

    def block(self, now: int, duration: int) -> None:
        self.blocked_until = now + duration
        self.total_blocks += 1


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a limiter check."""

    allowed: bool
    retry_after: int = 0
    blocked_until: int | None = None

    @classmethod
    def allow(cls) -> "RateLimitDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, retry_after: int, blocked_until: int) -> "RateLimitDecision":
        return cls(allowed=False, retry_after=retry_after, blocked_until=blocked_until)


class RateLimiter:
    """Per-action, per-client failed-attempt limiter backed by a session store.

    Args:
        store: Session store holding the records
        rules: Action name -> limits; unknown actions use ``default_rule``
        default_rule: Limits for actions missing from ``rules``
        clock: Returns the current epoch time in seconds

    Records are read, modified and written back without isolation, so two
    simultaneous requests on one session may each see the pre-update state.

    """

    SESSION_KEY = "rate_limits"

    def __init__(
        self,
        store: SessionStore,
        rules: Mapping[str, RateLimitRule] | None = None,
        default_rule: RateLimitRule = DEFAULT_RATE_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.rules = dict(rules or {})
        self.default_rule = default_rule
        self.clock = clock

    def now(self) -> int:
        return int(self.clock())

    def rule_for(self, action: str) -> RateLimitRule:
        return self.rules.get(action, self.default_rule)

    @staticmethod
    def key(action: str, client_id: str) -> str:
        return f"{action}_{client_id}"

    async def _load(self, session_id: str) -> dict[str, Any]:
        return await self.store.get(session_id, self.SESSION_KEY) or {}

    async def _save(self, session_id: str, records: dict[str, Any], key: str, record: RateLimitRecord) -> None:
        records[key] = record.model_dump()
        await self.store.set(session_id, self.SESSION_KEY, records)

    async def get_record(self, action: str, client_id: str, session_id: str) -> RateLimitRecord | None:
        raw = (await self._load(session_id)).get(self.key(action, client_id))
        return RateLimitRecord.model_validate(raw) if raw is not None else None

    async def check(
        self, action: str, client_id: str, session_id: str, rule: RateLimitRule | None = None
    ) -> RateLimitDecision:
        """Register an attempt at ``action`` unless the client is blocked.

        Returns:
            ``allowed`` decision, or a denial carrying ``retry_after`` seconds
            and the ``blocked_until`` epoch second.

        """
        rule = rule or self.rule_for(action)
        now = self.now()
        key = self.key(action, client_id)
        records = await self._load(session_id)

        raw = records.get(key)
        if raw is None:
            await self._save(session_id, records, key, RateLimitRecord.fresh(now))
            return RateLimitDecision.allow()

        record = RateLimitRecord.model_validate(raw)

        if record.is_blocked(now):
            return RateLimitDecision.deny(record.blocked_until - now, record.blocked_until)

        if record.blocked_until is not None:
            logger.info(f"Block expired for {key}, starting a fresh window")
            await self._save(session_id, records, key, RateLimitRecord.fresh(now, record.total_blocks))
            return RateLimitDecision.allow()

        record.prune(now, rule.window)

        if now - record.first_attempt_time > rule.window:
            await self._save(session_id, records, key, RateLimitRecord.fresh(now, record.total_blocks))
            return RateLimitDecision.allow()

        if record.failed_attempts() >= rule.max_attempts:
            record.block(now, rule.block)
            await self._save(session_id, records, key, record)
            logger.warning(
                f"Rate limit exceeded for {key}: blocked for {rule.block}s (total blocks: {record.total_blocks})"
            )
            return RateLimitDecision.deny(rule.block, record.blocked_until)

        record.attempts.append(Attempt(timestamp=now))
        await self._save(session_id, records, key, record)
        return RateLimitDecision.allow()

    async def enforce(
        self, action: str, client_id: str, session_id: str, rule: RateLimitRule | None = None
    ) -> None:
        """Same as ``check`` but raises when the client is blocked.

        Raises:
            RateLimitedError: If the attempt is rejected

        """
        decision = await self.check(action, client_id, session_id, rule)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after, blocked_until=decision.blocked_until)

    async def record_success(self, action: str, client_id: str, session_id: str) -> None:
        """Mark the latest attempt successful and restart the failure baseline.

        An active block is left in place.
        """
        key = self.key(action, client_id)
        records = await self._load(session_id)
        raw = records.get(key)
        if raw is None:
            return

        record = RateLimitRecord.model_validate(raw)
        if record.attempts:
            record.attempts[-1].success = True
        record.first_attempt_time = self.now()
        await self._save(session_id, records, key, record)

    async def record_failure(
        self, action: str, client_id: str, session_id: str, rule: RateLimitRule | None = None
    ) -> RateLimitDecision:
        """Mark the latest attempt failed, blocking as soon as the limit is reached."""
        rule = rule or self.rule_for(action)
        now = self.now()
        key = self.key(action, client_id)
        records = await self._load(session_id)

        raw = records.get(key)
        record = RateLimitRecord.model_validate(raw) if raw is not None else RateLimitRecord.fresh(now)

        if record.is_blocked(now):
            return RateLimitDecision.deny(record.blocked_until - now, record.blocked_until)

        record.prune(now, rule.window)
        if record.attempts:
            record.attempts[-1].success = False
        else:
            record.attempts.append(Attempt(timestamp=now))

        decision = RateLimitDecision.allow()
        if record.failed_attempts() >= rule.max_attempts:
            record.block(now, rule.block)
            decision = RateLimitDecision.deny(rule.block, record.blocked_until)
            logger.warning(f"Too many failed attempts for {key}: blocked for {rule.block}s")

        await self._save(session_id, records, key, record)
        return decision
