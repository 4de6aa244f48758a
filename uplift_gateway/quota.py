"""Per-user, per-operation rate limiting over a rolling window.

Each (user, operation) pair owns a list of recent request timestamps. A check
prunes timestamps older than the window, rejects if the remaining count has
reached the operation's limit, and otherwise appends ``now``. The whole
read-prune-append sequence must be atomic at the store level: two concurrent
checks that both read "9 of 10" must not both be admitted.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Protocol, Sequence

from google.cloud import firestore

from uplift_gateway.config import RateLimitRule
from uplift_gateway.errors import QuotaExceededError

Clock = Callable[[], float]


@dataclass
class WindowDecision:
    """Outcome of evaluating one rate-limit window."""

    allowed: bool
    timestamps: List[float]
    wait_seconds: int = 0
    reason: str = ""


def evaluate_window(
    timestamps: Sequence[float], now: float, rule: RateLimitRule
) -> WindowDecision:
    """Apply the rolling-window algorithm to a stored timestamp list.

    Args:
        timestamps: Previously admitted request times (seconds), oldest first.
        now: Current time in seconds.
        rule: The operation's base/burst limits and window length.

    Returns:
        A WindowDecision. When allowed, ``timestamps`` is the list to persist
        (pruned, with ``now`` appended, at most ``rule.burst`` long). When
        rejected, ``timestamps`` is the pruned list and nothing should be
        written.
    """
    recent = sorted(t for t in timestamps if now - t < rule.window_seconds)

    if len(recent) >= rule.burst or len(recent) >= rule.base:
        elapsed = now - recent[0]
        wait = max(1, math.ceil(rule.window_seconds - elapsed))
        kind = "burst" if len(recent) >= rule.burst else "rate"
        return WindowDecision(
            allowed=False,
            timestamps=recent,
            wait_seconds=wait,
            reason="{} limit exceeded ({} in {:g}s)".format(
                kind, len(recent), rule.window_seconds
            ),
        )

    recent.append(now)
    return WindowDecision(allowed=True, timestamps=recent[-rule.burst:])


def window_key(user_id: str, operation: str) -> str:
    return "{}_{}".format(operation, user_id)


class QuotaStore(Protocol):
    async def check(self, user_id: str, operation: str) -> None:
        """Admit one request or raise QuotaExceededError."""
        ...


def _rule(rules: Mapping[str, RateLimitRule], operation: str) -> RateLimitRule:
    rule = rules.get(operation) or rules.get("default")
    if rule is None:
        raise KeyError("No rate limit rule for operation '{}'".format(operation))
    return rule


@dataclass
class InMemoryQuotaStore:
    """Process-local quota store.

    Suitable for tests and single-process development only; windows are not
    shared across instances.
    """

    rules: Mapping[str, RateLimitRule]
    clock: Clock = time.time
    _windows: Dict[str, List[float]] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def check(self, user_id: str, operation: str) -> None:
        """Admit one request for (user_id, operation).

        Raises:
            QuotaExceededError: If the window is full.
        """
        rule = _rule(self.rules, operation)
        key = window_key(user_id, operation)
        async with self._lock:
            decision = evaluate_window(self._windows.get(key, []), self.clock(), rule)
            if not decision.allowed:
                raise QuotaExceededError(decision.wait_seconds, detail=decision.reason)
            self._windows[key] = decision.timestamps

    def window(self, user_id: str, operation: str) -> List[float]:
        """Return a copy of the stored timestamps for a key."""
        return list(self._windows.get(window_key(user_id, operation), []))


class FirestoreQuotaStore:
    """Quota store whose windows live in Firestore documents.

    Each check runs inside a Firestore transaction, so concurrent checks for
    the same key on different instances are serialized by the database
    (conflicting transactions are retried by the client library).
    """

    def __init__(
        self,
        client: firestore.AsyncClient,
        rules: Mapping[str, RateLimitRule],
        collection: str = "rateLimits",
        clock: Clock = time.time,
    ) -> None:
        self._client = client
        self._rules = rules
        self._collection = collection
        self._clock = clock

    async def check(self, user_id: str, operation: str) -> None:
        rule = _rule(self._rules, operation)
        ref = self._client.collection(self._collection).document(
            window_key(user_id, operation)
        )
        clock = self._clock

        @firestore.async_transactional
        async def _check_and_append(transaction: firestore.AsyncTransaction) -> WindowDecision:
            snapshot = await ref.get(transaction=transaction)
            stored = (snapshot.to_dict() or {}) if snapshot.exists else {}
            decision = evaluate_window(stored.get("timestamps", []), clock(), rule)
            if decision.allowed:
                transaction.set(
                    ref,
                    {
                        "userId": user_id,
                        "operation": operation,
                        "timestamps": decision.timestamps,
                    },
                )
            return decision

        decision = await _check_and_append(self._client.transaction())
        if not decision.allowed:
            raise QuotaExceededError(decision.wait_seconds, detail=decision.reason)
