"""Tests for the rolling-window quota store."""

import asyncio

import pytest

from uplift_gateway.config import RateLimitRule
from uplift_gateway.errors import QuotaExceededError
from uplift_gateway.quota import FirestoreQuotaStore, InMemoryQuotaStore, evaluate_window

from conftest import FakeClock, FakeFirestoreClient

RULES = {
    "ai": RateLimitRule(base=3, burst=5, window_seconds=60),
    "default": RateLimitRule(base=2, burst=4, window_seconds=60),
}


class TestEvaluateWindow:
    def test_allows_and_appends(self) -> None:
        decision = evaluate_window([990.0], 1000.0, RULES["ai"])
        assert decision.allowed
        assert decision.timestamps == [990.0, 1000.0]

    def test_prunes_stale_entries(self) -> None:
        decision = evaluate_window([900.0, 939.9, 950.0], 1000.0, RULES["ai"])
        assert decision.allowed
        assert decision.timestamps == [950.0, 1000.0]

    def test_entry_exactly_one_window_old_is_stale(self) -> None:
        decision = evaluate_window([940.0, 950.0, 960.0], 1000.0, RULES["ai"])
        assert decision.allowed
        assert decision.timestamps == [950.0, 960.0, 1000.0]

    def test_rejects_at_base_limit_with_wait(self) -> None:
        decision = evaluate_window([960.0, 970.0, 980.0], 1000.0, RULES["ai"])
        assert not decision.allowed
        # oldest retained is 40s old, so 20s remain in its window
        assert decision.wait_seconds == 20
        assert "rate limit" in decision.reason

    def test_wait_rounds_up(self) -> None:
        decision = evaluate_window([960.5, 970.0, 980.0], 1000.0, RULES["ai"])
        assert decision.wait_seconds == 21

    def test_wait_is_at_least_one_second(self) -> None:
        decision = evaluate_window([940.01, 999.0, 999.5], 1000.0, RULES["ai"])
        assert not decision.allowed
        assert decision.wait_seconds == 1

    def test_burst_reason_when_window_is_full(self) -> None:
        decision = evaluate_window([995.0 + i * 0.1 for i in range(5)], 1000.0, RULES["ai"])
        assert not decision.allowed
        assert "burst" in decision.reason

    def test_persisted_window_never_exceeds_burst(self) -> None:
        rule = RateLimitRule(base=5, burst=5, window_seconds=60)
        timestamps = [999.0, 999.1, 999.2, 999.3]
        decision = evaluate_window(timestamps, 1000.0, rule)
        assert decision.allowed
        assert len(decision.timestamps) <= rule.burst


class TestInMemoryQuotaStore:
    @pytest.mark.asyncio
    async def test_allows_requests_within_limit(self) -> None:
        store = InMemoryQuotaStore(RULES, clock=FakeClock())
        for _ in range(3):
            await store.check("u1", "ai")

    @pytest.mark.asyncio
    async def test_rejects_over_limit(self) -> None:
        clock = FakeClock(1000.0)
        store = InMemoryQuotaStore(RULES, clock=clock)
        for _ in range(3):
            await store.check("u1", "ai")
            clock.advance(1)

        with pytest.raises(QuotaExceededError) as exc_info:
            await store.check("u1", "ai")
        assert exc_info.value.status == 429
        assert exc_info.value.wait_seconds == 57
        assert exc_info.value.to_body() == {"error": "Rate limit exceeded", "waitTime": 57}

    @pytest.mark.asyncio
    async def test_rejection_is_not_recorded(self) -> None:
        store = InMemoryQuotaStore(RULES, clock=FakeClock())
        for _ in range(3):
            await store.check("u1", "ai")
        for _ in range(5):
            with pytest.raises(QuotaExceededError):
                await store.check("u1", "ai")
        assert len(store.window("u1", "ai")) == 3

    @pytest.mark.asyncio
    async def test_separate_users_and_operations_are_independent(self) -> None:
        store = InMemoryQuotaStore(RULES, clock=FakeClock())
        for _ in range(3):
            await store.check("u1", "ai")
        await store.check("u2", "ai")
        await store.check("u1", "goals")

    @pytest.mark.asyncio
    async def test_unknown_operation_uses_default_rule(self) -> None:
        store = InMemoryQuotaStore(RULES, clock=FakeClock())
        await store.check("u1", "goals")
        await store.check("u1", "goals")
        with pytest.raises(QuotaExceededError):
            await store.check("u1", "goals")

    @pytest.mark.asyncio
    async def test_window_rolls(self) -> None:
        clock = FakeClock(1000.0)
        store = InMemoryQuotaStore(RULES, clock=clock)
        for _ in range(3):
            await store.check("u1", "ai")
        with pytest.raises(QuotaExceededError):
            await store.check("u1", "ai")

        clock.advance(61)
        await store.check("u1", "ai")

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_exceed_limit(self) -> None:
        store = InMemoryQuotaStore(RULES, clock=FakeClock())

        async def attempt() -> bool:
            try:
                await store.check("u1", "ai")
            except QuotaExceededError:
                return False
            return True

        results = await asyncio.gather(*(attempt() for _ in range(25)))
        assert sum(results) == 3


class TestFirestoreQuotaStore:
    def _store(self, client: FakeFirestoreClient, clock: FakeClock) -> FirestoreQuotaStore:
        return FirestoreQuotaStore(client, RULES, collection="rateLimits", clock=clock)

    @pytest.mark.asyncio
    async def test_first_request_creates_window(
        self, firestore_client: FakeFirestoreClient
    ) -> None:
        await self._store(firestore_client, FakeClock(1000.0)).check("u1", "ai")

        assert firestore_client.documents["rateLimits/ai_u1"] == {
            "userId": "u1",
            "operation": "ai",
            "timestamps": [1000.0],
        }

    @pytest.mark.asyncio
    async def test_window_is_read_inside_the_transaction(
        self, firestore_client: FakeFirestoreClient
    ) -> None:
        await self._store(firestore_client, FakeClock()).check("u1", "ai")

        [(path, transaction)] = firestore_client.reads
        assert path == "rateLimits/ai_u1"
        assert transaction is firestore_client.transactions[0]
        assert transaction.committed

    @pytest.mark.asyncio
    async def test_rejection_writes_nothing(
        self, firestore_client: FakeFirestoreClient
    ) -> None:
        stored = {"userId": "u1", "operation": "ai", "timestamps": [990.0, 995.0, 999.0]}
        firestore_client.documents["rateLimits/ai_u1"] = dict(stored)

        with pytest.raises(QuotaExceededError) as exc_info:
            await self._store(firestore_client, FakeClock(1000.0)).check("u1", "ai")

        assert exc_info.value.wait_seconds == 50
        assert firestore_client.writes == []
        assert firestore_client.documents["rateLimits/ai_u1"] == stored

    @pytest.mark.asyncio
    async def test_stale_entries_pruned_and_window_truncated_to_burst(
        self, firestore_client: FakeFirestoreClient
    ) -> None:
        rules = {"ai": RateLimitRule(base=3, burst=3, window_seconds=60)}
        firestore_client.documents["rateLimits/ai_u1"] = {
            "userId": "u1",
            "operation": "ai",
            "timestamps": [100.0, 200.0, 300.0, 990.0, 995.0],
        }
        store = FirestoreQuotaStore(firestore_client, rules, clock=FakeClock(1000.0))

        await store.check("u1", "ai")

        timestamps = firestore_client.documents["rateLimits/ai_u1"]["timestamps"]
        assert timestamps == [990.0, 995.0, 1000.0]
        assert len(timestamps) <= rules["ai"].burst

    @pytest.mark.asyncio
    async def test_operations_use_separate_documents(
        self, firestore_client: FakeFirestoreClient
    ) -> None:
        store = self._store(firestore_client, FakeClock())
        await store.check("u1", "ai")
        await store.check("u1", "goals")

        assert "rateLimits/ai_u1" in firestore_client.documents
        assert "rateLimits/goals_u1" in firestore_client.documents
