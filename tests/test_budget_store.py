"""Tests for the rate-limit budget store."""

import pytest

from helpers import FakeClock
from modelgate.budget_store import RateLimitBudgetStore, parse_reset_ms
from modelgate.diagnostics import EventLog
from modelgate.schemas import PersistStatus
from modelgate.storage import InMemoryKeyValueStore, NullKeyValueStore


HEADERS = {
    "x-ratelimit-remaining-requests": "99",
    "X-RateLimit-Remaining-Tokens": "90000",
    "x-ratelimit-limit-requests": "100",
    "x-ratelimit-limit-tokens": "100000",
    "x-ratelimit-reset-requests": "6m0s",
    "x-ratelimit-reset-tokens": "1s",
}


def test_parse_reset_ms():
    """Reset headers accept durations, seconds and milliseconds."""
    assert parse_reset_ms("6m0s") == 360000
    assert parse_reset_ms("2") == 2000
    assert parse_reset_ms(1500) == 1500
    assert parse_reset_ms("") is None
    assert parse_reset_ms("soon") is None


class TestHeaders:
    """Test folding response headers into the budget."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = EventLog(enable_logging=False, clock=self.clock)
        self.store = RateLimitBudgetStore(InMemoryKeyValueStore(), events=self.events, clock=self.clock)

    @pytest.mark.asyncio
    async def test_update_from_headers(self):
        """Remaining, limits and the earliest reset are recorded."""
        result = await self.store.update_from_headers("openai", "gpt-5-mini", HEADERS)
        assert result.persisted

        snap = await self.store.get_snapshot("openai")
        assert snap.requests_remaining == 99
        assert snap.tokens_remaining == 90000
        assert snap.requests_limit == 100
        assert snap.reset_at == self.clock.now + 1000

    @pytest.mark.asyncio
    async def test_per_model_figures(self):
        """A model with its own headers reads its own figures."""
        await self.store.update_from_headers("openai", "gpt-5", HEADERS)
        await self.store.update_from_headers("openai", "gpt-5-mini", {"x-ratelimit-remaining-requests": "5"})

        assert (await self.store.get_snapshot("openai", "gpt-5-mini")).requests_remaining == 5
        assert (await self.store.get_snapshot("openai", "gpt-5")).requests_remaining == 99
        # provider-wide keeps the latest value, other fields untouched
        glob = await self.store.get_snapshot("openai")
        assert glob.requests_remaining == 5
        assert glob.tokens_remaining == 90000

    @pytest.mark.asyncio
    async def test_no_headers_is_skipped(self):
        """Nothing to record means no write."""
        result = await self.store.update_from_headers("openai", None, {"content-type": "application/json"})
        assert result.status == PersistStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_availability_fractions(self):
        """Fractions are remaining over limit."""
        await self.store.update_from_headers("openai", None, HEADERS)
        availability = await self.store.get_availability("openai")
        assert availability.rpm_fraction == pytest.approx(0.99)
        assert availability.tpm_fraction == pytest.approx(0.9)
        assert availability.cooldown_until_ts is None

    @pytest.mark.asyncio
    async def test_unknown_budget(self):
        """Without headers everything is unknown, not zero."""
        availability = await self.store.get_availability("openai")
        assert availability.rpm_remaining is None
        assert availability.rpm_fraction is None


class TestCooldown:
    """Test 429 cooldowns."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = EventLog(enable_logging=False, clock=self.clock)
        self.store = RateLimitBudgetStore(InMemoryKeyValueStore(), events=self.events, clock=self.clock)

    @pytest.mark.asyncio
    async def test_explicit_retry_after(self):
        """The explicit wait sets the cooldown and zeroes the budget."""
        await self.store.update_from_headers("openai", None, HEADERS)
        await self.store.on_too_many_requests("openai", "gpt-5", retry_after_ms=2000)

        assert await self.store.cooldown_remaining_ms("openai") == 2000
        snap = await self.store.get_snapshot("openai")
        assert snap.requests_remaining == 0
        assert snap.tokens_remaining == 0
        assert self.events.find("budget.cooldown")

    @pytest.mark.asyncio
    async def test_cooldown_never_shrinks(self):
        """A shorter wait does not cut an existing cooldown."""
        await self.store.on_too_many_requests("openai", retry_after_ms=5000)
        self.clock.advance(1000)
        await self.store.on_too_many_requests("openai", retry_after_ms=500)
        assert await self.store.cooldown_remaining_ms("openai") == 4000

    @pytest.mark.asyncio
    async def test_cooldown_expires(self):
        """After the wait the provider is usable again."""
        await self.store.on_too_many_requests("openai", retry_after_ms=2000)
        self.clock.advance(2000)
        assert await self.store.cooldown_remaining_ms("openai") == 0

    @pytest.mark.asyncio
    async def test_wait_from_headers(self):
        """retry-after-ms, then retry-after seconds, then the default."""
        await self.store.on_too_many_requests("a", headers={"retry-after-ms": "1200"})
        await self.store.on_too_many_requests("b", headers={"Retry-After": "3"})
        await self.store.on_too_many_requests("c")

        assert await self.store.cooldown_remaining_ms("a") == 1200
        assert await self.store.cooldown_remaining_ms("b") == 3000
        assert await self.store.cooldown_remaining_ms("c") == 30000

    @pytest.mark.asyncio
    async def test_wait_is_clamped(self):
        """Waits are kept within [250ms, 15min]."""
        await self.store.on_too_many_requests("a", retry_after_ms=10)
        await self.store.on_too_many_requests("b", retry_after_ms=10 ** 9)
        assert await self.store.cooldown_remaining_ms("a") == 250
        assert await self.store.cooldown_remaining_ms("b") == 15 * 60 * 1000

    @pytest.mark.asyncio
    async def test_cooldown_is_per_provider(self):
        """One provider's cooldown does not affect another."""
        await self.store.on_too_many_requests("openai", retry_after_ms=2000)
        assert await self.store.cooldown_remaining_ms("other") == 0


class TestReservations:
    """Test budget reservations."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = RateLimitBudgetStore(InMemoryKeyValueStore(), clock=self.clock)

    @pytest.mark.asyncio
    async def test_reserve_until_exhausted(self):
        """Grants count against the remaining budget."""
        await self.store.update_from_headers("openai", None, {
            "x-ratelimit-remaining-requests": "2",
            "x-ratelimit-reset-requests": "10s",
        })
        first = await self.store.reserve("openai", job_id="j1")
        second = await self.store.reserve("openai", job_id="j2")
        third = await self.store.reserve("openai", job_id="j3")

        assert first.ok and second.ok
        assert first.grant_id.startswith("grant:openai:")
        assert not third.ok
        assert third.reason == "requests_limit"
        assert third.wait_ms == 10000

        assert await self.store.release(first.grant_id)
        assert (await self.store.reserve("openai", job_id="j3")).ok

    @pytest.mark.asyncio
    async def test_token_limit(self):
        """Token estimates are checked too."""
        await self.store.update_from_headers("openai", None, {"x-ratelimit-remaining-tokens": "100"})
        refused = await self.store.reserve("openai", est_tokens=500)
        assert not refused.ok
        assert refused.reason == "tokens_limit"

    @pytest.mark.asyncio
    async def test_refused_during_cooldown(self):
        """No grants while cooling down."""
        await self.store.on_too_many_requests("openai", retry_after_ms=3000)
        refused = await self.store.reserve("openai")
        assert not refused.ok
        assert refused.reason == "cooldown"
        assert refused.wait_ms == 3000

    @pytest.mark.asyncio
    async def test_grants_expire(self):
        """Expired grants stop counting."""
        await self.store.update_from_headers("openai", None, {"x-ratelimit-remaining-requests": "10"})
        await self.store.reserve("openai", lease_ms=10000)
        assert (await self.store.get_snapshot("openai")).requests_remaining == 9

        self.clock.advance(10001)
        snap = await self.store.get_snapshot("openai")
        assert snap.requests_remaining == 10
        assert snap.grants_count == 0

    @pytest.mark.asyncio
    async def test_budget_restored_after_reset(self):
        """Once the reset time passes the exhausted budget reads as the full limit."""
        await self.store.update_from_headers("openai", "gpt-5", {
            "x-ratelimit-remaining-requests": "0",
            "x-ratelimit-limit-requests": "100",
            "x-ratelimit-reset-requests": "1s",
        })
        assert not (await self.store.reserve("openai", "gpt-5")).ok

        self.clock.advance(10 * 60 * 1000)
        assert (await self.store.get_snapshot("openai", "gpt-5")).requests_remaining == 100
        assert (await self.store.get_snapshot("openai")).requests_remaining == 100

        granted = await self.store.reserve("openai", "gpt-5", job_id="j1")
        assert granted.ok
        assert (await self.store.get_snapshot("openai", "gpt-5")).requests_remaining == 99

    @pytest.mark.asyncio
    async def test_budget_unknown_after_reset_without_limit(self):
        """Without a known limit an elapsed window reads as unknown and never refuses."""
        await self.store.update_from_headers("openai", None, {
            "x-ratelimit-remaining-requests": "0",
            "x-ratelimit-reset-requests": "1s",
        })
        self.clock.advance(1000)

        assert (await self.store.get_snapshot("openai")).requests_remaining is None
        assert (await self.store.reserve("openai")).ok

    @pytest.mark.asyncio
    async def test_refusal_always_waits(self):
        """A refusal never reports a zero wait."""
        await self.store.update_from_headers("openai", None, {
            "x-ratelimit-remaining-tokens": "100",
            "x-ratelimit-limit-tokens": "1000",
            "x-ratelimit-reset-tokens": "1s",
        })
        refused = await self.store.reserve("openai", est_tokens=500)
        assert not refused.ok
        assert refused.wait_ms == 1000

        self.clock.advance(1000)
        refused = await self.store.reserve("openai", est_tokens=5000)
        assert not refused.ok
        assert refused.wait_ms > 0

    @pytest.mark.asyncio
    async def test_unknown_budget_never_refuses(self):
        """Without headers a reservation is granted."""
        assert (await self.store.reserve("openai", est_tokens=10 ** 6)).ok

    @pytest.mark.asyncio
    async def test_release_unknown(self):
        """Releasing an unknown grant returns False."""
        assert await self.store.release("grant:nope") is False


@pytest.mark.asyncio
async def test_write_failure_degrades():
    """Persistence failures come back as warnings, not exceptions."""
    events = EventLog(enable_logging=False)
    store = RateLimitBudgetStore(NullKeyValueStore(), events=events)
    result = await store.update_from_headers("openai", None, HEADERS)
    assert result.degraded
    assert events.find("budget.write_failed")
