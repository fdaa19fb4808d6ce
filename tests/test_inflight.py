"""Tests for the in-flight ledger and the sweeper."""

import pytest

from helpers import FakeClock
from modelgate.diagnostics import EventLog
from modelgate.inflight import (
    AdoptedResult,
    InflightLedger,
    InflightSweeper,
    InMemoryResultCache,
    LeaseConfig,
    StoredResultCache,
    deterministic_request_id,
)
from modelgate.schemas import InflightStatus
from modelgate.storage import InMemoryKeyValueStore


LEASE_MS = 2 * 60 * 1000


def test_deterministic_request_id():
    """Same inputs give the same id; missing parts become dashes."""
    assert deterministic_request_id("t", "j", "b", 1) == "req:t:j:b:1"
    assert deterministic_request_id("t", "j", "b", 1) == deterministic_request_id("t", "j", "b", 1)
    assert deterministic_request_id(None, "j") == "req:-:j:-:1"
    assert deterministic_request_id("t", "j", attempt=0) == "req:t:j:-:1"


class TestInflightLedger:
    """Test record lifecycle and leases."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = EventLog(enable_logging=False, clock=self.clock)
        self.ledger = InflightLedger(InMemoryKeyValueStore(), LeaseConfig(), events=self.events, clock=self.clock)

    @pytest.mark.asyncio
    async def test_begin_writes_running_record(self):
        """Begin stores a running record with a lease."""
        result = await self.ledger.begin("r1", tenant_key="tab-1", job_id="j1", model_spec="gpt-5:flex")
        assert result.persisted

        record = await self.ledger.get("r1")
        assert record.status == InflightStatus.RUNNING
        assert record.lease_until_ts == self.clock.now + LEASE_MS
        assert record.attempt == 1
        assert record.job_id == "j1"

    @pytest.mark.asyncio
    async def test_begin_requires_id(self):
        with pytest.raises(ValueError):
            await self.ledger.begin("")

    @pytest.mark.asyncio
    async def test_refresh_lease(self):
        """Refreshing moves the lease and the attempt forward."""
        await self.ledger.begin("r1", job_id="j1")
        self.clock.advance(60_000)
        await self.ledger.refresh_lease("r1", attempt=2, model_spec="gpt-5-mini:flex")

        record = await self.ledger.get("r1")
        assert record.attempt == 2
        assert record.model_spec == "gpt-5-mini:flex"
        assert record.lease_until_ts == self.clock.now + LEASE_MS

    @pytest.mark.asyncio
    async def test_complete_removes_record(self):
        await self.ledger.begin("r1")
        await self.ledger.complete("r1")
        assert await self.ledger.get("r1") is None

    @pytest.mark.asyncio
    async def test_fail_removes_record_and_emits(self):
        """Failure emits a terminal event, then drops the record."""
        await self.ledger.begin("r1")
        await self.ledger.fail("r1", {"kind": "SERVER"}, status=InflightStatus.FAILED)

        assert await self.ledger.get("r1") is None
        events = self.events.find("inflight.terminal")
        assert len(events) == 1
        assert events[0].level == "error"
        assert events[0].meta["error"] == {"kind": "SERVER"}

    @pytest.mark.asyncio
    async def test_cancel_is_a_warning(self):
        await self.ledger.begin("r1")
        await self.ledger.fail("r1", status=InflightStatus.CANCELLED)
        assert self.events.find("inflight.terminal")[0].level == "warn"

    @pytest.mark.asyncio
    async def test_list_expired(self):
        """Only records whose lease has ended are listed, sorted by id."""
        await self.ledger.begin("r2")
        await self.ledger.begin("r1")
        self.clock.advance(30_000)
        await self.ledger.begin("r3")

        assert await self.ledger.list_expired() == []

        self.clock.advance(LEASE_MS - 30_000)
        expired = await self.ledger.list_expired()
        assert [record.request_id for record in expired] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_claim(self):
        """Claims succeed only on expired leases, and extend them."""
        await self.ledger.begin("r1")
        assert await self.ledger.claim("r1") is None

        self.clock.advance(LEASE_MS)
        claimed = await self.ledger.claim("r1")
        assert claimed is not None
        assert claimed.lease_until_ts == self.clock.now + LEASE_MS

        # a second sweeper sees a live lease
        assert await self.ledger.claim("r1") is None
        assert await self.ledger.claim("missing") is None


class TestInflightSweeper:
    """Test crash recovery."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = EventLog(enable_logging=False, clock=self.clock)
        self.ledger = InflightLedger(InMemoryKeyValueStore(), LeaseConfig(max_attempts=3), events=self.events, clock=self.clock)
        self.cache = InMemoryResultCache()
        self.adopted = []
        self.requeued = []

        async def on_adopt(record, result):
            self.adopted.append((record.request_id, result.body))

        async def requeue(record):
            self.requeued.append(record.job_id)
            return True

        self.sweeper = InflightSweeper(
            self.ledger,
            adopter=self.cache,
            requeue=requeue,
            on_adopt=on_adopt,
            events=self.events,
            clock=self.clock,
        )

    @pytest.mark.asyncio
    async def test_live_records_untouched(self):
        await self.ledger.begin("r1", job_id="j1")
        report = await self.sweeper.sweep()
        assert report.total == 0
        assert await self.ledger.get("r1") is not None

    @pytest.mark.asyncio
    async def test_adopts_completed_result_once(self):
        """A finished result is delivered exactly once."""
        await self.ledger.begin("r1", job_id="j1", model_spec="gpt-5:flex")
        await self.cache.put("r1", AdoptedResult(body={"text": "hola"}))
        self.clock.advance(LEASE_MS + 1)

        report = await self.sweeper.sweep()
        assert report.adopted == ["r1"]
        assert self.adopted == [("r1", {"text": "hola"})]
        assert self.requeued == []
        assert await self.ledger.get("r1") is None

        again = await self.sweeper.sweep()
        assert again.total == 0
        assert len(self.adopted) == 1

    @pytest.mark.asyncio
    async def test_requeues_while_attempts_remain(self):
        await self.ledger.begin("r1", job_id="j1", attempt=1)
        self.clock.advance(LEASE_MS)

        report = await self.sweeper.sweep()
        assert report.requeued == ["r1"]
        assert self.requeued == ["j1"]
        assert await self.ledger.get("r1") is None

    @pytest.mark.asyncio
    async def test_fails_when_attempts_exhausted(self):
        """The last attempt fails with LEASE_EXPIRED instead of requeueing."""
        await self.ledger.begin("r1", job_id="j1", attempt=3)
        self.clock.advance(LEASE_MS)

        report = await self.sweeper.sweep()
        assert report.failed == ["r1"]
        assert self.requeued == []
        terminal = self.events.find("inflight.terminal")
        assert terminal[0].meta["error"]["kind"] == "LEASE_EXPIRED"

    @pytest.mark.asyncio
    async def test_fails_without_job(self):
        """Records with no job cannot be requeued."""
        await self.ledger.begin("r1")
        self.clock.advance(LEASE_MS)

        report = await self.sweeper.sweep()
        assert report.failed == ["r1"]

    @pytest.mark.asyncio
    async def test_report_to_dict(self):
        await self.ledger.begin("a", job_id="j1")
        await self.ledger.begin("b")
        self.clock.advance(LEASE_MS)

        report = await self.sweeper.sweep()
        assert report.to_dict() == {"adopted": [], "requeued": ["a"], "failed": ["b"], "skipped": []}

    @pytest.mark.asyncio
    async def test_adopted_result_is_dropped_from_cache(self):
        await self.ledger.begin("r1", job_id="j1")
        await self.cache.put("r1", AdoptedResult(body={"text": "hola"}))
        self.clock.advance(LEASE_MS)

        await self.sweeper.sweep()
        assert await self.cache.get_completed_result("r1") is None


class TestStoredResultCache:
    """Test the result cache kept in the key-value store."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryKeyValueStore()
        self.cache = StoredResultCache(self.store, clock=self.clock)

    @pytest.mark.asyncio
    async def test_put_get_pop(self):
        result = await self.cache.put("r1", AdoptedResult(status=201, headers={"a": "1"}, body={"text": "hola"}))
        assert result.persisted

        found = await self.cache.get_completed_result("r1")
        assert found == AdoptedResult(ok=True, status=201, headers={"a": "1"}, body={"text": "hola"})

        assert await self.cache.pop("r1") == found
        assert await self.cache.get_completed_result("r1") is None
        assert await self.cache.pop("r1") is None

    @pytest.mark.asyncio
    async def test_survives_a_new_process(self):
        """A second cache over the same store sees results written by the first."""
        await self.cache.put("r1", AdoptedResult(body={"text": "hola"}))

        other = StoredResultCache(self.store, clock=self.clock)
        found = await other.get_completed_result("r1")
        assert found.body == {"text": "hola"}

    @pytest.mark.asyncio
    async def test_sweeper_in_new_process_adopts(self):
        """A result cached before a crash is adopted by the next process."""
        ledger = InflightLedger(self.store, clock=self.clock)
        await ledger.begin("r1", job_id="j1", model_spec="gpt-5:flex")
        await self.cache.put("r1", AdoptedResult(body={"text": "hola"}))
        self.clock.advance(LEASE_MS + 1)

        adopted = []

        async def on_adopt(record, result):
            adopted.append((record.request_id, result.body))

        sweeper = InflightSweeper(
            InflightLedger(self.store, clock=self.clock),
            adopter=StoredResultCache(self.store, clock=self.clock),
            on_adopt=on_adopt,
            clock=self.clock,
        )
        report = await sweeper.sweep()

        assert report.adopted == ["r1"]
        assert adopted == [("r1", {"text": "hola"})]
        assert await self.cache.get_completed_result("r1") is None
