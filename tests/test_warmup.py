"""
Tests for switchboard/services/warmup.py - run state control, cycles, quotas, peers.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.services.warmup import (
    DailyQuota,
    LastRunClock,
    WarmupRunState,
    WarmupScheduler,
    WarmupState,
    pick_peer,
)
from switchboard.utils.errors import InvalidRequest, InvalidState


@pytest.fixture
def scheduler(settings, channel):
    return WarmupScheduler(
        state=WarmupState(),
        channel=channel,
        settings=settings,
        quota=DailyQuota(limit=settings.warmup_daily_limit_per_connection),
        last_run=LastRunClock(),
    )


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestPickPeer:
    def test_ring_over_sorted_selection(self):
        selection = {"c3", "c1", "c2"}
        assert pick_peer("c1", selection) == "c2"
        assert pick_peer("c2", selection) == "c3"
        assert pick_peer("c3", selection) == "c1"

    def test_alone_uses_fallback(self):
        assert pick_peer("c1", {"c1"}, "+5491100000000") == "+5491100000000"

    def test_alone_without_fallback(self):
        assert pick_peer("c1", {"c1"}) is None


class TestRunState:
    def test_initial_state_is_idle(self, scheduler):
        status = scheduler.status()
        assert status == {
            "run_state": WarmupRunState.IDLE,
            "selected_connection_ids": [],
            "last_cycle_at": None,
            "cycles_completed": 0,
            "profiles": {},
            "skip_counts": {},
        }

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, scheduler):
        with pytest.raises(InvalidState):
            scheduler.pause()

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, scheduler):
        with pytest.raises(InvalidState):
            scheduler.resume()

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, scheduler):
        scheduler.start()
        with pytest.raises(InvalidState):
            scheduler.start()
        scheduler.pause()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle(self, scheduler, channel):
        scheduler.set_selection(["c1", "c2"])
        scheduler.start()
        await _wait_for(lambda: scheduler.state.cycles_completed == 1)
        assert sorted(channel.contacts) == ["c1", "c2"]
        scheduler.pause()
        await scheduler.wait_idle()
        assert scheduler.status()["run_state"] == WarmupRunState.PAUSED


class TestPauseMidCycle:
    @pytest.mark.asyncio
    async def test_pause_lets_cycle_finish_and_blocks_next(self, scheduler, channel):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold(contact):
            entered.set()
            await release.wait()

        channel.on_send = hold
        scheduler.set_selection(["c1", "c2"])
        scheduler.start()
        await asyncio.wait_for(entered.wait(), timeout=2)

        scheduler.pause()
        release.set()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=2)

        assert scheduler.state.cycles_completed == 1
        assert len(channel.sent) == 2
        assert scheduler.status()["run_state"] == WarmupRunState.PAUSED

        await asyncio.sleep(0.05)
        assert scheduler.state.cycles_completed == 1

        scheduler.resume()
        await _wait_for(lambda: scheduler.state.cycles_completed == 2)
        scheduler.pause()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=2)


class TestCycles:
    @pytest.mark.asyncio
    async def test_empty_selection_while_running(self, scheduler, channel):
        scheduler.set_selection(["c1", "c2"])
        scheduler.start()
        await _wait_for(lambda: scheduler.state.cycles_completed == 1)

        scheduler.set_selection([])
        report = await scheduler.run_cycle()
        assert report["connections"] == 0
        assert report["results"] == []
        assert scheduler.state.cycles_completed == 2
        assert scheduler.status()["run_state"] == WarmupRunState.RUNNING

        scheduler.pause()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_failure_on_one_connection_is_isolated(self, scheduler, channel):
        # c2 messages c3; make that send fail
        channel.fail_contacts = {"c3"}
        scheduler.set_selection(["c1", "c2", "c3"])
        report = await scheduler.run_cycle()

        statuses = {r["connection_id"]: r["status"] for r in report["results"]}
        assert statuses == {"c1": "sent", "c2": "failed", "c3": "sent"}
        assert scheduler.state.cycles_completed == 1
        assert scheduler.state.last_cycle_at is not None

    @pytest.mark.asyncio
    async def test_selection_change_mid_cycle_applies_next_cycle(self, scheduler, channel):
        async def swap(contact):
            channel.on_send = None
            scheduler.set_selection(["z9"])

        channel.on_send = swap
        scheduler.set_selection(["c1", "c2"])
        report = await scheduler.run_cycle()
        assert [r["connection_id"] for r in report["results"]] == ["c1", "c2"]

        next_report = await scheduler.run_cycle()
        assert next_report["connections"] == 1

    @pytest.mark.asyncio
    async def test_simulate_is_dry_and_keeps_run_state(self, scheduler, channel):
        scheduler.set_selection(["c1", "c2"])
        report = await scheduler.simulate()

        assert report["dry_run"] is True
        assert {r["status"] for r in report["results"]} == {"simulated"}
        assert channel.sent == []
        assert scheduler.status()["run_state"] == WarmupRunState.IDLE
        assert scheduler.state.cycles_completed == 1

    @pytest.mark.asyncio
    async def test_run_cycle_follows_configured_dry_run(self, scheduler, settings, channel):
        settings.warmup_dry_run = True
        scheduler.set_selection(["c1", "c2"])
        report = await scheduler.run_cycle()
        assert report["dry_run"] is True
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_single_connection_without_peer_is_skipped(self, scheduler, channel):
        scheduler.set_selection(["c1"])
        report = await scheduler.run_cycle()
        assert report["results"] == [{"connection_id": "c1", "status": "skipped", "reason": "no_peer"}]
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_phrases_rotate(self, scheduler, channel):
        scheduler.set_selection(["c1", "c2"])
        await scheduler.run_cycle()
        payloads = [payload for _, _, payload in channel.sent]
        assert payloads[0] != payloads[1]

    @pytest.mark.asyncio
    async def test_stop_pauses_and_closes_channel(self, scheduler, channel):
        scheduler.start()
        await scheduler.stop(timeout=2)
        assert scheduler.status()["run_state"] == WarmupRunState.PAUSED
        assert channel.closed is True


class TestDailyQuota:
    @pytest.mark.asyncio
    async def test_quota_exhausted_skips_connection(self, settings, channel):
        scheduler = WarmupScheduler(
            channel=channel, settings=settings, quota=DailyQuota(limit=1), last_run=LastRunClock(),
        )
        scheduler.set_selection(["c1", "c2"])
        await scheduler.run_cycle()
        report = await scheduler.run_cycle()
        assert {r["reason"] for r in report["results"]} == {"daily_quota"}
        assert len(channel.sent) == 2

    @pytest.mark.asyncio
    async def test_redis_counter_used_when_available(self):
        redis = MagicMock()
        redis.get = AsyncMock(return_value="4")
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[5, True])
        redis.pipeline = MagicMock(return_value=pipe)

        quota = DailyQuota(limit=5, redis_getter=AsyncMock(return_value=redis))
        assert await quota.used("c1") == 4
        await quota.increment("c1")
        pipe.incr.assert_called_once()
        pipe.expire.assert_called_once()

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_redis_down(self):
        quota = DailyQuota(limit=5, redis_getter=AsyncMock(side_effect=ConnectionError("refused")))
        await quota.increment("c1")
        await quota.increment("c1")
        assert await quota.used("c1") == 2


class TestProfiles:
    def test_set_and_clear_profile(self, scheduler):
        status = scheduler.set_profile("c1", "Nuevo")
        assert status["profiles"] == {"c1": "nuevo"}
        status = scheduler.set_profile("c1", None)
        assert status["profiles"] == {}

    def test_unknown_profile_rejected(self, scheduler):
        with pytest.raises(InvalidRequest):
            scheduler.set_profile("c1", "turbo")

    @pytest.mark.asyncio
    async def test_profile_daily_limit_overrides_default(self, scheduler, channel):
        scheduler.set_profile("c1", "recuperacion")
        scheduler.set_selection(["c1", "c2"])
        for _ in range(8):
            await scheduler.quota.increment("c1")

        report = await scheduler.run_cycle()
        by_connection = {r["connection_id"]: r for r in report["results"]}
        assert by_connection["c1"]["reason"] == "daily_quota"
        assert by_connection["c1"]["limit"] == 8
        assert by_connection["c2"]["status"] == "sent"


class TestMinInterval:
    @pytest.mark.asyncio
    async def test_recent_run_skips_connection(self, scheduler, channel):
        scheduler.set_profile("c1", "nuevo")
        scheduler.set_selection(["c1", "c2"])
        await scheduler.last_run.mark("c1", datetime.now(timezone.utc) - timedelta(minutes=5))

        report = await scheduler.run_cycle()
        by_connection = {r["connection_id"]: r for r in report["results"]}
        assert by_connection["c1"]["status"] == "skipped"
        assert by_connection["c1"]["reason"] == "min_interval"
        assert 0 < by_connection["c1"]["retry_in_seconds"] <= 25 * 60
        assert channel.contacts == ["c1"]

    @pytest.mark.asyncio
    async def test_old_run_is_eligible(self, scheduler, channel):
        scheduler.set_profile("c1", "nuevo")
        scheduler.set_selection(["c1", "c2"])
        await scheduler.last_run.mark("c1", datetime.now(timezone.utc) - timedelta(minutes=31))

        report = await scheduler.run_cycle()
        assert {r["status"] for r in report["results"]} == {"sent"}

    @pytest.mark.asyncio
    async def test_send_marks_last_run_and_blocks_next_cycle(self, settings, channel):
        settings.warmup_min_interval_seconds = 600
        scheduler = WarmupScheduler(
            channel=channel, settings=settings, quota=DailyQuota(limit=30), last_run=LastRunClock(),
        )
        scheduler.set_selection(["c1", "c2"])
        await scheduler.run_cycle()
        assert await scheduler.last_run.get("c1") is not None

        report = await scheduler.run_cycle()
        assert {r["reason"] for r in report["results"]} == {"min_interval"}
        assert len(channel.sent) == 2
        assert scheduler.status()["skip_counts"] == {"min_interval": 2}

    @pytest.mark.asyncio
    async def test_dry_run_does_not_mark_last_run(self, scheduler):
        scheduler.set_selection(["c1", "c2"])
        await scheduler.simulate()
        assert await scheduler.last_run.get("c1") is None


class TestSkipCounts:
    @pytest.mark.asyncio
    async def test_skip_reasons_accumulate(self, scheduler):
        scheduler.set_selection(["c1"])
        await scheduler.run_cycle()
        await scheduler.run_cycle()
        assert scheduler.status()["skip_counts"] == {"no_peer": 2}


class TestLastRunClock:
    @pytest.mark.asyncio
    async def test_redis_round_trip(self):
        redis = MagicMock()
        redis.set = AsyncMock(return_value=True)
        redis.get = AsyncMock(return_value="1760000000.0")
        clock = LastRunClock(redis_getter=AsyncMock(return_value=redis))

        await clock.mark("c1", datetime.fromtimestamp(1760000000, tz=timezone.utc))
        redis.set.assert_awaited_once_with(
            "switchboard:warmup:last-run:c1", "1760000000.0", ex=7 * 24 * 3600,
        )
        assert await clock.get("c1") == datetime.fromtimestamp(1760000000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_redis_down(self):
        clock = LastRunClock(redis_getter=AsyncMock(side_effect=ConnectionError("refused")))
        when = datetime.now(timezone.utc)
        await clock.mark("c1", when)
        assert await clock.get("c1") == when
        assert await clock.get("c2") is None
