"""
Unit tests for cocbot/core/run_state.py, the log window and session statistics
"""
import asyncio
import time

import pytest

from cocbot.core.run_state import Phase, RunState
from cocbot.modules.statistics import SessionStatistics
from cocbot.modules.vision_reader import ResourceCounts
from cocbot.utils.log_buffer import LogBuffer


@pytest.fixture
def state() -> RunState:
    return RunState(sleep_slice=0.01, pause_poll=0.01)


class TestRunState:

    def test_initial(self, state: RunState):
        assert state.running is False
        assert state.status == 'idle'
        assert state.phase is Phase.IDLE

    def test_status(self, state: RunState):
        state.start()
        assert state.status == 'running'
        state.set_paused(True)
        assert state.status == 'paused'
        state.request_stop()
        assert state.status == 'idle'
        assert state.paused is False

    def test_sleep_full_duration(self, state: RunState):
        state.start()
        assert asyncio.run(state.sleep(0.03)) is True

    def test_sleep_observes_stop_within_a_slice(self, state: RunState):
        state.start()

        async def scenario():
            task = asyncio.create_task(state.sleep(10))
            await asyncio.sleep(0.02)
            state.request_stop()
            started = time.monotonic()
            result = await task
            return result, time.monotonic() - started

        result, waited = asyncio.run(scenario())
        assert result is False
        assert waited < 0.5

    def test_sleep_when_stopped(self, state: RunState):
        assert asyncio.run(state.sleep(10)) is False

    def test_wait_while_paused_until_resumed(self, state: RunState):
        state.start()
        state.set_paused(True)

        async def scenario():
            task = asyncio.create_task(state.wait_while_paused())
            await asyncio.sleep(0.03)
            assert not task.done()
            state.set_paused(False)
            return await task

        assert asyncio.run(scenario()) is True

    def test_stop_releases_pause(self, state: RunState):
        state.start()
        state.set_paused(True)

        async def scenario():
            task = asyncio.create_task(state.wait_while_paused())
            await asyncio.sleep(0.02)
            state.request_stop()
            return await task

        assert asyncio.run(scenario()) is False

    def test_checkpoint_sets_phase(self, state: RunState):
        state.start()
        assert asyncio.run(state.checkpoint(Phase.DEPLOY_TROOPS)) is True
        assert state.phase is Phase.DEPLOY_TROOPS

    def test_checkpoint_when_stopped_keeps_phase(self, state: RunState):
        assert asyncio.run(state.checkpoint(Phase.DEPLOY_TROOPS)) is False
        assert state.phase is Phase.IDLE


class TestLogBuffer:

    def test_capacity(self):
        buffer = LogBuffer(capacity=3)
        for i in range(5):
            buffer.append('info', f"line {i}")
        assert len(buffer) == 3
        assert [e.message for e in buffer.recent()] == ['line 2', 'line 3', 'line 4']

    def test_recent_limit(self):
        buffer = LogBuffer()
        for i in range(4):
            buffer.append('info', str(i))
        assert [e.message for e in buffer.recent(2)] == ['2', '3']
        assert buffer.recent(0) == []

    def test_unknown_level_becomes_info(self):
        entry = LogBuffer().append('shout', "hello")
        assert entry.level == 'info'

    def test_entry_fields(self):
        entry = LogBuffer().append('success', "done", 'return_home')
        assert entry.level == 'success'
        assert entry.phase == 'return_home'
        assert entry.timestamp > 0


class TestSessionStatistics:

    def test_record_attack_accumulates(self):
        stats = SessionStatistics()
        stats.record_attack(ResourceCounts(100, 200, 3))
        stats.record_attack(ResourceCounts(10, 20, 0))
        snap = stats.snapshot()
        assert snap.attacks_completed == 2
        assert snap.gold_collected == 110
        assert snap.elixir_collected == 220
        assert snap.dark_elixir_collected == 3

    def test_zero_loot_still_counts_attack(self):
        stats = SessionStatistics()
        stats.record_attack(ResourceCounts())
        assert stats.snapshot().attacks_completed == 1
        assert stats.snapshot().gold_collected == 0

    def test_counters_never_decrease(self):
        stats = SessionStatistics()
        stats.record_attack(ResourceCounts(100, 100, 0))
        stats.record_attack(ResourceCounts(-50, -50, -5))
        assert stats.snapshot().gold_collected == 100

    def test_reset(self):
        stats = SessionStatistics()
        before = stats.snapshot().session_start
        stats.record_wall_upgrade()
        time.sleep(0.01)
        stats.reset()
        snap = stats.snapshot()
        assert snap.walls_upgraded == 0
        assert snap.session_start >= before

    def test_payload(self):
        stats = SessionStatistics()
        stats.record_attack(ResourceCounts(5, 6, 7))
        stats.record_wall_upgrade()
        payload = stats.to_payload()
        assert payload['attacks_completed'] == 1
        assert payload['walls_upgraded'] == 1
        assert payload['dark_elixir_collected'] == 7
        assert payload['session_start'] > 10**12
