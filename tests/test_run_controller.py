"""
Unit tests for cocbot/modules/run_controller.py

The device and vision layers are mocks; timings and budgets are zeroed or
tiny so whole attack cycles run in milliseconds.
"""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import replace
from unittest.mock import AsyncMock, call

import pytest

from cocbot.core.coordinates import HERO_DROP_POINT, UIElement
from cocbot.core.run_config import RunConfig
from cocbot.core.run_state import Phase
from cocbot.modules.run_controller import CycleOutcome, RunStopped, evaluate_base
from cocbot.modules.vision_reader import ResourceCounts
from cocbot.utils.exceptions import OCREngineUnavailableError


def tapped(mock_adb, element: UIElement) -> int:
    """How many times an element's default position was tapped."""
    return mock_adb.tap_percent.call_args_list.count(call(*element.default))


def messages(controller) -> list:
    return [entry.message for entry in controller.log_buffer.recent()]


def pause_on_first_tap(mock_adb, run_state):
    def tap(x, y):
        if mock_adb.tap_percent.call_count == 1:
            run_state.set_paused(True)
        return True
    mock_adb.tap_percent.side_effect = tap


# =============================================================================
# Base evaluation
# =============================================================================


class TestEvaluateBase:

    config = RunConfig(min_gold=200000, min_elixir=200000)

    def test_rich_base_accepted(self):
        assert evaluate_base(ResourceCounts(250000, 250000), self.config) == (True, False)

    def test_one_resource_short_rejected(self):
        assert evaluate_base(ResourceCounts(100000, 300000), self.config) == (False, False)

    def test_nothing_read_accepted_degraded(self):
        assert evaluate_base(ResourceCounts(0, 0, 900), self.config) == (True, True)

    def test_exact_threshold_accepted(self):
        assert evaluate_base(ResourceCounts(200000, 200000), self.config) == (True, False)


# =============================================================================
# Full cycle
# =============================================================================


class TestRunCycle:

    def test_completed_cycle(self, make_controller, mock_adb, mock_vision, run_state):
        on_stats = AsyncMock()
        controller = make_controller(on_stats=on_stats)
        run_state.start()

        outcome = asyncio.run(controller.run_cycle())

        assert outcome is CycleOutcome.COMPLETED
        snap = controller.stats.snapshot()
        assert snap.attacks_completed == 1
        assert snap.gold_collected == 120000
        assert snap.elixir_collected == 110000
        assert snap.dark_elixir_collected == 900
        on_stats.assert_awaited()
        assert on_stats.await_args[0][0]['attacks_completed'] == 1

        for element in (UIElement.ATTACK_BUTTON, UIElement.ATTACK_MENU, UIElement.FIND_MATCH,
                        UIElement.END_BATTLE, UIElement.END_BATTLE_CONFIRM, UIElement.RETURN_HOME):
            assert tapped(mock_adb, element) >= 1, element
        assert tapped(mock_adb, UIElement.NEXT_BUTTON) == 0
        assert mock_vision.read_resource_counts.call_count == 1
        assert controller.cycles_completed == 1

    def test_search_exhaustion_abandons_cycle(self, make_controller, fast_config, mock_adb,
                                              mock_vision, run_state):
        mock_vision.read_resource_counts.return_value = ResourceCounts(100000, 100000)
        controller = make_controller(replace(fast_config, max_searches=3))
        run_state.start()

        outcome = asyncio.run(controller.run_cycle())

        assert outcome is CycleOutcome.ABANDONED
        assert mock_vision.read_resource_counts.call_count == 3
        # Next only between attempts, never after the last one
        assert tapped(mock_adb, UIElement.NEXT_BUTTON) == 2
        assert tapped(mock_adb, UIElement.CLOSE_WINDOW) == 1
        assert tapped(mock_adb, UIElement.RETURN_HOME) == 0
        assert controller.stats.snapshot().attacks_completed == 0

    def test_skips_until_rich_base(self, make_controller, mock_adb, mock_vision, run_state):
        mock_vision.read_resource_counts.side_effect = [
            ResourceCounts(100000, 100000), ResourceCounts(150000, 400000), ResourceCounts(300000, 300000),
        ]
        controller = make_controller()
        run_state.start()

        assert asyncio.run(controller.run_cycle()) is CycleOutcome.COMPLETED
        assert tapped(mock_adb, UIElement.NEXT_BUTTON) == 2
        assert any(m.startswith("Village found!") for m in messages(controller))

    def test_time_budget_forces_attack(self, make_controller, fast_config, mock_vision, run_state):
        controller = make_controller(replace(fast_config, search_time_budget=0.0))
        run_state.start()

        assert asyncio.run(controller.run_cycle()) is CycleOutcome.COMPLETED
        mock_vision.read_resource_counts.assert_not_called()
        assert controller.stats.snapshot().attacks_completed == 1

    def test_zero_read_retries_then_attacks(self, make_controller, mock_vision, run_state):
        mock_vision.read_resource_counts.return_value = ResourceCounts()
        controller = make_controller()
        run_state.start()

        assert asyncio.run(controller.run_cycle()) is CycleOutcome.COMPLETED
        reads = mock_vision.read_resource_counts.call_args_list
        assert len(reads) == 3
        assert reads[2][0][1] == 'resources_wide'
        assert any("possible misread" in m for m in messages(controller))

    def test_engine_unavailable_during_search_attacks(self, make_controller, mock_vision, run_state):
        mock_vision.read_resource_counts.side_effect = OCREngineUnavailableError("no tesseract")
        mock_vision.read_victory_loot.side_effect = OCREngineUnavailableError("no tesseract")
        controller = make_controller()
        run_state.start()

        assert asyncio.run(controller.run_cycle()) is CycleOutcome.COMPLETED
        snap = controller.stats.snapshot()
        assert snap.attacks_completed == 1
        assert snap.gold_collected == 0
        assert any("OCR engine unavailable" in m for m in messages(controller))

    def test_config_update_applies_to_next_phase(self, make_controller, mock_vision, run_state):
        controller = make_controller()

        def raise_threshold(*args):
            controller.config.apply_external({'min_gold': 10**9})
            return ResourceCounts(250000, 250000)

        mock_vision.read_resource_counts.side_effect = raise_threshold
        controller.config.apply_external({'max_searches': 2})
        run_state.start()

        # The check after the read sees the raised threshold
        assert asyncio.run(controller.run_cycle()) is CycleOutcome.ABANDONED


# =============================================================================
# Loot
# =============================================================================


class TestCollectLoot:

    def test_retries_until_nonzero(self, make_controller, fast_config, mock_vision, run_state):
        mock_vision.read_victory_loot.side_effect = [ResourceCounts(), ResourceCounts(5000, 6000, 0)]
        controller = make_controller(replace(fast_config, victory_ocr_retries=3))
        run_state.start()

        loot = asyncio.run(controller._collect_loot())
        assert loot == ResourceCounts(5000, 6000, 0)
        assert mock_vision.read_victory_loot.call_count == 2

    def test_all_reads_empty_credits_zero(self, make_controller, fast_config, mock_vision, run_state):
        mock_vision.read_victory_loot.return_value = ResourceCounts()
        controller = make_controller(replace(fast_config, victory_ocr_retries=20))
        run_state.start()

        assert asyncio.run(controller._collect_loot()).is_empty
        # Capped regardless of the configured count
        assert mock_vision.read_victory_loot.call_count == 6
        assert any("crediting 0" in m for m in messages(controller))

    def test_debug_flag_forwarded(self, make_controller, fast_config, mock_vision, run_state):
        controller = make_controller(replace(fast_config, victory_ocr_debug=True))
        run_state.start()
        asyncio.run(controller._collect_loot())
        assert mock_vision.read_victory_loot.call_args[0][1] is True


# =============================================================================
# Deployment
# =============================================================================


class TestDeploy:

    def test_timed_slot_ends_at_its_budget(self, make_controller, fast_config, mock_adb, run_state):
        config = replace(fast_config, troop_slots_count=1, deploy_slot_budget=0.05, deploy_total_budget=5.0)
        controller = make_controller(config)
        run_state.start()

        started = time.monotonic()
        asyncio.run(controller._deploy())
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert tapped(mock_adb, UIElement.TROOP_SLOT_1) >= 1
        assert tapped(mock_adb, UIElement.TROOP_SLOT_2) == 0
        assert mock_adb.tap_percent.call_args_list.count(call(*HERO_DROP_POINT)) == 4

    def test_total_budget_skips_remaining_slots(self, make_controller, fast_config, mock_adb, run_state):
        config = replace(fast_config, troop_slots_count=11, deploy_slot_budget=0.05, deploy_total_budget=0.08)
        controller = make_controller(config)
        run_state.start()

        asyncio.run(controller._deploy())

        assert tapped(mock_adb, UIElement.TROOP_SLOT_1) >= 1
        assert tapped(mock_adb, UIElement.TROOP_SLOT_10) == 0
        assert any("moving on to the battle" in m for m in messages(controller))

    def test_ocr_spent_slot_moves_on(self, make_controller, fast_config, mock_vision, run_state):
        config = replace(fast_config, deploy_mode='ocr', troop_slots_count=1, deploy_slot_budget=5.0,
                         deploy_total_budget=10.0)
        mock_vision.read_troop_count.return_value = 0
        controller = make_controller(config)
        run_state.start()

        started = time.monotonic()
        asyncio.run(controller._deploy())

        assert time.monotonic() - started < 2.0
        assert mock_vision.read_troop_count.call_count == 1
        assert "Slot 1: spent" in messages(controller)

    def test_ocr_stalled_count_moves_on(self, make_controller, fast_config, mock_vision, run_state):
        config = replace(fast_config, deploy_mode='ocr', troop_slots_count=1, deploy_slot_budget=5.0,
                         deploy_total_budget=10.0, troop_ocr_max_stalls=2)
        mock_vision.read_troop_count.return_value = 5
        controller = make_controller(config)
        run_state.start()

        asyncio.run(controller._deploy())

        assert mock_vision.read_troop_count.call_count == 3
        assert any("count stuck at 5" in m for m in messages(controller))

    def test_ocr_unavailable_falls_back_to_timed(self, make_controller, fast_config, mock_vision, run_state):
        config = replace(fast_config, deploy_mode='ocr', troop_slots_count=2, deploy_slot_budget=0.03)
        mock_vision.read_troop_count.side_effect = OCREngineUnavailableError("no tesseract")
        controller = make_controller(config)
        run_state.start()

        asyncio.run(controller._deploy())

        # Later slots do not retry OCR
        assert mock_vision.read_troop_count.call_count == 1
        assert any("deploying by time" in m for m in messages(controller))

    def test_pause_during_deploy_holds_taps(self, make_controller, fast_config, mock_adb, run_state):
        config = replace(fast_config, troop_slots_count=1, deploy_slot_budget=0.05, deploy_total_budget=5.0)
        controller = make_controller(config)
        pause_on_first_tap(mock_adb, run_state)
        run_state.start()

        async def scenario():
            task = asyncio.create_task(controller._deploy())
            await asyncio.sleep(0.2)
            taps_while_paused = mock_adb.tap_percent.call_count
            run_state.set_paused(False)
            await asyncio.wait_for(task, timeout=5)
            return taps_while_paused

        assert asyncio.run(scenario()) == 1
        # Time spent paused is not charged to the slot budget
        assert tapped(mock_adb, UIElement.TROOP_SLOT_1) >= 2

    def test_stop_while_paused_issues_no_further_tap(self, make_controller, fast_config, mock_adb, run_state):
        config = replace(fast_config, troop_slots_count=1, deploy_slot_budget=5.0, deploy_total_budget=10.0)
        controller = make_controller(config)
        pause_on_first_tap(mock_adb, run_state)
        run_state.start()

        async def scenario():
            task = asyncio.create_task(controller._deploy())
            await asyncio.sleep(0.1)
            run_state.request_stop()
            with pytest.raises(RunStopped):
                await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert mock_adb.tap_percent.call_count == 1

    def test_pause_holds_hero_and_spell_taps(self, make_controller, fast_config, mock_adb, run_state):
        controller = make_controller(replace(fast_config, troop_slots_count=0))
        pause_on_first_tap(mock_adb, run_state)
        run_state.start()

        async def scenario():
            task = asyncio.create_task(controller._deploy())
            await asyncio.sleep(0.1)
            run_state.request_stop()
            with pytest.raises(RunStopped):
                await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        # The first hero is dropped; the second is never selected
        assert mock_adb.tap_percent.call_count == 2
        assert mock_adb.tap_percent.call_args_list.count(call(*HERO_DROP_POINT)) == 1


# =============================================================================
# Walls
# =============================================================================


class TestWallUpgrade:

    def test_upgrade_when_storage_is_full(self, make_controller, fast_config, mock_adb, mock_vision, run_state):
        mock_vision.read_home_storage.return_value = ResourceCounts(2_000_000, 0, 0)
        controller = make_controller(replace(fast_config, auto_wall_upgrade=True))
        run_state.start()

        asyncio.run(controller.run_cycle())

        assert controller.stats.snapshot().walls_upgraded == 1
        assert tapped(mock_adb, UIElement.WALL_UPGRADE_CONFIRM) == 1

    def test_no_upgrade_below_threshold(self, make_controller, fast_config, mock_adb, mock_vision, run_state):
        mock_vision.read_home_storage.return_value = ResourceCounts(500_000, 0, 0)
        controller = make_controller(replace(fast_config, auto_wall_upgrade=True))
        run_state.start()

        asyncio.run(controller.run_cycle())

        assert controller.stats.snapshot().walls_upgraded == 0
        assert tapped(mock_adb, UIElement.WALL_UPGRADE_BUTTON) == 0

    def test_disabled_by_default(self, make_controller, mock_vision, run_state):
        controller = make_controller()
        run_state.start()
        asyncio.run(controller.run_cycle())
        mock_vision.read_home_storage.assert_not_called()


# =============================================================================
# Run loop, stop and pause
# =============================================================================


class TestRunLoop:

    def test_stop_mid_search_ends_loop(self, make_controller, mock_vision, run_state):
        def stop_and_read(*args):
            run_state.request_stop()
            return ResourceCounts(100000, 100000)

        mock_vision.read_resource_counts.side_effect = stop_and_read
        controller = make_controller()
        run_state.start()

        asyncio.run(asyncio.wait_for(controller.run(), timeout=5))

        assert run_state.running is False
        assert run_state.phase is Phase.IDLE
        assert mock_vision.read_resource_counts.call_count == 1
        assert messages(controller)[0] == "Bot started"
        assert messages(controller)[-1] == "Bot stopped"

    def test_cycle_error_does_not_end_loop(self, make_controller, mock_adb, run_state):
        calls = {'n': 0}

        def flaky_tap(*args):
            calls['n'] += 1
            if calls['n'] == 1:
                raise RuntimeError("boom")
            run_state.request_stop()
            return True

        mock_adb.tap_percent.side_effect = flaky_tap
        controller = make_controller()
        run_state.start()

        asyncio.run(asyncio.wait_for(controller.run(), timeout=5))

        assert calls['n'] == 2
        assert "Error: boom" in messages(controller)

    def test_reconnects_when_disconnected(self, make_controller, mock_adb, run_state):
        mock_adb.connected = False

        def failed_connect(*args):
            run_state.request_stop()
            return False

        mock_adb.connect.side_effect = failed_connect
        controller = make_controller()
        run_state.start()

        asyncio.run(asyncio.wait_for(controller.run(), timeout=5))

        mock_adb.connect.assert_called_once()
        assert "Reconnection failed" in messages(controller)

    def test_pause_holds_the_loop(self, make_controller, mock_vision, run_state):
        controller = make_controller()
        run_state.start()
        run_state.set_paused(True)

        async def scenario():
            task = asyncio.create_task(controller.run())
            await asyncio.sleep(0.05)
            reads_while_paused = mock_vision.read_resource_counts.call_count
            run_state.request_stop()
            await asyncio.wait_for(task, timeout=5)
            return reads_while_paused

        assert asyncio.run(scenario()) == 0

    def test_on_log_receives_entries(self, make_controller, run_state):
        on_log = AsyncMock()
        controller = make_controller(on_log=on_log)

        asyncio.run(controller.log('warning', "careful"))

        entry = on_log.await_args[0][0]
        assert entry.level == 'warning'
        assert entry.message == "careful"
        assert entry.phase == 'idle'


class TestPauseDuration:

    def test_midpoint(self, make_controller):
        controller = make_controller()
        assert controller.pause_duration(RunConfig(pause_min=10, pause_max=20)) == 15

    def test_random_within_bounds(self, make_controller):
        controller = make_controller(rng=random.Random(7))
        config = RunConfig(pause_min=10, pause_max=20, pause_mode='random')
        for _ in range(20):
            assert 10 <= controller.pause_duration(config) <= 20

    def test_inverted_bounds_use_minimum(self, make_controller):
        controller = make_controller()
        assert controller.pause_duration(RunConfig(pause_min=20, pause_max=10)) == 20
