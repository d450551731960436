"""
Run Controller - the attack-cycle state machine

One cycle: open matchmaking, search for a base worth attacking, deploy,
wait for the battle, read the loot, go home, optionally upgrade a wall,
pause. Device and OCR calls are blocking and run in worker threads so the
command channel stays responsive; stop and pause are cooperative and are
observed at every sleep and at every phase boundary.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from ..core.adb_manager import ADBManager
from ..core.coordinates import (
    UIElement, HERO_SLOTS, SPELL_SLOTS, HERO_DROP_POINT, SPELL_DROP_POINT, deploy_points
)
from ..core.run_config import LiveRunConfig, RunConfig
from ..core.run_state import Phase, RunState
from ..modules.statistics import SessionStatistics
from ..modules.vision_reader import ResourceCounts, VisionReader
from ..utils.exceptions import OCREngineUnavailableError
from ..utils.log_buffer import LogBuffer, LogEntry
from ..utils.logger import get_logger

logger = get_logger(__name__)

_LEVELS = {
    'info': logging.INFO,
    'success': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

MAX_VICTORY_READS = 6


@dataclass(frozen=True)
class TapTiming:
    """Fixed micro-delays between taps (seconds)"""
    detect_screen_delay: float = 1.0
    menu_confirm_delay: float = 1.0
    attack_confirm_delay: float = 1.0
    slot_select_delay: float = 0.12
    slot_reselect_delay: float = 0.08
    taps_per_point: int = 6
    tap_spacing: float = 0.03
    pass_gap: float = 0.10
    hero_phase_delay: float = 0.3
    hero_select_delay: float = 0.25
    hero_drop_delay: float = 0.2
    spell_select_delay: float = 0.2
    spell_drop_delay: float = 0.15
    end_battle_confirm_delay: float = 1.0
    victory_retry_gap: float = 0.4
    abandon_delay: float = 2.0
    wall_tap_delay: float = 1.0


class CycleOutcome(Enum):
    COMPLETED = 'completed'
    ABANDONED = 'abandoned'
    STOPPED = 'stopped'


class SearchOutcome(Enum):
    ACCEPTED = 'accepted'
    FORCED = 'forced'
    EXHAUSTED = 'exhausted'


class RunStopped(Exception):
    """Raised at a suspension point once a stop has been requested"""


def evaluate_base(counts: ResourceCounts, config: RunConfig) -> Tuple[bool, bool]:
    """
    Keep/skip decision for a base

    Returns:
        (accept, degraded) - degraded is True when nothing was read and the
        base is accepted blind
    """
    if counts.gold == 0 and counts.elixir == 0:
        return True, True
    return config.accepts(counts.gold, counts.elixir), False


LogCallback = Callable[[LogEntry], Awaitable[None]]
StatsCallback = Callable[[dict], Awaitable[None]]


class RunController:
    """
    Drives the attack cycle until stopped

    Only one instance runs per process; the command gateway owns it and talks
    to it through RunState and LiveRunConfig.
    """

    def __init__(self, adb: ADBManager, vision: VisionReader, config: LiveRunConfig,
                 stats: SessionStatistics, state: Optional[RunState] = None,
                 timing: TapTiming = TapTiming(), log_buffer: Optional[LogBuffer] = None,
                 on_log: Optional[LogCallback] = None, on_stats: Optional[StatsCallback] = None,
                 rng: Optional[random.Random] = None):
        self.adb = adb
        self.vision = vision
        self.config = config
        self.stats = stats
        self.state = state or RunState()
        self.timing = timing
        self.log_buffer = log_buffer or LogBuffer()
        self.on_log = on_log
        self.on_stats = on_stats
        self._rng = rng or random.Random()
        self.cycles_completed = 0
        self._paused_total = 0.0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def log(self, level: str, message: str) -> None:
        """Operator-visible log line: local log, log window, then the channel"""
        phase = self.state.phase.value
        logger.log(_LEVELS.get(level, logging.INFO), f"[{phase}] {message}")
        entry = self.log_buffer.append(level, message, phase)
        if self.on_log:
            await self.on_log(entry)

    async def emit_stats(self) -> None:
        if self.on_stats:
            await self.on_stats(self.stats.to_payload())

    # ------------------------------------------------------------------
    # Suspension points
    # ------------------------------------------------------------------

    async def _sleep(self, seconds: float) -> None:
        if not await self.state.sleep(seconds):
            raise RunStopped()

    async def _enter(self, phase: Phase) -> RunConfig:
        """Honour pause/stop, switch phase and take this phase's config snapshot"""
        if not await self.state.checkpoint(phase):
            raise RunStopped()
        return self.config.snapshot()

    def _check_running(self) -> None:
        if not self.state.running:
            raise RunStopped()

    async def _hold_if_paused(self) -> None:
        """Wait out a pause; the active clock does not advance meanwhile"""
        started = time.monotonic()
        resumed = await self.state.wait_while_paused()
        self._paused_total += time.monotonic() - started
        if not resumed:
            raise RunStopped()

    def _active_clock(self) -> float:
        """Monotonic time that stands still while the run is paused"""
        return time.monotonic() - self._paused_total

    async def _tap(self, config: RunConfig, element: UIElement) -> bool:
        x, y = config.coordinates.resolve(element)
        return await self._tap_at(x, y)

    async def _tap_at(self, x_percent: float, y_percent: float) -> bool:
        return await asyncio.to_thread(self.adb.tap_percent, x_percent, y_percent)

    async def _screenshot(self) -> Optional[bytes]:
        return await asyncio.to_thread(self.adb.capture_screenshot)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Run cycles until a stop is requested; a failed cycle never ends the loop

        The caller marks the state running first (RunState.start) so a stop
        issued before the task is scheduled is not lost.
        """
        await self.log('info', "Bot started")
        try:
            while self.state.running:
                if not await self.state.wait_while_paused():
                    break
                config = self.config.snapshot()
                try:
                    if not self.adb.connected:
                        await self.log('warning', "Device not connected, reconnecting...")
                        if not await asyncio.to_thread(self.adb.connect):
                            await self.log('error', "Reconnection failed")
                            await self._sleep(config.error_retry_delay)
                            continue
                    await self.run_cycle()
                except RunStopped:
                    break
                except Exception as e:
                    logger.exception("Unexpected error in attack cycle")
                    await self.log('error', f"Error: {e}")
                    if not await self.state.sleep(config.error_retry_delay):
                        break
        finally:
            self.state.request_stop()
            self.state.set_phase(Phase.IDLE)
            await self.log('info', "Bot stopped")

    async def run_cycle(self) -> CycleOutcome:
        """One attack cycle; returns how it ended"""
        try:
            await self._detect_screen()
            await self._open_matchmaking()
            outcome = await self._search_loop()
            if outcome is SearchOutcome.EXHAUSTED:
                await self._abandon_cycle()
                return CycleOutcome.ABANDONED
            await self._start_attack()
            await self._deploy()
            await self._wait_for_battle()
            loot = await self._collect_loot()
            await self._return_home(loot)
            if self.config.snapshot().auto_wall_upgrade:
                await self._upgrade_wall()
            await self._random_pause()
        except RunStopped:
            return CycleOutcome.STOPPED
        self.cycles_completed += 1
        return CycleOutcome.COMPLETED

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _detect_screen(self) -> None:
        await self._enter(Phase.DETECT_SCREEN)
        await self.log('info', "Checking main screen...")
        await self._sleep(self.timing.detect_screen_delay)

    async def _open_matchmaking(self) -> None:
        config = await self._enter(Phase.SEARCH_VILLAGE)
        await self.log('info', "Tapping Attack...")
        await self._tap(config, UIElement.ATTACK_BUTTON)
        await self._sleep(config.post_menu_delay)

        # Some layouts show an extra "Attack!" confirmation before the match search
        await self._tap(config, UIElement.ATTACK_MENU)
        await self._sleep(self.timing.menu_confirm_delay)

        await self.log('info', "Tapping Find a Match...")
        await self._tap(config, UIElement.FIND_MATCH)
        await self._sleep(config.post_search_delay)

        await self._tap(config, UIElement.ATTACK_CONFIRM)
        await self._sleep(self.timing.attack_confirm_delay)

    async def _read_base(self, config: RunConfig) -> Optional[ResourceCounts]:
        """
        Read the base's resources with the retry ladder

        Returns:
            The reading (possibly all zero), or None when OCR cannot run at all
        """
        try:
            counts = await asyncio.to_thread(self.vision.read_resource_counts, await self._screenshot())
            if counts.gold == 0 and counts.elixir == 0:
                await self._sleep(config.ocr_retry_delay)
                counts = await asyncio.to_thread(self.vision.read_resource_counts, await self._screenshot())
            if counts.gold == 0 and counts.elixir == 0:
                counts = await asyncio.to_thread(
                    self.vision.read_resource_counts, await self._screenshot(), 'resources_wide'
                )
        except OCREngineUnavailableError as e:
            await self.log('error', f"OCR engine unavailable: {e}")
            return None

        if counts.gold == 0 and counts.elixir == 0:
            raw = str(self.vision.last_debug.get('raw', ''))[:120]
            await self.log('warning', f"OCR may have failed (text: {raw})")
        return counts

    async def _search_loop(self) -> SearchOutcome:
        config = self.config.snapshot()
        started = time.monotonic()
        attempts = 0

        while attempts < config.max_searches:
            config = await self._enter(Phase.ANALYZE_VILLAGE)

            if time.monotonic() - started >= config.search_time_budget:
                await self.log('warning', f"Search exceeded {config.search_time_budget:.0f}s, forcing attack")
                return SearchOutcome.FORCED

            attempts += 1
            await self._sleep(config.pre_ocr_delay)
            counts = await self._read_base(config)
            if counts is None:
                await self.log('error', "Cannot judge the base without OCR, attacking it")
                return SearchOutcome.ACCEPTED

            await self.log('info', f"Village #{attempts}: {counts}")

            config = await self._enter(Phase.CHECK_CRITERIA)
            accept, degraded = evaluate_base(counts, config)
            if degraded:
                await self.log('warning', "OCR read 0/0, attacking anyway (possible misread)")
                return SearchOutcome.ACCEPTED
            if accept:
                await self.log('success', f"Village found! gold={counts.gold:,} elixir={counts.elixir:,}")
                return SearchOutcome.ACCEPTED

            await self.log('warning',
                           f"Village below minimum ({config.min_gold:,}/{config.min_elixir:,}), next...")
            if attempts >= config.max_searches:
                break
            await self._tap(config, UIElement.NEXT_BUTTON)
            await self._sleep(config.post_next_village_delay)

        return SearchOutcome.EXHAUSTED

    async def _abandon_cycle(self) -> None:
        config = self.config.snapshot()
        await self.log('warning', "Search limit reached, restarting cycle...")
        await self._tap(config, UIElement.CLOSE_WINDOW)
        await self._sleep(self.timing.abandon_delay)

    async def _start_attack(self) -> None:
        config = await self._enter(Phase.START_ATTACK)
        await self.log('info', "Starting attack...")
        await self._tap(config, UIElement.ATTACK_START)
        await self._sleep(config.post_attack_start_delay)

    async def _deploy(self) -> None:
        config = await self._enter(Phase.DEPLOY_TROOPS)
        await self.log('info', "Deploying troops (funnel + centre)...")
        deploy_deadline = self._active_clock() + config.deploy_total_budget
        use_ocr = config.deploy_mode == 'ocr'

        for number in range(1, config.troop_slots_count + 1):
            await self._hold_if_paused()
            if self._active_clock() >= deploy_deadline:
                await self.log('warning',
                               f"Deploy reached {config.deploy_total_budget:.0f}s, moving on to the battle")
                break
            slot_xy = config.coordinates.resolve(UIElement.troop_slot(number))
            slot_deadline = min(self._active_clock() + config.deploy_slot_budget, deploy_deadline)
            use_ocr = await self._deploy_slot(config, number, slot_xy, slot_deadline, use_ocr)

        await self._deploy_heroes_and_spells(config)

    async def _tap_many(self, point: Tuple[float, float], count: int, deadline: float) -> None:
        for _ in range(max(0, count)):
            await self._hold_if_paused()
            if self._active_clock() >= deadline:
                return
            await self._tap_at(*point)
            await self._sleep(self.timing.tap_spacing)

    async def _deploy_slot(self, config: RunConfig, number: int, slot_xy: Tuple[float, float],
                           deadline: float, use_ocr: bool) -> bool:
        """
        Drop one slot's units until its budget runs out (or, with troop OCR,
        until the badge reads zero or stops decreasing)

        Returns:
            Whether troop OCR is still usable for the following slots
        """
        mode = 'OCR' if use_ocr else 'timed'
        await self.log('info', f"Slot {number}: deploying for up to {config.deploy_slot_budget:.0f}s ({mode})")
        await self._tap_at(*slot_xy)
        await self._sleep(self.timing.slot_select_delay)

        last_count: Optional[int] = None
        stalls = 0
        while self._active_clock() < deadline:
            await self._hold_if_paused()
            # Re-select; a drop on an empty slot can switch the selection
            await self._tap_at(*slot_xy)
            await self._sleep(self.timing.slot_reselect_delay)
            for point in deploy_points():
                if self._active_clock() >= deadline:
                    break
                await self._tap_many(point, self.timing.taps_per_point, deadline)
            await self._sleep(self.timing.pass_gap)

            if not use_ocr:
                continue
            try:
                shot = await self._screenshot()
                count = await asyncio.to_thread(self.vision.read_troop_count, shot, slot_xy, config.troop_crop)
            except OCREngineUnavailableError as e:
                await self.log('warning', f"Troop OCR unavailable ({e}), deploying by time for this cycle")
                use_ocr = False
                continue

            if count == 0:
                await self.log('info', f"Slot {number}: spent")
                break
            if last_count is not None and count >= last_count:
                stalls += 1
                if stalls >= config.troop_ocr_max_stalls:
                    await self.log('warning', f"Slot {number}: count stuck at {count}, moving on")
                    break
            else:
                stalls = 0
            last_count = count

        return use_ocr

    async def _deploy_heroes_and_spells(self, config: RunConfig) -> None:
        """Best effort: unverified taps, nothing here can fail the cycle"""
        try:
            await self._sleep(self.timing.hero_phase_delay)
            for hero in HERO_SLOTS:
                await self._hold_if_paused()
                await self._tap(config, hero)
                await self._sleep(self.timing.hero_select_delay)
                await self._tap_at(*HERO_DROP_POINT)
                await self._sleep(self.timing.hero_drop_delay)

            for spell in SPELL_SLOTS:
                await self._hold_if_paused()
                await self._tap(config, spell)
                await self._sleep(self.timing.spell_select_delay)
                await self._tap_at(*SPELL_DROP_POINT)
                await self._sleep(self.timing.spell_drop_delay)
        except RunStopped:
            raise
        except Exception as e:
            logger.warning(f"Hero/spell deployment skipped: {e}")

    async def _wait_for_battle(self) -> None:
        config = await self._enter(Phase.WAIT_ATTACK)
        await self.log('info', f"Waiting for troops ({config.battle_wait:.0f}s)...")
        elapsed = 0.0
        while elapsed < config.battle_wait:
            step = config.battle_wait_step if config.battle_wait_step > 0 else config.battle_wait
            chunk = min(step, config.battle_wait - elapsed)
            await self._sleep(chunk)
            elapsed += chunk
            await self.state.wait_while_paused()
            self._check_running()
            await self.log('info', f"Attack in progress... {elapsed:.0f}s")

    async def _collect_loot(self) -> ResourceCounts:
        config = await self._enter(Phase.END_ATTACK)
        await self.log('info', "Ending battle...")
        await self._tap(config, UIElement.END_BATTLE)
        await self._sleep(self.timing.end_battle_confirm_delay)
        await self._tap(config, UIElement.END_BATTLE_CONFIRM)
        await self.log('info', f"Waiting for the loot panel ({config.victory_screen_wait:.0f}s)...")
        await self._sleep(config.victory_screen_wait)

        reads = max(1, min(config.victory_ocr_retries, MAX_VICTORY_READS))
        best = ResourceCounts()
        for attempt in range(reads):
            try:
                loot = await asyncio.to_thread(self.vision.read_victory_loot, await self._screenshot(),
                                               config.victory_ocr_debug)
            except OCREngineUnavailableError as e:
                await self.log('error', f"OCR engine unavailable, crediting no loot: {e}")
                return ResourceCounts()
            if loot.total > best.total:
                best = loot
            if best.total > 0:
                break
            if attempt < reads - 1:
                await self._sleep(self.timing.victory_retry_gap)

        if best.is_empty:
            raw = self.vision.last_debug.get('raw', {})
            logger.debug(f"Victory OCR raw text: {raw}")
            await self.log('warning', "Could not read the loot panel (OCR=0), crediting 0")
        return best

    async def _return_home(self, loot: ResourceCounts) -> None:
        config = await self._enter(Phase.RETURN_HOME)
        await self._tap(config, UIElement.RETURN_HOME)
        self.stats.record_attack(loot)
        attacks = self.stats.snapshot().attacks_completed
        await self.log('success', f"Attack #{attacks} complete! +{loot.gold:,} gold, "
                                  f"+{loot.elixir:,} elixir, +{loot.dark_elixir:,} dark elixir")
        await self.emit_stats()
        await self._sleep(config.post_return_home_delay)

    async def _upgrade_wall(self) -> None:
        config = await self._enter(Phase.CHECK_WALL_UPGRADE)
        try:
            storage = await asyncio.to_thread(self.vision.read_home_storage, await self._screenshot())
        except OCREngineUnavailableError as e:
            await self.log('warning', f"Skipping wall upgrade, OCR unavailable: {e}")
            return
        if storage.gold < config.wall_upgrade_min_gold:
            await self.log('info', f"Storage gold {storage.gold:,} below {config.wall_upgrade_min_gold:,}, "
                                   f"no wall upgrade")
            return

        config = await self._enter(Phase.UPGRADE_WALL)
        await self.log('info', "Upgrading a wall...")
        for element in (UIElement.WALL, UIElement.WALL_UPGRADE_BUTTON, UIElement.WALL_UPGRADE_CONFIRM):
            await self._tap(config, element)
            await self._sleep(self.timing.wall_tap_delay)
        self.stats.record_wall_upgrade()
        await self.log('success', "Wall upgraded")
        await self.emit_stats()

    def pause_duration(self, config: RunConfig) -> float:
        low, high = config.pause_bounds()
        if config.pause_mode == 'random':
            return self._rng.uniform(low, high)
        return low + (high - low) / 2

    async def _random_pause(self) -> None:
        config = await self._enter(Phase.RANDOM_PAUSE)
        duration = self.pause_duration(config)
        await self.log('info', f"Pausing {duration:.0f}s before the next attack...")
        await self._sleep(duration)
