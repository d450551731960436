"""
Pytest configuration and shared fixtures for the COC farm bot tests.

Provides:
- Synthetic emulator frames (decoded and PNG-encoded)
- Mock ADB manager with a connected 1280x720 session
- Scripted Tesseract engine
- Instant timings and configs so run-loop tests finish in milliseconds
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cocbot.core.adb_manager import ADBManager
from cocbot.core.run_config import LiveRunConfig, RunConfig
from cocbot.core.run_state import RunState
from cocbot.modules.run_controller import RunController, TapTiming
from cocbot.modules.statistics import SessionStatistics
from cocbot.modules.vision_reader import ResourceCounts, VisionReader
from cocbot.utils.device_persistence import DevicePersistence
from cocbot.utils.tesseract_ocr import TesseractEngine


# =============================================================================
# Frames
# =============================================================================


@pytest.fixture
def sample_frame() -> np.ndarray:
    """A 1280x720 BGR frame with a light block where the loot panel sits."""
    frame = np.zeros((720, 1280, 3), dtype=np.uint8)
    frame[40:260, 20:600] = 200
    return frame


@pytest.fixture
def sample_png(sample_frame: np.ndarray) -> bytes:
    """The sample frame as screencap output."""
    ok, buffer = cv2.imencode('.png', sample_frame)
    assert ok
    return buffer.tobytes()


# =============================================================================
# OCR engine
# =============================================================================


class ScriptedEngine:
    """
    Stand-in for TesseractEngine.

    `texts` is consumed one entry per image_to_string call; once exhausted the
    `default` text is returned. A callable `responder(call_index, psm, whitelist)`
    takes precedence when given.
    """

    def __init__(self, texts: Optional[List[str]] = None, default: str = '',
                 responder: Optional[Callable[[int, int, Optional[str]], str]] = None):
        self.texts = list(texts or [])
        self.default = default
        self.responder = responder
        self.calls = []

    def image_to_string(self, image, psm=6, whitelist=None):
        index = len(self.calls)
        self.calls.append({'shape': getattr(image, 'shape', None), 'psm': psm, 'whitelist': whitelist})
        if self.responder is not None:
            return self.responder(index, psm, whitelist)
        if self.texts:
            return self.texts.pop(0)
        return self.default

    def is_available(self):
        return True


@pytest.fixture
def scripted_engine() -> Callable[..., ScriptedEngine]:
    """Factory for scripted engines."""
    return ScriptedEngine


@pytest.fixture
def unavailable_engine() -> MagicMock:
    """Engine whose every call reports Tesseract missing."""
    from cocbot.utils.exceptions import OCREngineUnavailableError

    engine = MagicMock(spec=TesseractEngine)
    engine.image_to_string.side_effect = OCREngineUnavailableError("tesseract not found")
    return engine


# =============================================================================
# Device
# =============================================================================


@pytest.fixture
def persistence(tmp_path: Path) -> DevicePersistence:
    return DevicePersistence(tmp_path / "saved_devices.json")


@pytest.fixture
def mock_adb() -> MagicMock:
    """Mock ADBManager bound to a 1280x720 emulator."""
    adb = MagicMock(spec=ADBManager)
    adb.connected = True
    adb.device_id = "emulator-5554"
    adb.screen_size = (1280, 720)
    adb.connect.return_value = True
    adb.tap.return_value = True
    adb.tap_percent.return_value = True
    adb.swipe.return_value = True
    adb.capture_screenshot.return_value = b"\x89PNG fake"
    adb.save_debug_screenshot.return_value = Path("screenshots/test_coords.png")
    return adb


@pytest.fixture
def mock_vision() -> MagicMock:
    """Mock VisionReader reading a rich base, some loot and no badge digits."""
    vision = MagicMock(spec=VisionReader)
    vision.last_debug = {}
    vision.read_resource_counts.return_value = ResourceCounts(250_000, 250_000, 1_500)
    vision.read_victory_loot.return_value = ResourceCounts(120_000, 110_000, 900)
    vision.read_home_storage.return_value = ResourceCounts(0, 0, 0)
    vision.read_troop_count.return_value = 0
    return vision


# =============================================================================
# Run loop
# =============================================================================


@pytest.fixture
def instant_timing() -> TapTiming:
    """Every micro-delay zero and one tap per drop point."""
    return TapTiming(
        detect_screen_delay=0, menu_confirm_delay=0, attack_confirm_delay=0,
        slot_select_delay=0, slot_reselect_delay=0, taps_per_point=1, tap_spacing=0,
        pass_gap=0, hero_phase_delay=0, hero_select_delay=0, hero_drop_delay=0,
        spell_select_delay=0, spell_drop_delay=0, end_battle_confirm_delay=0,
        victory_retry_gap=0, abandon_delay=0, wall_tap_delay=0,
    )


@pytest.fixture
def fast_config() -> RunConfig:
    """Navigation delays and waits zeroed, short deployment budgets."""
    return RunConfig(
        max_searches=5,
        search_time_budget=60.0,
        pause_min=0.0,
        pause_max=0.0,
        post_menu_delay=0.0,
        post_search_delay=0.0,
        post_next_village_delay=0.0,
        pre_ocr_delay=0.0,
        ocr_retry_delay=0.0,
        post_attack_start_delay=0.0,
        post_return_home_delay=0.0,
        deploy_total_budget=0.5,
        deploy_slot_budget=0.02,
        troop_slots_count=2,
        battle_wait=0.0,
        victory_screen_wait=0.0,
        error_retry_delay=0.0,
    )


@pytest.fixture
def run_state() -> RunState:
    return RunState(sleep_slice=0.01, pause_poll=0.01)


@pytest.fixture
def make_controller(mock_adb, mock_vision, instant_timing, fast_config, run_state):
    """Factory: controller over the mocks, optionally with config overrides."""

    def factory(config: Optional[RunConfig] = None, **kwargs) -> RunController:
        kwargs.setdefault('state', run_state)
        kwargs.setdefault('timing', instant_timing)
        return RunController(
            mock_adb, mock_vision, LiveRunConfig(config or fast_config),
            SessionStatistics(), **kwargs
        )

    return factory
