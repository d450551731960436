"""
Vision Reader - reads resource counts, victory loot and troop badges from screenshots

Every read is an ordered ladder of named OCR strategies. The ladder stops as
soon as a result is good enough and otherwise keeps the best-scoring one, so a
bad threshold on one emulator skin does not zero the whole read.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from ..core.run_config import SlotCrop
from ..utils.logger import get_logger
from ..utils.exceptions import ImageRecognitionError
from ..utils.image_processing import (
    FractionBox, PixelRegion, decode_screenshot, crop_fraction, crop_pixels, crop_band, preprocess
)
from ..utils.ocr_parsing import assign_resources, parse_largest_quantity, top_quantities, parse_count
from ..utils.tesseract_ocr import (
    TesseractEngine, get_tesseract_engine, DIGIT_WHITELIST, RESOURCE_WHITELIST, LOOT_WHITELIST
)

logger = get_logger(__name__)

Screenshot = Union[bytes, np.ndarray]
Region = Union[str, PixelRegion]

REGIONS: Dict[str, FractionBox] = {
    # "Available loot" block, top left of the search screen
    'resources': (0.00, 0.02, 0.52, 0.38),
    'resources_wide': (0.00, 0.00, 0.62, 0.42),
    # Storage totals, top right of the home village
    'home_storage': (0.70, 0.02, 1.00, 0.22),
}

# Victory panel presets, tight to very wide
VICTORY_PRESETS: Tuple[FractionBox, ...] = (
    (0.34, 0.40, 0.64, 0.74),
    (0.28, 0.36, 0.72, 0.80),
    (0.18, 0.28, 0.84, 0.88),
)

# Gold / elixir / dark elixir lines inside a panel crop
RESOURCE_BANDS: Tuple[Tuple[float, float], ...] = ((0.06, 0.36), (0.36, 0.66), (0.66, 0.96))

RESOURCE_SCALE = 2.0
LOOT_SCALE = 2.5
LOOT_GOOD_ENOUGH = 5000


@dataclass(frozen=True)
class ResourceCounts:
    gold: int = 0
    elixir: int = 0
    dark_elixir: int = 0

    @property
    def is_empty(self) -> bool:
        return self.gold == 0 and self.elixir == 0 and self.dark_elixir == 0

    @property
    def total(self) -> int:
        return self.gold + self.elixir + self.dark_elixir

    @property
    def filled_slots(self) -> int:
        return sum(1 for v in (self.gold, self.elixir, self.dark_elixir) if v > 0)

    @classmethod
    def from_dict(cls, values: Dict[str, int]) -> 'ResourceCounts':
        return cls(int(values.get('gold', 0)), int(values.get('elixir', 0)), int(values.get('dark_elixir', 0)))

    def to_dict(self) -> Dict[str, int]:
        return {'gold': self.gold, 'elixir': self.elixir, 'dark_elixir': self.dark_elixir}

    def __str__(self) -> str:
        return f"gold={self.gold:,} elixir={self.elixir:,} dark={self.dark_elixir:,}"


@dataclass
class StrategyResult:
    name: str
    counts: ResourceCounts = field(default_factory=ResourceCounts)
    raw: Dict[str, str] = field(default_factory=dict)
    score: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.counts.is_empty


Strategy = Tuple[str, Callable[[np.ndarray], StrategyResult]]


class StrategyLadder:
    """
    Ordered strategies; stops at the first good-enough result and returns the
    highest-scoring non-empty result seen (ties keep the earlier one)
    """

    def __init__(self, name: str, strategies: Sequence[Strategy],
                 good_enough: Callable[[StrategyResult], bool]):
        self.name = name
        self.strategies = list(strategies)
        self.good_enough = good_enough

    def run(self, frame: np.ndarray) -> StrategyResult:
        best = StrategyResult(name='none')
        for name, strategy in self.strategies:
            result = strategy(frame)
            logger.debug(f"[{self.name}] {name}: {result.counts} (score {result.score})")
            if not result.is_empty and (best.is_empty or result.score > best.score):
                best = result
            if not result.is_empty and self.good_enough(result):
                break
        return best


def _slot_score(counts: ResourceCounts) -> float:
    return float(counts.filled_slots)


def _total_score(counts: ResourceCounts) -> float:
    return float(counts.total)


class VisionReader:
    """OCR reads of the game screens through Tesseract"""

    def __init__(self, engine: Optional[TesseractEngine] = None,
                 debug_directory: str = 'debug_victory'):
        """
        Args:
            engine: Tesseract engine (shared engine if None)
            debug_directory: Where failed victory reads dump their crops
        """
        self.engine = engine or get_tesseract_engine()
        self.debug_directory = Path(debug_directory)
        self.last_debug: Dict[str, object] = {}

        self._resource_ladder = StrategyLadder('resources', [
            ('panel_otsu', lambda f: self._panel_strategy('panel_otsu', f, 'resources', False)),
            ('panel_otsu_inverted', lambda f: self._panel_strategy('panel_otsu_inverted', f, 'resources', True)),
            ('wide_otsu', lambda f: self._panel_strategy('wide_otsu', f, 'resources_wide', False)),
            ('roi_bands', self._resource_bands_strategy),
            ('adaptive_top3', lambda f: self._adaptive_strategy(f, REGIONS['resources_wide'], RESOURCE_SCALE, _slot_score)),
        ], good_enough=lambda r: r.counts.gold > 0 and r.counts.elixir > 0)

        loot_strategies: List[Strategy] = []
        for box in VICTORY_PRESETS:
            for invert in (False, True):
                name = f"roi_bands{box}{'_inverted' if invert else ''}"
                loot_strategies.append((name, self._make_band_strategy(name, box, invert)))
        loot_strategies.append(
            ('adaptive_top3', lambda f: self._adaptive_strategy(f, VICTORY_PRESETS[-1], LOOT_SCALE, _total_score))
        )
        self._loot_ladder = StrategyLadder('victory_loot', loot_strategies,
                                           good_enough=lambda r: r.counts.total >= LOOT_GOOD_ENOUGH)

        self._storage_ladder = StrategyLadder('home_storage', [
            ('storage_otsu', lambda f: self._panel_strategy('storage_otsu', f, 'home_storage', False)),
            ('storage_otsu_inverted', lambda f: self._panel_strategy('storage_otsu_inverted', f, 'home_storage', True)),
        ], good_enough=lambda r: r.counts.gold > 0)

    # ------------------------------------------------------------------
    # Public reads
    # ------------------------------------------------------------------

    def read_resource_counts(self, screenshot: Screenshot, region: Optional[Region] = None) -> ResourceCounts:
        """
        Read gold / elixir / dark elixir offered by the current base

        Args:
            screenshot: PNG bytes or BGR frame
            region: None for the full strategy ladder, a named region
                    or an (x, y, w, h) pixel tuple for a single-region read

        Raises:
            OCREngineUnavailableError: Tesseract cannot be run
        """
        frame = self._decode(screenshot)
        if frame is None:
            return ResourceCounts()

        if region is None:
            result = self._resource_ladder.run(frame)
        else:
            result = self._read_region(frame, region)
        self._remember(result)
        return result.counts

    def read_home_storage(self, screenshot: Screenshot) -> ResourceCounts:
        """Storage totals in the home village (top right)"""
        frame = self._decode(screenshot)
        if frame is None:
            return ResourceCounts()
        result = self._storage_ladder.run(frame)
        self._remember(result)
        return result.counts

    def read_victory_loot(self, screenshot: Screenshot, debug: bool = False) -> ResourceCounts:
        """
        Loot credited on the victory panel

        Args:
            screenshot: PNG bytes or BGR frame
            debug: Dump crops even when the read succeeds
        """
        frame = self._decode(screenshot)
        if frame is None:
            return ResourceCounts()
        result = self._loot_ladder.run(frame)
        self._remember(result)
        if result.is_empty or debug:
            self.save_debug_images(frame)
        return result.counts

    def read_troop_count(self, screenshot: Screenshot, slot_xy: Tuple[float, float],
                         crop: SlotCrop = SlotCrop()) -> int:
        """
        Number on a troop slot badge; 0 when no digits were recognised

        Args:
            screenshot: PNG bytes or BGR frame
            slot_xy: Slot position as screen fractions
            crop: Badge size and offset relative to the slot
        """
        frame = self._decode(screenshot)
        if frame is None:
            return 0
        cx = slot_xy[0] + crop.offset_x
        cy = slot_xy[1] + crop.offset_y
        box = (cx - crop.width / 2, cy - crop.height / 2, cx + crop.width / 2, cy + crop.height / 2)
        badge = crop_fraction(frame, box)

        for invert in (False, True):
            binary = preprocess(badge, scale=LOOT_SCALE, invert=invert)
            if binary is None:
                return 0
            text = self.engine.image_to_string(binary, psm=7, whitelist=DIGIT_WHITELIST)
            count = parse_count(text)
            if count:
                return count
        return 0

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _ocr(self, binary: Optional[np.ndarray], psm: int, whitelist: Optional[str]) -> str:
        if binary is None:
            return ''
        return self.engine.image_to_string(binary, psm=psm, whitelist=whitelist) or ''

    def _panel_strategy(self, name: str, frame: np.ndarray, region_name: str, invert: bool,
                        whitelist: Optional[str] = None) -> StrategyResult:
        crop = crop_fraction(frame, REGIONS[region_name])
        text = self._ocr(preprocess(crop, scale=RESOURCE_SCALE, invert=invert), psm=6, whitelist=whitelist)
        counts = ResourceCounts.from_dict(assign_resources(text))
        return StrategyResult(name, counts, {'text': text}, _slot_score(counts))

    def _read_region(self, frame: np.ndarray, region: Region) -> StrategyResult:
        """Normal then inverted threshold over a single region"""
        if isinstance(region, str):
            if region not in REGIONS:
                raise ImageRecognitionError(f"Unknown region: {region}")
            crop = crop_fraction(frame, REGIONS[region])
            whitelist = None
        else:
            crop = crop_pixels(frame, region)
            whitelist = RESOURCE_WHITELIST

        best = StrategyResult(name='none')
        for invert in (False, True):
            name = f"region{'_inverted' if invert else ''}"
            text = self._ocr(preprocess(crop, scale=RESOURCE_SCALE, invert=invert), psm=6, whitelist=whitelist)
            counts = ResourceCounts.from_dict(assign_resources(text))
            result = StrategyResult(name, counts, {'text': text}, _slot_score(counts))
            if not result.is_empty and (best.is_empty or result.score > best.score):
                best = result
            if counts.gold > 0 and counts.elixir > 0:
                break
        return best

    def _ocr_band(self, roi: np.ndarray, y_from: float, y_to: float, invert: bool) -> Tuple[int, str]:
        binary = preprocess(crop_band(roi, y_from, y_to), scale=LOOT_SCALE, invert=invert)
        text = self._ocr(binary, psm=6, whitelist=LOOT_WHITELIST)
        if not text.strip():
            text = self._ocr(binary, psm=7, whitelist=None)
        return parse_largest_quantity(text), text

    def _bands(self, name: str, roi: np.ndarray, invert: bool,
               score: Callable[[ResourceCounts], float]) -> StrategyResult:
        values, raw = [], {}
        for key, (y_from, y_to) in zip(('gold', 'elixir', 'dark_elixir'), RESOURCE_BANDS):
            value, text = self._ocr_band(roi, y_from, y_to, invert)
            values.append(value)
            raw[key] = text
        counts = ResourceCounts(*values)
        return StrategyResult(name, counts, raw, score(counts))

    def _make_band_strategy(self, name: str, box: FractionBox, invert: bool) -> Callable[[np.ndarray], StrategyResult]:
        def strategy(frame: np.ndarray) -> StrategyResult:
            return self._bands(name, crop_fraction(frame, box), invert, _total_score)
        return strategy

    def _resource_bands_strategy(self, frame: np.ndarray) -> StrategyResult:
        """Panel split into three lines, normal then inverted"""
        best = StrategyResult(name='roi_bands')
        for region_name in ('resources', 'resources_wide'):
            roi = crop_fraction(frame, REGIONS[region_name])
            for invert in (False, True):
                result = self._bands('roi_bands', roi, invert, _slot_score)
                if not result.is_empty and (best.is_empty or result.score > best.score):
                    best = result
                if result.counts.gold > 0 and result.counts.elixir > 0:
                    return best
        return best

    def _adaptive_strategy(self, frame: np.ndarray, box: FractionBox, scale: float,
                           score: Callable[[ResourceCounts], float]) -> StrategyResult:
        """Last resort: adaptive threshold, no allowlist, three largest numbers in order"""
        binary = preprocess(crop_fraction(frame, box), scale=scale, adaptive=True)
        text = self._ocr(binary, psm=6, whitelist=None)
        values = top_quantities(text, 3) + [0, 0, 0]
        counts = ResourceCounts(values[0], values[1], values[2])
        # Positional guesses rank below any direct read with the same slots filled
        return StrategyResult('adaptive_top3', counts, {'text': text}, score(counts) * 0.9)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode(self, screenshot: Optional[Screenshot]) -> Optional[np.ndarray]:
        if screenshot is None:
            return None
        try:
            return decode_screenshot(screenshot)
        except ImageRecognitionError as e:
            logger.warning(f"Unreadable screenshot: {e}")
            return None

    def _remember(self, result: StrategyResult) -> None:
        self.last_debug = {'strategy': result.name, 'raw': dict(result.raw), 'score': result.score}
        if result.is_empty:
            logger.debug(f"No digits recognised (strategy {result.name})")
        else:
            logger.debug(f"OCR {result.name}: {result.counts}")

    def save_debug_images(self, frame: np.ndarray) -> List[Path]:
        """Write the full frame and every victory preset crop for offline tuning"""
        saved = []
        ts = int(time.time() * 1000)
        try:
            self.debug_directory.mkdir(parents=True, exist_ok=True)
            full_path = self.debug_directory / f"victory_full_{ts}.png"
            if cv2.imwrite(str(full_path), frame):
                saved.append(full_path)
            for x1, y1, x2, y2 in VICTORY_PRESETS:
                roi = crop_fraction(frame, (x1, y1, x2, y2))
                if roi.size == 0:
                    continue
                roi_path = self.debug_directory / (
                    f"victory_roi_{int(x1 * 100)}_{int(y1 * 100)}_{int(x2 * 100)}_{int(y2 * 100)}_{ts}.png"
                )
                if cv2.imwrite(str(roi_path), roi):
                    saved.append(roi_path)
        except (OSError, cv2.error) as e:
            logger.warning(f"Could not write victory debug images: {e}")
        if saved:
            logger.info(f"Saved {len(saved)} victory debug image(s) to {self.debug_directory}")
        return saved
