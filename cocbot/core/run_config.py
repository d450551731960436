"""
Run configuration - the tunables of the attack cycle

Internally durations are seconds. The operator console uses its own names
(milliseconds for the navigation delays, `<element>_x` / `<element>_y` for
coordinate overrides); `EXTERNAL_FIELDS` is the one place that maps between
the two.
"""

import math
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.coordinates import CoordinateMap, Override, UIElement, MAX_TROOP_SLOTS
from ..utils.logger import get_logger
from ..utils.exceptions import ConfigurationError

logger = get_logger(__name__)

TROOP_TYPES = ('barbarian', 'archer', 'goblin', 'giant', 'mixed')
PAUSE_MODES = ('midpoint', 'random')
DEPLOY_MODES = ('timed', 'ocr')


@dataclass(frozen=True)
class SlotCrop:
    """Troop badge crop around a slot position, fractions of the screen"""
    width: float = 0.06
    height: float = 0.06
    offset_x: float = 0.0
    offset_y: float = -0.03


@dataclass(frozen=True)
class RunConfig:
    """Immutable snapshot of every tunable the run loop reads"""

    # Acceptance thresholds
    min_gold: int = 200_000
    min_elixir: int = 200_000
    min_dark_elixir: int = 1_000

    # Search budgets
    max_searches: int = 50
    search_time_budget: float = 25.0

    # Pause between cycles
    pause_min: float = 15.0
    pause_max: float = 15.0
    pause_mode: str = 'midpoint'

    troop_type: str = 'barbarian'

    # Walls
    auto_wall_upgrade: bool = False
    wall_upgrade_min_gold: int = 1_000_000

    # Navigation delays (seconds)
    post_menu_delay: float = 3.0
    post_search_delay: float = 5.5
    post_next_village_delay: float = 3.5
    pre_ocr_delay: float = 1.2
    ocr_retry_delay: float = 0.8
    post_attack_start_delay: float = 2.0
    post_return_home_delay: float = 3.0

    # Deployment
    deploy_mode: str = 'timed'
    deploy_total_budget: float = 60.0
    deploy_slot_budget: float = 6.0
    troop_slots_count: int = 11
    troop_ocr_max_stalls: int = 3
    troop_crop: SlotCrop = field(default_factory=SlotCrop)

    # Battle and loot
    battle_wait: float = 120.0
    battle_wait_step: float = 5.0
    victory_screen_wait: float = 4.0
    victory_ocr_retries: int = 3
    victory_ocr_debug: bool = False

    error_retry_delay: float = 5.0

    coordinate_overrides: Tuple[Tuple[UIElement, Override], ...] = ()

    @property
    def coordinates(self) -> CoordinateMap:
        return CoordinateMap(dict(self.coordinate_overrides))

    def pause_bounds(self) -> Tuple[float, float]:
        """Pause bounds; an inverted range collapses onto pause_min"""
        if self.pause_max < self.pause_min:
            return self.pause_min, self.pause_min
        return self.pause_min, self.pause_max

    def accepts(self, gold: int, elixir: int) -> bool:
        return gold >= self.min_gold and elixir >= self.min_elixir


# ----------------------------------------------------------------------
# External naming
# ----------------------------------------------------------------------

def _finite(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"expected a finite number, got {value!r}")
    return number


def _non_negative_int(value: Any) -> int:
    exact = _finite(value)
    number = int(exact)
    if number != exact:
        raise ValueError(f"expected a whole number, got {value!r}")
    if number < 0:
        raise ValueError(f"must be >= 0, got {number}")
    return number


def _positive_int(value: Any) -> int:
    number = _non_negative_int(value)
    if number < 1:
        raise ValueError(f"must be >= 1, got {number}")
    return number


def _seconds(value: Any) -> float:
    number = _finite(value)
    if number < 0:
        raise ValueError(f"must be >= 0, got {number}")
    return number


def _millis(value: Any) -> float:
    return _seconds(value) / 1000.0


def _boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false', '1', '0', 'yes', 'no', 'on', 'off'):
        return value.lower() in ('true', '1', 'yes', 'on')
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"expected a boolean, got {value!r}")


def _choice(options: Tuple[str, ...]) -> Callable[[Any], str]:
    def parse(value: Any) -> str:
        text = str(value).lower()
        if text not in options:
            raise ValueError(f"expected one of {', '.join(options)}, got {value!r}")
        return text
    return parse


def _slot_count(value: Any) -> int:
    number = _positive_int(value)
    if number > MAX_TROOP_SLOTS:
        raise ValueError(f"must be <= {MAX_TROOP_SLOTS}, got {number}")
    return number


def _fraction(value: Any) -> float:
    return _finite(value)


def _as_millis(seconds: float) -> int:
    return int(round(seconds * 1000))


@dataclass(frozen=True)
class ExternalField:
    """One external key: target field, parser into internal units, formatter back out"""
    name: str
    parse: Callable[[Any], Any]
    export: Callable[[Any], Any] = lambda value: value


EXTERNAL_FIELDS: Dict[str, ExternalField] = {
    'min_gold': ExternalField('min_gold', _non_negative_int),
    'min_elixir': ExternalField('min_elixir', _non_negative_int),
    'min_dark_elixir': ExternalField('min_dark_elixir', _non_negative_int),
    'max_searches': ExternalField('max_searches', _positive_int),
    'force_attack_after_s': ExternalField('search_time_budget', _seconds),
    'pause_min': ExternalField('pause_min', _seconds),
    'pause_max': ExternalField('pause_max', _seconds),
    'pause_mode': ExternalField('pause_mode', _choice(PAUSE_MODES)),
    'troop_type': ExternalField('troop_type', _choice(TROOP_TYPES)),
    'auto_wall_upgrade': ExternalField('auto_wall_upgrade', _boolean),
    'wall_upgrade_min_gold': ExternalField('wall_upgrade_min_gold', _non_negative_int),
    'delay_after_attack_menu_ms': ExternalField('post_menu_delay', _millis, _as_millis),
    'delay_after_find_match_ms': ExternalField('post_search_delay', _millis, _as_millis),
    'delay_after_next_village_ms': ExternalField('post_next_village_delay', _millis, _as_millis),
    'delay_before_ocr_ms': ExternalField('pre_ocr_delay', _millis, _as_millis),
    'delay_ocr_retry_ms': ExternalField('ocr_retry_delay', _millis, _as_millis),
    'delay_after_attack_start_ms': ExternalField('post_attack_start_delay', _millis, _as_millis),
    'delay_after_return_home_ms': ExternalField('post_return_home_delay', _millis, _as_millis),
    'deploy_mode': ExternalField('deploy_mode', _choice(DEPLOY_MODES)),
    'deploy_limit_s': ExternalField('deploy_total_budget', _seconds),
    'deploy_slot_limit_s': ExternalField('deploy_slot_budget', _seconds),
    'troop_slots_count': ExternalField('troop_slots_count', _slot_count),
    'troop_ocr_stall_checks': ExternalField('troop_ocr_max_stalls', _positive_int),
    'battle_wait_s': ExternalField('battle_wait', _seconds),
    'battle_wait_step_s': ExternalField('battle_wait_step', _seconds),
    'victory_screen_wait_s': ExternalField('victory_screen_wait', _seconds),
    'victory_ocr_retries': ExternalField('victory_ocr_retries', _positive_int),
    'victory_ocr_debug': ExternalField('victory_ocr_debug', _boolean),
    'error_retry_delay_s': ExternalField('error_retry_delay', _seconds),
}

# Troop badge crop lives in a nested dataclass
CROP_FIELDS: Dict[str, str] = {
    'troop_ocr_crop_w': 'width',
    'troop_ocr_crop_h': 'height',
    'troop_ocr_crop_offset_x': 'offset_x',
    'troop_ocr_crop_offset_y': 'offset_y',
}


def _coordinate_key(key: str) -> Optional[Tuple[UIElement, int]]:
    """'find_match_x' -> (FIND_MATCH, 0); None for anything else"""
    for suffix, axis in (('_x', 0), ('_y', 1)):
        if key.endswith(suffix):
            try:
                return UIElement.from_key(key[:-len(suffix)]), axis
            except ValueError:
                return None
    return None


def apply_external(config: RunConfig, params: Mapping[str, Any]) -> Tuple[RunConfig, List[str], Dict[str, str]]:
    """
    Merge externally-named parameters into a config

    Args:
        config: Current snapshot
        params: Subset of parameters with external names

    Returns:
        (new config, applied keys, {rejected key: reason})
    """
    changes: Dict[str, Any] = {}
    crop_changes: Dict[str, float] = {}
    overrides = dict(config.coordinate_overrides)
    overrides_changed = False
    applied: List[str] = []
    rejected: Dict[str, str] = {}

    for key, value in params.items():
        try:
            if key in EXTERNAL_FIELDS:
                entry = EXTERNAL_FIELDS[key]
                changes[entry.name] = entry.parse(value)
            elif key in CROP_FIELDS:
                crop_changes[CROP_FIELDS[key]] = _fraction(value)
            else:
                coordinate = _coordinate_key(key)
                if coordinate is None:
                    rejected[key] = "unknown parameter"
                    continue
                element, axis = coordinate
                current = list(overrides.get(element, (None, None)))
                current[axis] = None if value is None else _fraction(value)
                overrides[element] = tuple(current)
                overrides_changed = True
            applied.append(key)
        except (TypeError, ValueError, OverflowError) as e:
            rejected[key] = str(e)

    if crop_changes:
        changes['troop_crop'] = replace(config.troop_crop, **crop_changes)
    if overrides_changed:
        changes['coordinate_overrides'] = tuple(
            (element, axes) for element, axes in overrides.items() if axes != (None, None)
        )

    return (replace(config, **changes) if changes else config), applied, rejected


def to_external(config: RunConfig) -> Dict[str, Any]:
    """Every parameter under its external name"""
    data = {key: entry.export(getattr(config, entry.name)) for key, entry in EXTERNAL_FIELDS.items()}
    for key, attr in CROP_FIELDS.items():
        data[key] = getattr(config.troop_crop, attr)
    for element, (ox, oy) in config.coordinate_overrides:
        if ox is not None:
            data[f"{element.key}_x"] = ox
        if oy is not None:
            data[f"{element.key}_y"] = oy
    return data


def build_run_config(external: Optional[Mapping[str, Any]] = None) -> RunConfig:
    """
    Defaults merged with externally-named overrides (the `run:` config section)

    Raises:
        ConfigurationError: a value is unknown or invalid
    """
    config, _, rejected = apply_external(RunConfig(), external or {})
    if rejected:
        details = ', '.join(f"{k} ({v})" for k, v in rejected.items())
        raise ConfigurationError(f"Invalid run configuration: {details}")
    return config


class LiveRunConfig:
    """
    The configuration shared between the command channel (writer) and
    the run loop (reader). Readers take snapshots; updates swap the object.
    """

    def __init__(self, initial: Optional[RunConfig] = None):
        self._config = initial or RunConfig()
        self._lock = threading.Lock()

    def snapshot(self) -> RunConfig:
        with self._lock:
            return self._config

    def replace(self, config: RunConfig) -> None:
        with self._lock:
            self._config = config

    def apply_external(self, params: Mapping[str, Any]) -> Tuple[List[str], Dict[str, str]]:
        """
        Merge an operator update

        Returns:
            (applied keys, {rejected key: reason})
        """
        if not params:
            return [], {}
        with self._lock:
            self._config, applied, rejected = apply_external(self._config, params)
        if applied:
            logger.info(f"Run configuration updated: {', '.join(sorted(applied))}")
        for key, reason in rejected.items():
            logger.warning(f"Rejected config parameter {key}: {reason}")
        return applied, rejected

    def to_external(self) -> Dict[str, Any]:
        return to_external(self.snapshot())

