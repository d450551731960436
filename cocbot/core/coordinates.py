"""
Calibrated screen positions of the game's UI controls

Positions are fractions of the screen (0..1) so they hold on any resolution.
Each element can be overridden per axis from the run configuration.
"""

from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

Point = Tuple[float, float]
Override = Tuple[Optional[float], Optional[float]]

MAX_TROOP_SLOTS = 11


class UIElement(Enum):
    """Closed set of tappable controls with their default position"""

    ATTACK_BUTTON = ('attack_button', 0.04, 0.82)
    ATTACK_MENU = ('attack_menu', 0.12, 0.86)
    FIND_MATCH = ('find_match', 0.16, 0.78)
    NEXT_BUTTON = ('next_button', 0.93, 0.70)
    ATTACK_START = ('attack_start', 0.91, 0.88)
    ATTACK_CONFIRM = ('attack_confirm', 0.91, 0.88)
    END_BATTLE = ('end_battle', 0.04, 0.15)
    END_BATTLE_CONFIRM = ('end_battle_confirm', 0.35, 0.55)
    RETURN_HOME = ('return_home', 0.50, 0.88)
    CLOSE_WINDOW = ('close_window', 0.05, 0.05)

    TROOP_SLOT_1 = ('troop_slot_1', 0.06, 0.95)
    TROOP_SLOT_2 = ('troop_slot_2', 0.14, 0.95)
    TROOP_SLOT_3 = ('troop_slot_3', 0.22, 0.95)
    TROOP_SLOT_4 = ('troop_slot_4', 0.30, 0.95)
    TROOP_SLOT_5 = ('troop_slot_5', 0.38, 0.95)
    TROOP_SLOT_6 = ('troop_slot_6', 0.46, 0.95)
    TROOP_SLOT_7 = ('troop_slot_7', 0.54, 0.95)
    TROOP_SLOT_8 = ('troop_slot_8', 0.62, 0.95)
    TROOP_SLOT_9 = ('troop_slot_9', 0.70, 0.95)
    TROOP_SLOT_10 = ('troop_slot_10', 0.78, 0.95)
    TROOP_SLOT_11 = ('troop_slot_11', 0.86, 0.95)

    HERO_SLOT_1 = ('hero_slot_1', 0.70, 0.95)
    HERO_SLOT_2 = ('hero_slot_2', 0.76, 0.95)
    HERO_SLOT_3 = ('hero_slot_3', 0.82, 0.95)
    HERO_SLOT_4 = ('hero_slot_4', 0.88, 0.95)
    SPELL_SLOT_1 = ('spell_slot_1', 0.86, 0.95)
    SPELL_SLOT_2 = ('spell_slot_2', 0.94, 0.95)

    WALL = ('wall', 0.50, 0.50)
    WALL_UPGRADE_BUTTON = ('wall_upgrade_button', 0.58, 0.88)
    WALL_UPGRADE_CONFIRM = ('wall_upgrade_confirm', 0.65, 0.72)

    def __init__(self, key: str, default_x: float, default_y: float):
        self.key = key
        self.default_x = default_x
        self.default_y = default_y

    @property
    def default(self) -> Point:
        return self.default_x, self.default_y

    @classmethod
    def from_key(cls, key: str) -> 'UIElement':
        """Look up by external name, e.g. 'find_match'"""
        try:
            return _BY_KEY[key]
        except KeyError:
            raise ValueError(f"Unknown UI element: {key}") from None

    @classmethod
    def troop_slot(cls, number: int) -> 'UIElement':
        if not 1 <= number <= MAX_TROOP_SLOTS:
            raise ValueError(f"Troop slot must be 1..{MAX_TROOP_SLOTS}, got {number}")
        return cls.from_key(f"troop_slot_{number}")


_BY_KEY: Dict[str, UIElement] = {element.key: element for element in UIElement}

HERO_SLOTS = (UIElement.HERO_SLOT_1, UIElement.HERO_SLOT_2, UIElement.HERO_SLOT_3, UIElement.HERO_SLOT_4)
SPELL_SLOTS = (UIElement.SPELL_SLOT_1, UIElement.SPELL_SLOT_2)

# Drop points: left and right funnel edges plus one centre entry
LEFT_FUNNEL: Tuple[Point, ...] = ((0.16, 0.36), (0.16, 0.46), (0.16, 0.56))
RIGHT_FUNNEL: Tuple[Point, ...] = ((0.84, 0.36), (0.84, 0.46), (0.84, 0.56))
CENTER_ENTRY: Point = (0.50, 0.70)
HERO_DROP_POINT: Point = (0.50, 0.68)
SPELL_DROP_POINT: Point = (0.52, 0.58)

# Reference point for the test_coords diagnostic
TEST_COORDS_POINT: Point = UIElement.ATTACK_BUTTON.default


def deploy_points() -> Tuple[Point, ...]:
    """Left/right funnel points interleaved, then the centre entry"""
    points = []
    for left, right in zip(LEFT_FUNNEL, RIGHT_FUNNEL):
        points.extend((left, right))
    points.append(CENTER_ENTRY)
    return tuple(points)


class CoordinateMap:
    """
    Resolves elements to positions; a present override component wins
    over the built-in default, per axis
    """

    def __init__(self, overrides: Optional[Mapping[UIElement, Override]] = None):
        self._overrides: Dict[UIElement, Override] = dict(overrides or {})

    def resolve(self, element: UIElement) -> Point:
        ox, oy = self._overrides.get(element, (None, None))
        return (element.default_x if ox is None else ox,
                element.default_y if oy is None else oy)

    def __repr__(self) -> str:
        return f"CoordinateMap({len(self._overrides)} overrides)"
