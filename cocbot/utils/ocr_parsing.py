"""
Parsing helpers that turn raw Tesseract text into game quantities

The game prints thousands separated by spaces ("905 968"), but OCR on other
emulator skins also yields commas, periods or non-breaking spaces, and large
values may be abbreviated ("1.2k", "3M").
"""

import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, List

# Minimum magnitude for gold/elixir tokens; anything smaller is OCR noise
RESOURCE_MIN_TOKEN = 1000
# Dark elixir amounts are two orders of magnitude smaller than gold/elixir
DARK_ELIXIR_MIN_TOKEN = 100

_SUFFIX_MULTIPLIERS = {'k': 1_000, 'm': 1_000_000}

# Order matters: a decimal mantissa only counts when followed by a k/m suffix,
# grouped digits must not run into another digit, anything else is a plain run.
_TOKEN_RE = re.compile(
    r"(?P<decimal>\d+[.,]\d{1,2})[ \u00A0]?(?P<dsuffix>[kKmM])"
    r"|(?P<grouped>\d{1,3}(?:[ \u00A0,.]\d{3})+)(?!\d)[ \u00A0]?(?P<gsuffix>[kKmM])?"
    r"|(?P<plain>\d+)[ \u00A0]?(?P<psuffix>[kKmM])?"
)

_SEPARATORS_RE = re.compile(r"[ \u00A0,.]")
_DIGITS_RE = re.compile(r"\d+")


def _apply_suffix(value: Decimal, suffix: str) -> int:
    multiplier = _SUFFIX_MULTIPLIERS.get(suffix.lower(), 1) if suffix else 1
    return int((value * multiplier).to_integral_value(rounding=ROUND_HALF_UP))


def extract_quantities(text: str, min_value: int = 0) -> List[int]:
    """
    Extract every numeric token from OCR text, in order of appearance

    Args:
        text: Raw OCR output
        min_value: Tokens strictly below this value are dropped

    Returns:
        List of integer quantities
    """
    if not text:
        return []

    values = []
    for match in _TOKEN_RE.finditer(text):
        try:
            if match.group('decimal'):
                value = _apply_suffix(Decimal(match.group('decimal').replace(',', '.')),
                                      match.group('dsuffix'))
            elif match.group('grouped'):
                value = _apply_suffix(Decimal(_SEPARATORS_RE.sub('', match.group('grouped'))),
                                      match.group('gsuffix'))
            else:
                value = _apply_suffix(Decimal(match.group('plain')), match.group('psuffix'))
        except InvalidOperation:
            continue
        if value >= min_value:
            values.append(value)
    return values


def assign_resources(text: str) -> Dict[str, int]:
    """
    Map OCR text of the three-line loot block onto gold / elixir / dark elixir.

    Order of appearance wins: the panel lists gold, elixir and dark elixir top
    to bottom, which survives dropped digits better than sorting by size.
    Slots left empty are filled with the largest remaining tokens.
    """
    resources = {'gold': 0, 'elixir': 0, 'dark_elixir': 0}
    tokens = extract_quantities(text, DARK_ELIXIR_MIN_TOKEN)

    slots = [('gold', RESOURCE_MIN_TOKEN), ('elixir', RESOURCE_MIN_TOKEN),
             ('dark_elixir', DARK_ELIXIR_MIN_TOKEN)]
    used = set()
    slot_index = 0
    for index, value in enumerate(tokens):
        if slot_index >= len(slots):
            break
        name, floor = slots[slot_index]
        if value >= floor:
            resources[name] = value
            used.add(index)
            slot_index += 1

    if any(v == 0 for v in resources.values()):
        remaining = sorted(
            (v for i, v in enumerate(tokens) if i not in used and v >= RESOURCE_MIN_TOKEN),
            reverse=True
        )
        for name, _ in slots:
            if resources[name] == 0 and remaining:
                resources[name] = remaining.pop(0)

    return resources


def parse_largest_quantity(text: str) -> int:
    """
    Largest token in a text band.

    A band sometimes catches part of the next line ("498.555 18.983"); taking
    the largest token avoids concatenating the two numbers.
    """
    values = extract_quantities(text)
    return max(values) if values else 0


def top_quantities(text: str, count: int = 3) -> List[int]:
    """Largest positive tokens, descending"""
    return sorted((v for v in extract_quantities(text) if v > 0), reverse=True)[:count]


def parse_count(text: str) -> int:
    """Bare integer of a troop slot badge ("x12" -> 12); no digits means 0"""
    if not text:
        return 0
    match = _DIGITS_RE.search(text)
    return int(match.group(0)) if match else 0
