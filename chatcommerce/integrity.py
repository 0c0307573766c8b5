"""Heuristic detection of prices in a reply that the catalog cannot explain.

The check is permissive: legitimate replies quote quantities,
subtotals and totals, so a mention is accepted whenever it can be derived from
catalog prices by a plausible route. Anything left over is reported, never
rewritten.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .catalog import Catalog

DEFAULT_CURRENCY_TOKENS: Tuple[str, ...] = ("FCFA", "F CFA", "CFA", "XOF", "francs", "franc")
COMMON_QUANTITIES: Tuple[int, ...] = (
    1, 2, 3, 4, 5, 6, 7, 8, 9, 10,
    12, 15, 20, 24, 25, 30, 36, 40, 50, 60, 70, 76, 80, 90, 100,
)
MIN_PRICE = 50
MAX_MULTIPLIER = 1000
# Tolerance is relative to the amount found in the reply, not to the catalog candidate.
TOLERANCE_RATIO = 0.05
TOLERANCE_FLOOR = 10
VALID_SAMPLE_SIZE = 20

_NUMBER = r"(\d{1,3}(?:[ .,\u00a0\u202f]\d{3})+|\d+)"
_QUANTITY = re.compile(r"(?<![\d.,])(\d{1,4})(?![\d]|[.,]\d)")


@dataclass(frozen=True)
class PriceMention:
    amount: int
    start: int
    end: int


@dataclass(frozen=True)
class PriceIssue:
    """A mentioned price with no catalog-derived explanation."""
    mentioned_price: int
    valid_sample: Tuple[int, ...] = ()
    issue_type: str = "price_hallucination"

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.issue_type,
            "mentioned_price": self.mentioned_price,
            "valid_prices": list(self.valid_sample),
        }


@dataclass(frozen=True)
class IntegrityResult:
    valid: bool
    issues: Tuple[PriceIssue, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class _PriceBook:
    valid: Set[int]
    units: Tuple[int, ...]
    sample: Tuple[int, ...]


def verify_prices(
    reply_text: str,
    catalog: Catalog,
    currency_tokens: Sequence[str] = DEFAULT_CURRENCY_TOKENS,
) -> IntegrityResult:
    """Purpose: Flag prices quoted in a reply that cannot be derived from the catalog.
    Inputs/Outputs: Inputs are the reply text, the turn's Catalog and the currency tokens
        to look for; output is an IntegrityResult listing unexplained mentions.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_prices, _price_book and _is_explained.
    Failure Modes: Never raises on odd text. A catalog without any price yields a valid
        result because nothing can be checked.
    If Removed: Invented prices reach customers unnoticed.
    Testing Notes: base 15000 + additive 500: "15500 FCFA" passes, "99999 FCFA" is flagged;
        unit 5000: "50 000 FCFA" and "50 300 FCFA" pass, "80 000 FCFA" alone is flagged.
    """
    # Extract mentions, then accept each one through any plausible derivation.
    mentions = extract_prices(reply_text, currency_tokens)
    if not mentions:
        return IntegrityResult(valid=True)
    book = _price_book(catalog)
    if not book.valid:
        return IntegrityResult(valid=True)

    valid = set(book.valid)
    if len(mentions) > 1:
        running = mentions[0].amount
        for mention in mentions[1:]:
            running += mention.amount
            valid.add(running)

    stated = stated_quantities(reply_text, mentions)
    issues: List[PriceIssue] = []
    for mention in mentions:
        if not _is_explained(mention.amount, valid, book.units, stated):
            issues.append(PriceIssue(mentioned_price=mention.amount, valid_sample=book.sample))
    return IntegrityResult(valid=not issues, issues=tuple(issues))


def extract_prices(text: str, currency_tokens: Sequence[str] = DEFAULT_CURRENCY_TOKENS) -> List[PriceMention]:
    """Purpose: Find amounts immediately followed by a currency token.
    Inputs/Outputs: Input is free text; output lists PriceMention in reading order.
    Side Effects / State: None.
    Dependencies: Uses _currency_pattern.
    Failure Modes: Amounts below MIN_PRICE are ignored as noise.
    If Removed: verify_prices has nothing to check.
    Testing Notes: "1 500 FCFA", "1.500 FCFA", "1,500 CFA" and "1500F CFA" all give 1500.
    """
    # Strip separators from each captured number.
    if not text or not isinstance(text, str):
        return []
    mentions = []
    for match in _currency_pattern(tuple(currency_tokens)).finditer(text):
        amount = int(re.sub(r"\D", "", match.group(1)))
        if amount >= MIN_PRICE:
            mentions.append(PriceMention(amount=amount, start=match.start(), end=match.end()))
    return mentions


def stated_quantities(text: str, mentions: Iterable[PriceMention]) -> Set[int]:
    # Integers written outside price spans ("16 x 5 000 FCFA") count as multipliers.
    chars = list(text or "")
    for mention in mentions:
        for index in range(mention.start, mention.end):
            chars[index] = " "
    blanked = "".join(chars)
    quantities = set()
    for match in _QUANTITY.finditer(blanked):
        value = int(match.group(1))
        if 1 <= value <= MAX_MULTIPLIER:
            quantities.add(value)
    return quantities


def _price_book(catalog: Catalog) -> _PriceBook:
    literal: Set[int] = set()
    units: Set[int] = set()
    for item in catalog:
        if item.base_price:
            literal.add(item.base_price)
        bases = [item.base_price] if item.base_price else []
        for group in item.variants:
            if group.is_additive:
                continue
            for option in group.options:
                if option.price > 0:
                    literal.add(option.price)
                    bases.append(option.price)
        units.update(bases)
        for group in item.variants:
            if not group.is_additive:
                continue
            for option in group.options:
                if option.price <= 0:
                    continue
                literal.add(option.price)
                for base in bases:
                    units.add(base + option.price)
    units.discard(0)
    literal.update(units)
    valid = {price * quantity for price in literal for quantity in COMMON_QUANTITIES}
    sample = tuple(sorted(literal)[:VALID_SAMPLE_SIZE])
    return _PriceBook(valid=valid, units=tuple(sorted(units)), sample=sample)


def _is_explained(amount: int, valid: Set[int], units: Tuple[int, ...], stated: Set[int]) -> bool:
    tolerance = max(amount * TOLERANCE_RATIO, TOLERANCE_FLOOR)
    if amount in valid:
        return True
    if any(abs(amount - price) <= tolerance for price in valid):
        return True
    for unit in units:
        for quantity in stated:
            if abs(amount - unit * quantity) <= tolerance:
                return True
    if units:
        top = units[-1]
        if top * max(COMMON_QUANTITIES) < amount <= top * MAX_MULTIPLIER:
            return True
    return False


_PATTERN_CACHE: Dict[Tuple[str, ...], "re.Pattern[str]"] = {}


def _currency_pattern(tokens: Tuple[str, ...]) -> "re.Pattern[str]":
    cached: Optional["re.Pattern[str]"] = _PATTERN_CACHE.get(tokens)
    if cached is not None:
        return cached
    ordered = sorted({token.strip() for token in tokens if token.strip()}, key=len, reverse=True)
    if not ordered:
        ordered = sorted(DEFAULT_CURRENCY_TOKENS, key=len, reverse=True)
    alternatives = "|".join(re.escape(token).replace(r"\ ", r"\s?") for token in ordered)
    pattern = re.compile(rf"(?<![\d.,]){_NUMBER}\s*(?:{alternatives})(?!\w)", re.IGNORECASE)
    _PATTERN_CACHE[tokens] = pattern
    return pattern
