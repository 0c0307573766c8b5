"""Merchant catalog model and loader.

Merchant catalogs arrive as loosely-typed JSON (string options, several price
key spellings, legacy "supplement" groups, null prices). Everything is
normalized into Catalog/CatalogItem/VariantGroup/Option once at load time so
the validator, the price verifier and tool handlers only see one shape.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .utils import normalize_text

FIXED = "fixed"
ADDITIVE = "additive"

PRICE_KEYS = ["price", "price_fcfa", "base_price"]
OPTION_LABEL_KEYS = ["value", "name", "label"]
ADDITIVE_ALIASES = {"additive", "supplement", "supplements", "addon", "add-on"}
UNLIMITED_STOCK = -1

_TRAILING_PARENTHETICAL = re.compile(r"\s*\([^)]*\)\s*$")
_PRICE_TOKEN = re.compile(r"(-)?\s*(\d[\d\s'.,]*)")


@dataclass(frozen=True)
class Option:
    """One selectable option inside a variant group."""
    label: str
    price: int = 0
    image_url: str = ""


@dataclass(frozen=True)
class VariantGroup:
    """Named option group; fixed groups replace the base price, additive ones add to it."""
    name: str
    kind: str
    options: Tuple[Option, ...]

    @property
    def is_additive(self) -> bool:
        return self.kind == ADDITIVE

    def labels(self) -> List[str]:
        return [option.label for option in self.options]

    def match(self, selected: object) -> Optional[Option]:
        """Purpose: Find the option a customer (or the model) meant by a free-text label.
        Inputs/Outputs: Input is the selected label; output is the matched Option or None.
        Side Effects / State: None.
        Dependencies: Uses match_option.
        Failure Modes: Empty or non-string selections never match.
        If Removed: Pre-validation and unit pricing cannot resolve selections.
        Testing Notes: "small" matches "Small (50g)"; "Large" does not.
        """
        # Delegate to the shared fuzzy matcher.
        return match_option(self.options, selected)


@dataclass(frozen=True)
class CatalogItem:
    """Immutable product snapshot used for the duration of a turn."""
    item_id: str
    name: str
    base_price: Optional[int]
    variants: Tuple[VariantGroup, ...] = ()
    description: str = ""
    image_url: str = ""
    stock_quantity: Optional[int] = None
    product_type: str = "physical"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], index: int = 0) -> "CatalogItem":
        """Purpose: Normalize one raw merchant product dict into a CatalogItem.
        Inputs/Outputs: Input is the raw dict and its position; output is a CatalogItem.
        Side Effects / State: None.
        Dependencies: Uses parse_price and _normalize_group.
        Failure Modes: Missing names become empty strings; bad prices become None.
        If Removed: Core components would have to handle every raw variant shape.
        Testing Notes: Feed string options, "supplement" groups and price_fcfa keys.
        """
        # Pick the first usable price key and normalize each variant group.
        base_price = None
        for key in PRICE_KEYS:
            if key in raw:
                base_price = parse_price(raw.get(key))
                if base_price is not None:
                    break
        groups = []
        raw_variants = raw.get("variants")
        if isinstance(raw_variants, list):
            for raw_group in raw_variants:
                group = _normalize_group(raw_group)
                if group is not None:
                    groups.append(group)
        stock = raw.get("stock_quantity")
        return cls(
            item_id=str(raw.get("id") or raw.get("item_id") or f"item-{index}"),
            name=str(raw.get("name") or "").strip(),
            base_price=base_price,
            variants=tuple(groups),
            description=str(raw.get("description") or "").strip(),
            image_url=str(raw.get("image_url") or raw.get("image") or "").strip(),
            stock_quantity=stock if isinstance(stock, int) and not isinstance(stock, bool) else None,
            product_type=str(raw.get("product_type") or "physical"),
        )

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def group(self, name: object) -> Optional[VariantGroup]:
        wanted = normalize_text(name) if isinstance(name, str) else ""
        if not wanted:
            return None
        for group in self.variants:
            if normalize_text(group.name) == wanted:
                return group
        return None

    def selection_for(self, group: VariantGroup, selected_variants: Mapping[str, Any]) -> Tuple[bool, Any]:
        # Selection keys match group names case-insensitively.
        wanted = normalize_text(group.name)
        for key, value in selected_variants.items():
            if isinstance(key, str) and normalize_text(key) == wanted:
                return True, value
        return False, None

    def unit_price(self, selected_variants: Optional[Mapping[str, Any]] = None) -> Optional[int]:
        """Purpose: Compute the effective unit price for a variant selection.
        Inputs/Outputs: Input is a group-name -> label mapping; output is the price or
            None when neither a base price nor a priced fixed option is available.
        Side Effects / State: None.
        Dependencies: Uses selection_for and VariantGroup.match.
        Failure Modes: Unmatched selections contribute nothing.
        If Removed: Order totals cannot be computed by tool handlers.
        Testing Notes: base 15000 + additive 500 -> 15500; fixed 3000 replaces base.
        """
        # Start from base, let a priced fixed option replace it, add additive options.
        price = self.base_price
        extras = 0
        selection = selected_variants or {}
        for group in self.variants:
            found, value = self.selection_for(group, selection)
            if not found:
                continue
            option = group.match(value)
            if option is None:
                continue
            if group.is_additive:
                extras += option.price
            elif option.price > 0:
                price = option.price
        if price is None:
            return None
        return price + extras

    def in_stock(self, quantity: int = 1) -> bool:
        if self.stock_quantity is None or self.stock_quantity == UNLIMITED_STOCK:
            return True
        return self.stock_quantity >= quantity


@dataclass(frozen=True)
class Catalog:
    """Ordered collection of catalog items with product-name resolution."""
    items: Tuple[CatalogItem, ...] = ()

    @classmethod
    def from_raw(cls, raw_items: Any) -> "Catalog":
        if not isinstance(raw_items, list):
            return cls()
        items = [
            CatalogItem.from_raw(raw, index)
            for index, raw in enumerate(raw_items)
            if isinstance(raw, Mapping)
        ]
        return cls(items=tuple(items))

    def __iter__(self) -> Iterator[CatalogItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def resolve(self, product_name: object) -> Optional[CatalogItem]:
        """Purpose: Resolve a product name supplied by the model to a catalog item.
        Inputs/Outputs: Input is a name; output is the CatalogItem or None.
        Side Effects / State: None.
        Dependencies: Uses normalize_text.
        Failure Modes: Empty names and unknown products return None.
        If Removed: Pre-validation and order handlers cannot find products.
        Testing Notes: Exact match beats containment; "pizza" finds "Pizza Reine".
        """
        # Exact match first, then containment in either direction.
        wanted = normalize_text(product_name) if isinstance(product_name, str) else ""
        if not wanted:
            return None
        for item in self.items:
            if normalize_text(item.name) == wanted:
                return item
        for item in self.items:
            name = normalize_text(item.name)
            if name and (wanted in name or name in wanted):
                return item
        return None


@dataclass
class CatalogMeta:
    file_name: str
    updated_at: str
    sha256: str
    merchant: Dict[str, Any] = field(default_factory=dict)


class CatalogLoader:
    def __init__(self, path: Path) -> None:
        """Purpose: Configure the loader with a merchant catalog file path.
        Inputs/Outputs: Input is a Path to a catalog JSON file; no return value.
        Side Effects / State: Stores the path for later load calls.
        Dependencies: None beyond Path usage.
        Failure Modes: None at init; load() handles read/parse errors.
        If Removed: Agents cannot be served from catalog files.
        Testing Notes: Instantiate with a tmp_path file and call load().
        """
        # Store the catalog file location for subsequent loads.
        self._path = path

    def load(self) -> Tuple[Catalog, CatalogMeta]:
        """Purpose: Load and normalize a merchant catalog file.
        Inputs/Outputs: No inputs; returns the Catalog and CatalogMeta.
        Side Effects / State: Reads file contents and computes hash/mtime.
        Dependencies: Uses json, hashlib and Catalog.from_raw.
        Failure Modes: Missing file or JSON decode errors raise to the caller.
        If Removed: The HTTP surface has no catalog to hand the orchestrator.
        Testing Notes: Accepts a bare list or an object with items/products/agent keys.
        """
        # Read bytes for hashing and parse JSON into normalized items.
        raw_bytes = self._path.read_bytes()
        sha256 = hashlib.sha256(raw_bytes).hexdigest()
        updated_at = datetime.fromtimestamp(self._path.stat().st_mtime).isoformat()

        data = json.loads(raw_bytes.decode("utf-8-sig"))
        merchant: Dict[str, Any] = {}
        if isinstance(data, dict):
            raw_items = data.get("items", data.get("products", []))
            if isinstance(data.get("agent"), dict):
                merchant = data["agent"]
        elif isinstance(data, list):
            raw_items = data
        else:
            raw_items = []

        meta = CatalogMeta(
            file_name=self._path.name,
            updated_at=updated_at,
            sha256=sha256,
            merchant=merchant,
        )
        return Catalog.from_raw(raw_items), meta


def parse_price(value: Any) -> Optional[int]:
    """Purpose: Read a catalog price from a number or a merchant-typed string.
    Inputs/Outputs: Input is any raw price value; output is a rounded non-negative int or None.
    Side Effects / State: None.
    Dependencies: Uses _PRICE_TOKEN.
    Failure Modes: Negative, boolean and digit-free values return None.
    If Removed: "5 000" style prices leave products unpriced.
    Testing Notes: "2500.00" -> 2500; "15.000" -> 15000; "-500" -> None.
    """
    # Spaces and apostrophes group thousands; a lone separator before 3 digits does too.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if value >= 0 else None
    if not isinstance(value, str):
        return None
    match = _PRICE_TOKEN.search(value)
    if match is None or match.group(1):
        return None
    number = re.sub(r"[\s']", "", match.group(2)).rstrip(".,")
    separators = [char for char in number if char in ".,"]
    if separators:
        last = number.rfind(separators[-1])
        grouped = len(set(separators)) == 1 and (len(separators) > 1 or len(number) - last - 1 == 3)
        if grouped:
            number = number.replace(separators[-1], "")
        else:
            number = number[:last].replace(".", "").replace(",", "") + "." + number[last + 1 :]
    return int(round(float(number)))


def match_option(options: Tuple[Option, ...], selected: object) -> Optional[Option]:
    """Purpose: Fuzzy-match a selected label against a group's options.
    Inputs/Outputs: Inputs are options and the selected label; output is an Option or None.
    Side Effects / State: None; pure function.
    Dependencies: Uses normalize_text and _TRAILING_PARENTHETICAL.
    Failure Modes: Empty selections return None; first option wins on ambiguity.
    If Removed: Orders with slightly different casing or labels would be rejected.
    Testing Notes: Exact, parenthetical-stripped and substring passes are tried in order.
    """
    # Three passes: exact, label without trailing "(...)", then containment.
    if isinstance(selected, bool) or not isinstance(selected, (str, int, float)):
        return None
    wanted = normalize_text(str(selected))
    if not wanted:
        return None
    normalized = [(option, normalize_text(option.label)) for option in options]
    for option, label in normalized:
        if label == wanted:
            return option
    for option, label in normalized:
        if _TRAILING_PARENTHETICAL.sub("", label) == wanted:
            return option
    for option, label in normalized:
        if label and (wanted in label or label in wanted):
            return option
    return None


def _normalize_group(raw_group: Any) -> Optional[VariantGroup]:
    if not isinstance(raw_group, Mapping):
        return None
    name = str(raw_group.get("name") or "").strip()
    kind_raw = normalize_text(str(raw_group.get("type") or raw_group.get("kind") or ""))
    kind = ADDITIVE if kind_raw in ADDITIVE_ALIASES else FIXED
    options = []
    raw_options = raw_group.get("options")
    if isinstance(raw_options, list):
        for raw_option in raw_options:
            option = _normalize_option(raw_option)
            if option is not None:
                options.append(option)
    if not name or not options:
        return None
    return VariantGroup(name=name, kind=kind, options=tuple(options))


def _normalize_option(raw_option: Any) -> Optional[Option]:
    if isinstance(raw_option, str):
        label = raw_option.strip()
        return Option(label=label) if label else None
    if isinstance(raw_option, (int, float)) and not isinstance(raw_option, bool):
        return Option(label=str(raw_option))
    if not isinstance(raw_option, Mapping):
        return None
    label = ""
    for key in OPTION_LABEL_KEYS:
        value = raw_option.get(key)
        if value not in (None, ""):
            label = str(value).strip()
            break
    if not label:
        return None
    price = None
    for key in PRICE_KEYS:
        if key in raw_option:
            price = parse_price(raw_option.get(key))
            if price is not None:
                break
    image_url = str(raw_option.get("image") or raw_option.get("image_url") or "").strip()
    return Option(label=label, price=price or 0, image_url=image_url)
