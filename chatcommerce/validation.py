"""Pre-execution checks for tool calls proposed by the completion service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .catalog import Catalog, CatalogItem
from .completion import ToolCall

logger = logging.getLogger("chatcommerce.validation")

CREATE_ORDER = "create_order"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def rejected(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


def validate_tool_call(tool_call: ToolCall, catalog: Catalog) -> ValidationResult:
    """Purpose: Reject create_order calls whose variant selections are missing or wrong.
    Inputs/Outputs: Inputs are the proposed ToolCall and the turn's Catalog; output is a
        ValidationResult whose error names the offending group and lists its options.
    Side Effects / State: None; pure and idempotent.
    Dependencies: Uses Catalog.resolve and VariantGroup.match.
    Failure Modes: Unknown products pass (the tool handler reports them); missing or
        non-list items fail. Stops at the first violation.
    If Removed: Orders with unchosen sizes/flavours would be created and billed.
    Testing Notes: Missing "Taille" lists Petite/Moyenne/Grande; "small" matches "Small (50g)".
    """
    # Only orders carry variant selections worth checking.
    if tool_call.name != CREATE_ORDER:
        return ValidationResult.ok()

    arguments = tool_call.arguments if isinstance(tool_call.arguments, Mapping) else {}
    items = arguments.get("items")
    if not isinstance(items, list):
        return ValidationResult.rejected("Order has no items: 'items' must be a list of products.")

    for line in items:
        if not isinstance(line, Mapping):
            continue
        product = catalog.resolve(line.get("product_name"))
        if product is None or not product.has_variants:
            continue
        error = _check_line(product, line.get("selected_variants"))
        if error:
            logger.info("tool=%s product=%s precheck=rejected", tool_call.name, product.name)
            return ValidationResult.rejected(error)
    return ValidationResult.ok()


def _check_line(product: CatalogItem, selected_variants: Any) -> Optional[str]:
    selection = selected_variants if isinstance(selected_variants, Mapping) else {}
    for group in product.variants:
        options = ", ".join(group.labels())
        found, value = product.selection_for(group, selection)
        if not found:
            return (
                f'Missing choice "{group.name}" for "{product.name}". '
                f"Ask the customer to choose one of: {options}."
            )
        if group.match(value) is None:
            return (
                f'"{value}" is not a valid "{group.name}" for "{product.name}". '
                f"Available options: {options}."
            )
    return None
