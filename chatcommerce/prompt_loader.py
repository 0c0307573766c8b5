from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List

from .catalog import Catalog

PLACEHOLDER_TEMPLATE = "<<{name}>>"
MAX_CATALOG_ITEMS = 20


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; pure function reading the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used when building the system prompt.
    Failure Modes: UnicodeDecodeError triggers a fallback decode with errors ignored,
        which can drop invalid bytes.
    If Removed: The orchestrator has no system prompt template to render.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    # Read as UTF-8 and fall back to a tolerant decode if needed.
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        text = raw.decode("utf-8", errors="ignore")
        return text.lstrip("\ufeff")


def render_prompt(template: str, values: Dict[str, str]) -> str:
    # Replace <<NAME>> placeholders; unknown placeholders are left untouched.
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace(PLACEHOLDER_TEMPLATE.format(name=name), value)
    return rendered


def format_catalog(catalog: Catalog, currency: str = "FCFA", limit: int = MAX_CATALOG_ITEMS) -> str:
    """Purpose: Render catalog items as compact prompt lines with prices and variants.
    Inputs/Outputs: Inputs are a Catalog, currency label and item cap; output is text.
    Side Effects / State: None.
    Dependencies: Reads CatalogItem and VariantGroup fields.
    Failure Modes: Empty catalogs render a placeholder sentence.
    If Removed: The model quotes prices without seeing them, and the integrity
        check flags almost every reply.
    Testing Notes: An additive option renders as "+500 FCFA"; out-of-stock items are marked.
    """
    # One bullet per item, one indented line per variant group.
    lines: List[str] = []
    for item in list(catalog)[:limit]:
        price = f"{item.base_price} {currency}" if item.base_price is not None else "price depends on variant"
        header = f"- {item.name}: {price}"
        if not item.in_stock():
            header += " (out of stock)"
        lines.append(header)
        if item.description:
            lines.append(f"  {item.description}")
        for group in item.variants:
            options = ", ".join(_format_option(option.label, option.price, group.is_additive, currency) for option in group.options)
            kind = "supplements" if group.is_additive else "choose one"
            lines.append(f"  {group.name} ({kind}): {options}")
    return "\n".join(lines) if lines else "No products configured."


def format_knowledge(snippets: Iterable[str]) -> str:
    items = [snippet.strip() for snippet in snippets if snippet and snippet.strip()]
    return "\n\n".join(items) if items else "No additional knowledge."


def _format_option(label: str, price: int, additive: bool, currency: str) -> str:
    if not price:
        return label
    return f"{label} (+{price} {currency})" if additive else f"{label} ({price} {currency})"
