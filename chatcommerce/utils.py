import json
import re
import unicodedata
from typing import Any, Dict, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable, accent-insensitive matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase string with
        diacritics removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by catalog matching and retrieval.
    Failure Modes: Returns an empty string when input is falsy or not a string.
    If Removed: Variant and product matching become accent/case sensitive and
        pre-validation rejects legitimate orders.
    Testing Notes: "Épicé " -> "epice"; "Small  (50g)" -> "small (50g)".
    """
    # Lowercase, strip combining marks and collapse whitespace.
    if not text or not isinstance(text, str):
        return ""
    decomposed = unicodedata.normalize("NFD", text.casefold())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return re.sub(r"\s+", " ", stripped).strip()


def tokenize(text: str) -> list:
    cleaned = re.sub(r"[^a-z0-9]+", " ", normalize_text(text))
    return [token for token in cleaned.split() if token]


_JSON_DECODER = json.JSONDecoder()


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Read the first JSON object embedded in a model-produced string.
    Inputs/Outputs: Input is raw text, possibly with prose around the object; output is
        the decoded dict or None.
    Side Effects / State: None.
    Dependencies: json.JSONDecoder.raw_decode, tried from each "{" in turn.
    Failure Modes: No decodable object (or only arrays/scalars) returns None.
    If Removed: Tool arguments replayed as strings cannot be dispatched.
    Testing Notes: 'args: {"a": 1} done' -> {"a": 1}; "{broken" -> None.
    """
    # Try each opening brace until one decodes to a dict.
    if not isinstance(text, str):
        return None
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _JSON_DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def coerce_arguments(arguments: Any) -> Optional[Dict[str, Any]]:
    # Tool arguments arrive as a dict from the SDK or as a JSON string from history.
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        return parse_json_object(arguments)
    return None


def mask_phone(value: object) -> str:
    # Only the trailing three digits survive; short values are fully hidden.
    digits = re.sub(r"\D", "", "" if value is None else str(value))
    if not digits:
        return ""
    return f"***{digits[-3:]}" if len(digits) >= 4 else "***"


_SENSITIVE_KEYS = ("phone", "customer_phone", "phone_number", "email", "delivery_address", "address")
_E164 = re.compile(r"^\+\d{10,15}$")


def sanitize_for_log(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Purpose: Return a log-safe shallow copy of tool arguments.
    Inputs/Outputs: Input is an argument dict; output masks contact fields.
    Side Effects / State: None.
    Dependencies: Uses mask_phone.
    Failure Modes: None; non-dict input returns an empty dict.
    If Removed: Order payloads leak customer contact data into logs.
    Testing Notes: Ensure phone, email and address fields are masked.
    """
    # Mask phone digits, hide email local parts, truncate addresses.
    if not isinstance(payload, dict):
        return {}
    safe = dict(payload)
    for key in _SENSITIVE_KEYS:
        value = safe.get(key)
        if not value:
            continue
        if "phone" in key:
            safe[key] = mask_phone(value)
        elif key == "email":
            domain = str(value).partition("@")[2]
            safe[key] = f"***@{domain}" if domain else "***"
        else:
            safe[key] = str(value)[:10] + "..."
    return safe


def normalize_phone(phone: object) -> str:
    """Purpose: Normalize a customer phone number to +<country><number>.
    Inputs/Outputs: Input is any phone-like value; output is "+" and 10-15 digits, or "".
    Side Effects / State: None.
    Dependencies: Uses regex cleanup; called by order, booking and lookup tools.
    Failure Modes: Numbers without an international prefix ("+" or "00") or with the
        wrong digit count return an empty string; a local number is never guessed.
    If Removed: The same customer is stored under several phone spellings and
        find_order misses their orders.
    Testing Notes: "00225 07 07 12 34 56" -> "+2250707123456"; "07 07 12 34 56" -> "".
    """
    # Strip separators, turn 00 into +, then require the international form.
    if phone is None:
        return ""
    cleaned = re.sub(r"[\s\-()]", "", str(phone).strip())
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]
    if not _E164.match(cleaned):
        return ""
    return cleaned
