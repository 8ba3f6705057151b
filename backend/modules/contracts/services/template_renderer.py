"""
Placeholder substitution for contract templates.

Templates carry ``{{ key }}`` tokens; whitespace inside the braces is ignored
and any token without a value renders as an empty string.
"""

import re
from typing import Any, Dict, Mapping, Optional

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

CLAUSES_HEADING = "ADDITIONAL TERMS"
NO_CLAUSES = "No additional terms."


def fill_placeholders(text: Optional[str], data: Mapping[str, Any]) -> str:
    def _value(match):
        value = data.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(_value, text or "")


def append_clauses(body: str, custom_clauses: Optional[str]) -> str:
    clauses = custom_clauses.strip() if custom_clauses and custom_clauses.strip() else NO_CLAUSES
    return f"{body}\n---\n{CLAUSES_HEADING}\n{clauses}\n---"


def render_contract(
    header: str,
    body: str,
    footer: str,
    data: Dict[str, Any],
    custom_clauses: Optional[str] = None,
) -> str:
    """Header, body with the clause block, and footer separated by blank lines"""
    filled_body = append_clauses(fill_placeholders(body, data), custom_clauses)
    return "\n\n".join(
        [fill_placeholders(header, data), filled_body, fill_placeholders(footer, data)]
    )


def format_amount(amount: Optional[int]) -> str:
    """Thousands separated with dots, e.g. 520.000"""
    return f"{amount or 0:,}".replace(",", ".")
