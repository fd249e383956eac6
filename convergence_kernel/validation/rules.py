"""
Field validation for submission payloads.

Validation is a pure function of (rule set, value). Nothing is cached: when
the active mode changes, errors are simply recomputed against the new rules.
"""

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel

from convergence_kernel.models.config import ValidationMode

FIELDS = ("email", "amount", "notes")


class RuleSet(BaseModel):
    email_pattern: str
    email_message: str
    min_amount: float
    max_amount: float
    notes_required: bool = False


RULES: Dict[ValidationMode, RuleSet] = {
    ValidationMode.RELAXED: RuleSet(
        email_pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
        email_message="Invalid email format",
        min_amount=0.01,
        max_amount=100000,
    ),
    ValidationMode.STRICT: RuleSet(
        email_pattern=r"^[a-zA-Z0-9._%+-]+@(corporate|business)\.com$",
        email_message="Strict mode: must be a @corporate.com or @business.com email",
        min_amount=1,
        max_amount=10000,
        notes_required=True,
    ),
}


def rules_for(mode: ValidationMode) -> RuleSet:
    return RULES[ValidationMode(mode)]


def validate_field(rules: RuleSet, name: str, value: Any) -> Optional[str]:
    """Error message for one field, or None if it passes."""
    if name == "email":
        if value is None or not str(value).strip():
            return "Email is required"
        if not re.match(rules.email_pattern, str(value)):
            return rules.email_message
        return None

    if name == "amount":
        if value is None or str(value).strip() == "":
            return "Amount is required"
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return "Amount must be a number"
        if amount < rules.min_amount:
            return f"Must be at least {rules.min_amount:g}"
        if amount > rules.max_amount:
            return f"Must be at most {rules.max_amount:g}"
        return None

    if name == "notes":
        if rules.notes_required and (value is None or not str(value).strip()):
            return "Notes are required in strict mode"
        return None

    return None


def validate_payload(rules: RuleSet, payload: dict) -> Dict[str, str]:
    """Errors keyed by field name; empty when the payload is valid."""
    errors = {}
    for name in FIELDS:
        error = validate_field(rules, name, payload.get(name))
        if error:
            errors[name] = error
    return errors
