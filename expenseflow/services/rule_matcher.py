"""
Approval rule matching.

Pure functions over rule attributes: no database access, no side effects. The
rule service loads candidate rules and delegates the selection here.
"""

from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID


def _value(item: Any) -> str:
    return getattr(item, "value", item)


def rule_matches(
    rule: Any,
    company_id: UUID,
    converted_amount: Decimal,
    category: Any,
    employee_role: Any,
) -> bool:
    """
    Check whether a rule's conditions hold for an expense.

    Args:
        rule: Object exposing is_active, company_id, amount_min, amount_max,
            categories and employee_roles
        company_id: Company of the expense
        converted_amount: Expense amount in the company currency
        category: Expense category (enum member or its value)
        employee_role: Role of the submitting employee (enum member or its value)

    Returns:
        bool: True if every condition matches
    """
    if not rule.is_active or rule.company_id != company_id:
        return False

    amount = Decimal(str(converted_amount))
    if amount < Decimal(str(rule.amount_min or 0)):
        return False
    if rule.amount_max is not None and amount > Decimal(str(rule.amount_max)):
        return False

    categories = rule.categories or []
    if categories and _value(category) not in categories:
        return False

    roles = rule.employee_roles or []
    if roles and _value(employee_role) not in roles:
        return False

    return True


def find_applicable_rule(
    rules: Iterable[Any],
    company_id: UUID,
    converted_amount: Decimal,
    category: Any,
    employee_role: Any,
) -> Optional[Any]:
    """
    Select the single rule that governs an expense.

    The highest priority wins; among equal priorities the rule with the lowest
    sequence (inserted first) wins. Returns None when nothing matches.
    """
    matching = [
        rule for rule in rules
        if rule_matches(rule, company_id, converted_amount, category, employee_role)
    ]
    if not matching:
        return None

    # Stable sort keeps input order for identical keys.
    matching.sort(key=lambda rule: (-rule.priority, rule.sequence))
    return matching[0]
