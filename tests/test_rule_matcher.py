from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

from expenseflow.schemas import ExpenseCategory, UserRole
from expenseflow.services.rule_matcher import find_applicable_rule, rule_matches

COMPANY_ID = uuid4()


def make_rule(priority=1, sequence=0, **overrides):
    fields = dict(
        id=uuid4(),
        company_id=COMPANY_ID,
        is_active=True,
        priority=priority,
        sequence=sequence,
        amount_min=Decimal("0"),
        amount_max=None,
        categories=[],
        employee_roles=[],
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def resolve(rules, amount="100", category=ExpenseCategory.travel, role=UserRole.employee):
    return find_applicable_rule(rules, COMPANY_ID, Decimal(amount), category, role)


class TestRuleMatches:
    """Rule condition predicate"""

    def test_amount_range_is_inclusive(self):
        rule = make_rule(amount_min=Decimal("50"), amount_max=Decimal("500"))
        assert rule_matches(rule, COMPANY_ID, Decimal("50"), "Travel", "employee")
        assert rule_matches(rule, COMPANY_ID, Decimal("500"), "Travel", "employee")
        assert not rule_matches(rule, COMPANY_ID, Decimal("49.99"), "Travel", "employee")
        assert not rule_matches(rule, COMPANY_ID, Decimal("500.01"), "Travel", "employee")

    def test_missing_max_is_unbounded(self):
        rule = make_rule(amount_min=Decimal("500"))
        assert rule_matches(rule, COMPANY_ID, Decimal("1000000"), "Travel", "employee")

    def test_category_and_role_filters(self):
        rule = make_rule(categories=["Meals"], employee_roles=["manager"])
        assert rule_matches(rule, COMPANY_ID, Decimal("10"), ExpenseCategory.meals, UserRole.manager)
        assert not rule_matches(rule, COMPANY_ID, Decimal("10"), ExpenseCategory.travel, UserRole.manager)
        assert not rule_matches(rule, COMPANY_ID, Decimal("10"), ExpenseCategory.meals, UserRole.employee)

    def test_inactive_or_foreign_rules_never_match(self):
        assert not rule_matches(make_rule(is_active=False), COMPANY_ID, Decimal("1"), "Travel", "employee")
        assert not rule_matches(make_rule(company_id=uuid4()), COMPANY_ID, Decimal("1"), "Travel", "employee")


class TestFindApplicableRule:
    """Rule selection"""

    def test_no_match_returns_none(self):
        assert resolve([make_rule(amount_max=Decimal("10"))]) is None
        assert resolve([]) is None

    def test_highest_priority_wins(self):
        low = make_rule(priority=1, sequence=0)
        high = make_rule(priority=5, sequence=1)
        assert resolve([low, high]) is high

    def test_priority_tie_goes_to_earliest_sequence(self):
        first = make_rule(priority=3, sequence=0, name="first")
        second = make_rule(priority=3, sequence=1, name="second")
        assert resolve([second, first]) is first
        assert resolve([first, second]) is first

    def test_selection_is_deterministic(self):
        rules = [make_rule(priority=p, sequence=s) for s, p in enumerate([2, 7, 7, 1])]
        picks = {id(resolve(list(order))) for order in (rules, rules[::-1], rules[1:] + rules[:1])}
        assert len(picks) == 1
        assert resolve(rules) is rules[1]

    def test_inactive_high_priority_rule_is_ignored(self):
        active = make_rule(priority=1)
        inactive = make_rule(priority=10, is_active=False)
        assert resolve([inactive, active]) is active
