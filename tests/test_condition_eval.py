import pytest

from ruleflow.services.condition_service import evaluate_condition, evaluate_conditions, resolve_value


def test_empty_condition_list_matches_any_event():
    assert evaluate_conditions([], {"total": 10}) is True
    assert evaluate_conditions(None, None) is True


def test_conditions_are_and_combined():
    conditions = [
        {"field": "total", "operator": "greater_than", "value": 100},
        {"field": "currency", "operator": "equals", "value": "NGN"},
    ]
    assert evaluate_conditions(conditions, {"total": 150, "currency": "NGN"}) is True
    assert evaluate_conditions(conditions, {"total": 150, "currency": "USD"}) is False
    assert evaluate_conditions(conditions, {"total": 50, "currency": "NGN"}) is False


def test_dot_path_resolution_descends_dicts_and_lists():
    event = {"order": {"customer": {"email": "ada@example.com"}, "items": [{"sku": "A-1"}]}}
    assert resolve_value(event, "order.customer.email") == "ada@example.com"
    assert resolve_value(event, "order.items.0.sku") == "A-1"
    assert resolve_value(event, "order.items.3.sku") is None
    assert resolve_value(event, "order.missing.deeper") is None


def test_missing_field_satisfies_is_not_set_only():
    event = {"order": {}}
    assert evaluate_condition({"field": "order.customer.email", "operator": "is_not_set"}, event) is True
    assert evaluate_condition({"field": "order.customer.email", "operator": "is_set"}, event) is False
    assert evaluate_condition({"field": "order.customer.email", "operator": "equals", "value": None}, event) is False


def test_null_value_is_not_set():
    assert evaluate_condition({"field": "coupon", "operator": "is_set"}, {"coupon": None}) is False
    assert evaluate_condition({"field": "coupon", "operator": "is_not_set"}, {"coupon": None}) is True


def test_equals_is_type_strict():
    assert evaluate_condition({"field": "total", "operator": "equals", "value": 5000}, {"total": 5000}) is True
    assert evaluate_condition({"field": "total", "operator": "equals", "value": "5000"}, {"total": 5000}) is False
    assert evaluate_condition({"field": "paid", "operator": "equals", "value": True}, {"paid": 1}) is False
    assert evaluate_condition({"field": "paid", "operator": "not_equals", "value": True}, {"paid": False}) is True


def test_contains_compares_string_representations():
    event = {"note": "Please deliver before noon", "code": 12345, "tags": ["vip", "cod"]}
    assert evaluate_condition({"field": "note", "operator": "contains", "value": "deliver"}, event) is True
    assert evaluate_condition({"field": "code", "operator": "contains", "value": 234}, event) is True
    assert evaluate_condition({"field": "tags", "operator": "contains", "value": "cod"}, event) is True
    assert evaluate_condition({"field": "note", "operator": "not_contains", "value": "refund"}, event) is True


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "result"),
    [
        (6000, "greater_than", 5000, True),
        ("6000", "greater_than", 5000, True),
        (3000, "greater_than", "5000", False),
        ("abc", "greater_than", 1, False),
        ("abc", "less_than", 1, False),
        (None, "less_than", 1, True),
        (None, "greater_than", 0, False),
        ({"nested": 1}, "greater_than", 0, False),
    ],
)
def test_numeric_operators_coerce_and_nan_is_false(actual, operator, expected, result):
    condition = {"field": "total", "operator": operator, "value": expected}
    assert evaluate_condition(condition, {"total": actual}) is result


def test_numeric_operators_on_missing_field_are_false():
    assert evaluate_condition({"field": "total", "operator": "less_than", "value": 1}, {}) is False
    assert evaluate_condition({"field": "total", "operator": "greater_than", "value": -1}, {}) is False


def test_in_list_requires_a_list_value():
    event = {"city": "Lagos"}
    assert evaluate_condition({"field": "city", "operator": "in_list", "value": ["Abuja", "Lagos"]}, event) is True
    assert evaluate_condition({"field": "city", "operator": "in_list", "value": ["Abuja"]}, event) is False
    assert evaluate_condition({"field": "city", "operator": "in_list", "value": "Lagos"}, event) is False


def test_unknown_operator_is_permissive():
    assert evaluate_condition({"field": "total", "operator": "roughly", "value": 1}, {"total": 9}) is True


def test_branch_selection_is_deterministic():
    conditions = [{"field": "codConfirmed", "operator": "equals", "value": False}]
    event = {"codConfirmed": False}
    results = {evaluate_conditions(conditions, event) for _ in range(5)}
    assert results == {True}
