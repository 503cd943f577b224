"""Compile declarative segment rule sets into SQLAlchemy predicates.

A rule set looks like::

    {"conditionType": "AND",
     "conditions": [{"field": "totalSpend", "operator": "greaterThan", "value": 10000}]}

Each condition becomes one clause against the ``customers`` table and the
clauses are joined with AND or OR. Rule sets are validated here so that
malformed conditions reach the caller as ``InvalidRuleError`` before any
audience is resolved.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import String, and_, cast, func, or_
from sqlalchemy.sql.elements import ColumnElement

from campaign_broker.core.config import settings as default_settings
from campaign_broker.core.db import utcnow
from campaign_broker.core.errors import InvalidRuleError
from campaign_broker.models.customer import Customer


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    BETWEEN = "between"
    IN_LAST = "inLast"
    NOT_IN_LAST = "notInLast"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"

    @classmethod
    def parse(cls, raw: str, *, strict: bool, index: int | None = None) -> "Operator":
        """Map an operator string to its kind; unknown ones become EQUALS unless strict."""

        try:
            return cls(raw)
        except ValueError:
            if strict:
                raise InvalidRuleError(f"unknown operator '{raw}'", index=index) from None
            logger.bind(operator=raw, index=index).warning("rule_operator_defaulted_to_equals")
            return cls.EQUALS


class ConditionType(str, Enum):
    AND = "AND"
    OR = "OR"


class FieldKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    LIST = "list"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    column: Any
    kind: FieldKind


FIELDS: dict[str, FieldSpec] = {
    "name": FieldSpec(Customer.name, FieldKind.TEXT),
    "email": FieldSpec(Customer.email, FieldKind.TEXT),
    "phone": FieldSpec(Customer.phone, FieldKind.TEXT),
    "location": FieldSpec(Customer.location, FieldKind.TEXT),
    "totalSpend": FieldSpec(Customer.total_spend, FieldKind.NUMBER),
    "orderCount": FieldSpec(Customer.order_count, FieldKind.NUMBER),
    "lastOrderDate": FieldSpec(Customer.last_order_date, FieldKind.DATE),
    "createdAt": FieldSpec(Customer.created_at, FieldKind.DATE),
    "isActive": FieldSpec(Customer.is_active, FieldKind.BOOLEAN),
    "tags": FieldSpec(Customer.tags, FieldKind.LIST),
}

FIELD_ALIASES = {
    "total_spend": "totalSpend",
    "order_count": "orderCount",
    "last_order_date": "lastOrderDate",
    "created_at": "createdAt",
    "is_active": "isActive",
}

_EXISTENCE = {Operator.IS_NULL, Operator.IS_NOT_NULL, Operator.EXISTS, Operator.NOT_EXISTS}
_ORDERING = {
    Operator.GREATER_THAN,
    Operator.LESS_THAN,
    Operator.GREATER_THAN_OR_EQUAL,
    Operator.LESS_THAN_OR_EQUAL,
    Operator.BETWEEN,
}
_TEXT_MATCH = {Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH}

SUPPORTED_OPERATORS: dict[FieldKind, set[Operator]] = {
    FieldKind.TEXT: {Operator.EQUALS, Operator.NOT_EQUALS} | _TEXT_MATCH | _EXISTENCE,
    FieldKind.NUMBER: {Operator.EQUALS, Operator.NOT_EQUALS} | _ORDERING | _EXISTENCE,
    FieldKind.DATE: {Operator.EQUALS, Operator.NOT_EQUALS, Operator.IN_LAST, Operator.NOT_IN_LAST}
    | _ORDERING
    | _EXISTENCE,
    FieldKind.BOOLEAN: {Operator.EQUALS, Operator.NOT_EQUALS} | _EXISTENCE,
    FieldKind.LIST: {Operator.EQUALS, Operator.NOT_EQUALS, Operator.CONTAINS} | _EXISTENCE,
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_number(value: Any, index: int) -> float | int:
    if isinstance(value, bool):
        raise InvalidRuleError(f"expected a number, got {value!r}", index=index)
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        return int(text) if text.lstrip("-").isdigit() else float(text)
    except (TypeError, ValueError):
        raise InvalidRuleError(f"expected a number, got {value!r}", index=index) from None


def _to_datetime(value: Any, index: int) -> tuple[datetime, bool]:
    """Return ``(moment, date_only)`` as naive UTC."""

    if isinstance(value, datetime):
        parsed, date_only = value, False
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day), True
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRuleError(f"expected an ISO date, got {value!r}", index=index) from None
        date_only = len(text) == 10
    else:
        raise InvalidRuleError(f"expected an ISO date, got {value!r}", index=index)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed, date_only


def _to_bool(value: Any, index: int) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0", "yes", "no"}:
        return value.strip().lower() in {"true", "1", "yes"}
    raise InvalidRuleError(f"expected a boolean, got {value!r}", index=index)


def _to_days(value: Any, index: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise InvalidRuleError(f"expected a whole number of days, got {value!r}", index=index)


def _coerce(spec: FieldSpec, value: Any, index: int) -> Any:
    if spec.kind is FieldKind.NUMBER:
        return _to_number(value, index)
    if spec.kind is FieldKind.BOOLEAN:
        return _to_bool(value, index)
    return str(value)


def _range_bounds(value: Any, index: int) -> tuple[Any, Any]:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        raise InvalidRuleError("between expects a [min, max] pair", index=index)
    return value[0], value[1]


def _text_clause(column: Any, operator: Operator, value: str) -> ColumnElement[bool]:
    lowered = func.lower(column)
    needle = value.lower()
    if operator is Operator.EQUALS:
        return lowered == needle
    if operator is Operator.NOT_EQUALS:
        return or_(column.is_(None), lowered != needle)
    escaped = _escape_like(needle)
    pattern = {
        Operator.CONTAINS: f"%{escaped}%",
        Operator.STARTS_WITH: f"{escaped}%",
        Operator.ENDS_WITH: f"%{escaped}",
    }[operator]
    return lowered.like(pattern, escape="\\")


def _list_clause(column: Any, operator: Operator, value: Any) -> ColumnElement[bool]:
    # JSON arrays are stored as '["a", "b"]'; match the quoted element.
    element = _escape_like(json.dumps(str(value)).lower())
    member = func.lower(cast(column, String)).like(f"%{element}%", escape="\\")
    if operator is Operator.NOT_EQUALS:
        return or_(column.is_(None), ~member)
    return member


def _date_clause(column: Any, operator: Operator, value: Any, index: int) -> ColumnElement[bool]:
    """Compare a date column; a date-only value stands for its whole UTC day."""

    if operator is Operator.BETWEEN:
        low, high = _range_bounds(value, index)
        return and_(
            _date_clause(column, Operator.GREATER_THAN_OR_EQUAL, low, index),
            _date_clause(column, Operator.LESS_THAN_OR_EQUAL, high, index),
        )

    moment, date_only = _to_datetime(value, index)
    if not date_only:
        return _compare(column, operator, moment)

    next_day = moment + timedelta(days=1)
    same_day = and_(column >= moment, column < next_day)
    if operator is Operator.EQUALS:
        return same_day
    if operator is Operator.NOT_EQUALS:
        return or_(column.is_(None), ~same_day)
    if operator is Operator.GREATER_THAN:
        return column >= next_day
    if operator is Operator.LESS_THAN_OR_EQUAL:
        return column < next_day
    return _compare(column, operator, moment)


def _compare(column: Any, operator: Operator, coerced: Any) -> ColumnElement[bool]:
    if operator is Operator.EQUALS:
        return column == coerced
    if operator is Operator.NOT_EQUALS:
        return or_(column.is_(None), column != coerced)
    if operator is Operator.GREATER_THAN:
        return column > coerced
    if operator is Operator.LESS_THAN:
        return column < coerced
    if operator is Operator.GREATER_THAN_OR_EQUAL:
        return column >= coerced
    return column <= coerced


def _compile_condition(
    condition: Mapping[str, Any],
    index: int,
    *,
    now: datetime,
    strict: bool,
) -> ColumnElement[bool]:
    if not isinstance(condition, Mapping):
        raise InvalidRuleError("condition must be an object", index=index)
    for key in ("field", "operator", "value"):
        if condition.get(key) is None:
            raise InvalidRuleError(f"missing '{key}'", index=index)

    raw_field = str(condition["field"])
    field_name = FIELD_ALIASES.get(raw_field, raw_field)
    spec = FIELDS.get(field_name)
    if spec is None:
        raise InvalidRuleError(f"unknown field '{raw_field}'", index=index)

    operator = Operator.parse(str(condition["operator"]), strict=strict, index=index)
    if operator not in SUPPORTED_OPERATORS[spec.kind]:
        raise InvalidRuleError(
            f"operator '{operator.value}' is not supported for field '{field_name}'",
            index=index,
        )

    column = spec.column
    value = condition["value"]

    if operator in (Operator.IS_NULL, Operator.NOT_EXISTS):
        return column.is_(None)
    if operator in (Operator.IS_NOT_NULL, Operator.EXISTS):
        return column.is_not(None)

    if operator in (Operator.IN_LAST, Operator.NOT_IN_LAST):
        cutoff = now - timedelta(days=_to_days(value, index))
        return column >= cutoff if operator is Operator.IN_LAST else column < cutoff

    if spec.kind is FieldKind.TEXT:
        return _text_clause(column, operator, str(value))
    if spec.kind is FieldKind.LIST:
        return _list_clause(column, operator, value)

    if spec.kind is FieldKind.DATE:
        return _date_clause(column, operator, value, index)

    if operator is Operator.BETWEEN:
        low, high = _range_bounds(value, index)
        return and_(column >= _coerce(spec, low, index), column <= _coerce(spec, high, index))

    return _compare(column, operator, _coerce(spec, value, index))


def compile_rule_set(
    rule_set: Mapping[str, Any],
    *,
    now: datetime | None = None,
    strict: bool | None = None,
) -> ColumnElement[bool]:
    """Compile a rule set into a boolean expression over ``Customer`` columns.

    Args:
        rule_set: ``{"conditionType": "AND"|"OR", "conditions": [...]}``.
        now: reference time for ``inLast``/``notInLast``; defaults to UTC now.
        strict: reject unknown operators instead of treating them as equality.
            Defaults to ``RULES_STRICT_OPERATORS``.

    Raises:
        InvalidRuleError: the rule set or one of its conditions is malformed.
    """

    if not isinstance(rule_set, Mapping):
        raise InvalidRuleError("rule set must be an object")
    strict = default_settings.RULES_STRICT_OPERATORS if strict is None else strict
    now = now or utcnow()

    raw_type = rule_set.get("conditionType", rule_set.get("condition_type")) or "AND"
    try:
        condition_type = ConditionType(str(raw_type).upper())
    except ValueError:
        raise InvalidRuleError(f"conditionType must be AND or OR, got {raw_type!r}") from None

    conditions = rule_set.get("conditions")
    if not isinstance(conditions, (list, tuple)) or not conditions:
        raise InvalidRuleError("rule set needs at least one condition")

    clauses = [
        _compile_condition(condition, index, now=now, strict=strict)
        for index, condition in enumerate(conditions)
    ]
    if len(clauses) == 1:
        return clauses[0]
    if condition_type is ConditionType.AND:
        return and_(*clauses)
    return or_(*clauses)


def validate_rule_set(rule_set: Mapping[str, Any], *, strict: bool | None = None) -> None:
    """Compile and discard; raises ``InvalidRuleError`` for malformed rule sets."""

    compile_rule_set(rule_set, strict=strict)

