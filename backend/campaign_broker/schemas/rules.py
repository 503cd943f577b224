"""Pydantic models for segment rule sets."""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConditionIn(BaseModel):
    """One ``{field, operator, value}`` condition.

    Every key is optional here so that incomplete conditions reach the rule
    compiler and come back as a descriptive 400 instead of a generic 422.
    """

    field: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None


class RuleSetIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    condition_type: str = Field("AND", alias="conditionType", description="AND | OR")
    conditions: List[ConditionIn] = Field(default_factory=list)

    def to_rules(self) -> dict[str, Any]:
        return {
            "conditionType": self.condition_type,
            "conditions": [condition.model_dump() for condition in self.conditions],
        }
