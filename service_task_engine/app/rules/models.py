"""
Detection rule data models.
"""

from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    CONTAINS = "contains"


class ConditionLogic(str, Enum):
    """How a rule combines its conditions."""
    AND = "and"
    OR = "or"


class Severity(str, Enum):
    """Grey-area severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EntityType(str, Enum):
    """Business object kinds the built-in catalog targets."""
    TASK = "task"
    EVENT = "event"
    EMPLOYEE = "employee"
    TRANSACTION = "transaction"
    REQUEST = "request"
    DOCUMENT = "document"


@dataclass(frozen=True)
class RuleCondition:
    """Single field predicate.

    The operator is kept as a plain string so that a catalog carrying an
    operator this engine does not know still loads; the rule is skipped at
    evaluation time instead.
    """
    field: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleCondition":
        operator = data.get("operator", data.get("op"))
        if isinstance(operator, Enum):
            operator = operator.value
        field_path = data["field"]
        if not isinstance(field_path, str) or not field_path:
            raise ValueError(f"condition field must be a non-empty string, got {field_path!r}")
        value = data.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return cls(field=field_path, operator=str(operator), value=value)

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class DetectionRule:
    """Declarative grey-area detection rule."""
    rule_id: str
    name: str
    entity_types: Tuple[str, ...]
    conditions: Tuple[RuleCondition, ...]
    grey_area_type: str
    severity: Severity
    title_template: str
    description_template: str = ""
    description: Optional[str] = None
    enabled: bool = True
    event_types: Tuple[str, ...] = ()
    condition_logic: ConditionLogic = ConditionLogic.AND
    assign_to_roles: Tuple[str, ...] = ()
    sla_hours: Optional[float] = None
    priority: int = 0
    checklist: Tuple[str, ...] = ()

    def applies_to(self, entity_type: str, event_type: Optional[str]) -> bool:
        """Entity and event type filter."""
        if entity_type not in self.entity_types:
            return False
        if self.event_types and event_type not in self.event_types:
            return False
        return True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionRule":
        """Build from a catalog entry, snake_case or camelCase."""

        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        rule_id = pick("rule_id", "id")
        if not isinstance(rule_id, str) or not rule_id:
            raise ValueError(f"rule id must be a non-empty string, got {rule_id!r}")

        return cls(
            rule_id=rule_id,
            name=pick("name", default=""),
            description=pick("description"),
            enabled=bool(pick("enabled", default=True)),
            entity_types=tuple(pick("entity_types", "entityTypes", default=())),
            event_types=tuple(pick("event_types", "eventTypes", default=())),
            condition_logic=ConditionLogic(pick("condition_logic", "conditionLogic", default="and")),
            conditions=tuple(
                c if isinstance(c, RuleCondition) else RuleCondition.from_dict(c)
                for c in pick("conditions", default=())
            ),
            grey_area_type=pick("grey_area_type", "greyAreaType", default=""),
            severity=Severity(pick("severity", default="medium")),
            title_template=pick("title_template", "titleTemplate", default=""),
            description_template=pick("description_template", "descriptionTemplate", default=""),
            assign_to_roles=tuple(pick("assign_to_roles", "assignToRoles", default=())),
            sla_hours=pick("sla_hours", "slaHours"),
            priority=int(pick("priority", default=0)),
            checklist=tuple(pick("checklist", default=())),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "entity_types": list(self.entity_types),
            "event_types": list(self.event_types),
            "condition_logic": self.condition_logic.value,
            "conditions": [c.to_dict() for c in self.conditions],
            "grey_area_type": self.grey_area_type,
            "severity": self.severity.value,
            "title_template": self.title_template,
            "description_template": self.description_template,
            "assign_to_roles": list(self.assign_to_roles),
            "sla_hours": self.sla_hours,
            "priority": self.priority,
            "checklist": list(self.checklist),
        }


@dataclass(frozen=True)
class RuleMatch:
    """A rule that matched an entity, with rendered output."""
    rule: DetectionRule
    title: str
    description: str
    catalog_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule.rule_id,
            "title": self.title,
            "description": self.description,
            "severity": self.rule.severity.value,
            "grey_area_type": self.rule.grey_area_type,
            "priority": self.rule.priority,
            "catalog_version": self.catalog_version,
        }


@dataclass
class MatchReport:
    """Outcome of running the catalog against one entity."""
    matches: List[RuleMatch] = field(default_factory=list)
    skipped_rules: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0
