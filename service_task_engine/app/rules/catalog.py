"""
Versioned detection rule catalog and the built-in rule set.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger

from .models import DetectionRule, Severity

logger = get_logger("task-engine.rule_catalog")


class RuleCatalog:
    """Immutable, versioned set of detection rules.

    Rules keep their declaration order, which breaks priority ties during
    matching. Changes produce a new catalog with ``version + 1``.
    """

    def __init__(self, rules: Iterable[DetectionRule] = (), version: int = 1):
        rules = tuple(rules)
        duplicates = [rule_id for rule_id, n in Counter(r.rule_id for r in rules).items() if n > 1]
        if duplicates:
            raise ValidationError("Duplicate rule ids in catalog", {"rule_ids": duplicates})
        self._rules: Tuple[DetectionRule, ...] = rules
        self._by_id: Dict[str, DetectionRule] = {r.rule_id: r for r in rules}
        self._version = version

    @property
    def version(self) -> int:
        return self._version

    @property
    def rules(self) -> Tuple[DetectionRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)

    def get(self, rule_id: str) -> Optional[DetectionRule]:
        return self._by_id.get(rule_id)

    def enabled_rules(self) -> List[DetectionRule]:
        return [r for r in self._rules if r.enabled]

    def for_entity_type(self, entity_type: str) -> List[DetectionRule]:
        return [r for r in self._rules if r.enabled and entity_type in r.entity_types]

    def by_grey_area_type(self, grey_area_type: str) -> List[DetectionRule]:
        return [r for r in self._rules if r.enabled and r.grey_area_type == grey_area_type]

    def by_severity(self, severity: Union[Severity, str]) -> List[DetectionRule]:
        severity = Severity(severity)
        return [r for r in self._rules if r.enabled and r.severity is severity]

    def stats(self) -> Dict[str, Any]:
        enabled = self.enabled_rules()
        return {
            "version": self._version,
            "total": len(self._rules),
            "enabled": len(enabled),
            "by_severity": dict(Counter(r.severity.value for r in enabled)),
            "by_grey_area_type": dict(Counter(r.grey_area_type for r in enabled)),
        }

    def with_rule_enabled(self, rule_id: str, enabled: bool) -> "RuleCatalog":
        rule = self._by_id.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found", {"rule_id": rule_id})
        updated = DetectionRule.from_dict({**rule.to_dict(), "enabled": enabled})
        return self.with_rule(updated)

    def with_rule(self, rule: DetectionRule) -> "RuleCatalog":
        """Replace a rule in place, or append a new one."""
        if rule.rule_id in self._by_id:
            rules = [rule if r.rule_id == rule.rule_id else r for r in self._rules]
        else:
            rules = list(self._rules) + [rule]
        return RuleCatalog(rules, self._version + 1)

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._rules]

    @classmethod
    def from_dicts(cls, entries: Iterable[Dict[str, Any]], version: int = 1,
                   metrics: Optional[Any] = None) -> "RuleCatalog":
        """Build a catalog, leaving out entries that cannot be parsed."""
        rules = []
        for index, entry in enumerate(entries):
            try:
                rules.append(DetectionRule.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                rule_id = entry.get("rule_id", entry.get("id")) if isinstance(entry, dict) else None
                logger.warning(
                    "Skipping malformed rule definition",
                    rule_id=rule_id,
                    index=index,
                    error=str(e)
                )
                if metrics:
                    metrics.increment_counter("rules_skipped_total", rule_id=str(rule_id or f"#{index}"))
        return cls(rules, version)


def load_catalog_file(path: Union[str, Path], version: int = 1,
                      metrics: Optional[Any] = None) -> RuleCatalog:
    """Load a catalog from a JSON file holding a list of rules or {"rules": [...]}."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        version = int(data.get("version", version))
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ValidationError("Rule catalog must be a list of rules", {"path": str(path)})
    return RuleCatalog.from_dicts(data, version, metrics)


def _rule(**kwargs) -> Dict[str, Any]:
    return kwargs


DEFAULT_RULES: List[Dict[str, Any]] = [
    # Financial
    _rule(
        id="fin_large_transaction",
        name="Large Transaction Review",
        description="Flags transactions exceeding standard approval thresholds",
        entityTypes=["transaction", "request"],
        conditionLogic="and",
        conditions=[
            {"field": "amount.amount", "operator": "gt", "value": 10_000_000},
            {"field": "type", "operator": "in", "value": ["payment", "transfer", "expense"]},
        ],
        greyAreaType="approval-required",
        severity="high",
        titleTemplate="Large {{type}} requires review: {{amount.amount}} UGX",
        descriptionTemplate=(
            "Transaction of {{amount.amount}} UGX ({{amount.currency}}) exceeds standard approval "
            "threshold. Vendor: {{vendor}}. Purpose: {{purpose}}."
        ),
        assignToRoles=["finance-manager", "cfo"],
        slaHours=4,
        priority=100,
        checklist=["Verify supporting documents", "Confirm budget line", "Record approval decision"],
    ),
    _rule(
        id="fin_unusual_vendor",
        name="Unusual Vendor Payment",
        description="Flags payments to new or unusual vendors",
        entityTypes=["transaction"],
        conditionLogic="and",
        conditions=[
            {"field": "vendor.isNew", "operator": "eq", "value": True},
            {"field": "amount.amount", "operator": "gt", "value": 1_000_000},
        ],
        greyAreaType="policy-exception",
        severity="medium",
        titleTemplate="First payment to new vendor: {{vendor.name}}",
        descriptionTemplate=(
            "First payment of {{amount.amount}} UGX to {{vendor.name}}. Vendor registration date: "
            "{{vendor.registeredAt}}. Verify vendor legitimacy before approval."
        ),
        assignToRoles=["finance-officer", "procurement-manager"],
        slaHours=8,
        priority=80,
    ),
    _rule(
        id="fin_budget_deviation",
        name="Budget Deviation Alert",
        description="Flags expenses deviating significantly from budget",
        entityTypes=["transaction", "request"],
        conditionLogic="and",
        conditions=[
            {"field": "budgetDeviation", "operator": "gt", "value": 20},
        ],
        greyAreaType="compliance-issue",
        severity="medium",
        titleTemplate="Budget deviation: {{category}} at {{budgetDeviation}}% over",
        descriptionTemplate=(
            "Expense category {{category}} has exceeded budget by {{budgetDeviation}}%. "
            "Current spend: {{currentSpend}} UGX. Budget: {{budgetAmount}} UGX."
        ),
        assignToRoles=["department-head", "finance-manager"],
        slaHours=12,
        priority=70,
    ),
    # HR
    _rule(
        id="hr_leave_conflict",
        name="Leave Coverage Conflict",
        description="Flags leave requests that create coverage gaps",
        entityTypes=["request"],
        eventTypes=["hr.leave_requested"],
        conditionLogic="and",
        conditions=[
            {"field": "coverageGap", "operator": "eq", "value": True},
            {"field": "leaveDays", "operator": "gt", "value": 3},
        ],
        greyAreaType="conflict-resolution",
        severity="medium",
        titleTemplate="Leave creates coverage gap: {{employee.name}}",
        descriptionTemplate=(
            "{{employee.name}} requested {{leaveDays}} days leave ({{startDate}} to {{endDate}}). "
            "This creates a coverage gap in {{department}}. {{conflictingEmployees}} also on leave "
            "during this period."
        ),
        assignToRoles=["hr-manager", "department-head"],
        slaHours=24,
        priority=60,
    ),
    _rule(
        id="hr_salary_anomaly",
        name="Salary Anomaly Detection",
        description="Flags unusual salary variations",
        entityTypes=["employee"],
        conditionLogic="or",
        conditions=[
            {"field": "salaryChange", "operator": "gt", "value": 30},
            {"field": "salaryBelowBand", "operator": "eq", "value": True},
            {"field": "salaryAboveBand", "operator": "eq", "value": True},
        ],
        greyAreaType="data-inconsistency",
        severity="high",
        titleTemplate="Salary anomaly for {{employee.name}}",
        descriptionTemplate=(
            "Salary for {{employee.name}} ({{employee.position}}) appears unusual. Current: "
            "{{currentSalary}} UGX. Band range: {{bandMin}} - {{bandMax}} UGX. Reason flagged: "
            "{{anomalyReason}}."
        ),
        assignToRoles=["hr-manager", "cfo"],
        slaHours=8,
        priority=90,
    ),
    _rule(
        id="hr_probation_ending",
        name="Probation Review Due",
        description="Flags employees whose probation is ending without review",
        entityTypes=["employee"],
        conditionLogic="and",
        conditions=[
            {"field": "probationEndsInDays", "operator": "lte", "value": 14},
            {"field": "probationReviewCompleted", "operator": "eq", "value": False},
        ],
        greyAreaType="pending-decision",
        severity="high",
        titleTemplate="Probation review needed: {{employee.name}}",
        descriptionTemplate=(
            "{{employee.name}}'s probation ends on {{probationEndDate}}. No probation review has "
            "been completed. Manager: {{manager.name}}."
        ),
        assignToRoles=["hr-officer", "department-head"],
        slaHours=48,
        priority=85,
    ),
    _rule(
        id="hr_contract_expiring",
        name="Contract Expiration Alert",
        description="Flags contracts expiring without renewal decision",
        entityTypes=["employee"],
        eventTypes=["hr.contract_expiring"],
        conditionLogic="and",
        conditions=[
            {"field": "contractExpiresInDays", "operator": "lte", "value": 30},
            {"field": "renewalDecisionMade", "operator": "eq", "value": False},
        ],
        greyAreaType="pending-decision",
        severity="high",
        titleTemplate="Contract renewal decision needed: {{employee.name}}",
        descriptionTemplate=(
            "{{employee.name}}'s contract expires on {{contractEndDate}}. No renewal decision has "
            "been recorded. Position: {{employee.position}}. Department: {{department}}."
        ),
        assignToRoles=["hr-manager"],
        slaHours=72,
        priority=80,
    ),
    # Customer
    _rule(
        id="cust_vip_complaint",
        name="VIP Customer Complaint",
        description="Flags complaints from high-value customers",
        entityTypes=["event"],
        eventTypes=["customer.inquiry_received"],
        conditionLogic="and",
        conditions=[
            {"field": "customer.tier", "operator": "in", "value": ["vip", "premium"]},
            {"field": "isComplaint", "operator": "eq", "value": True},
        ],
        greyAreaType="escalation-needed",
        severity="critical",
        titleTemplate="VIP complaint: {{customer.name}}",
        descriptionTemplate=(
            "{{customer.tier}} customer {{customer.name}} has filed a complaint. Subject: "
            "{{subject}}. Customer lifetime value: {{customer.ltv}} UGX."
        ),
        assignToRoles=["sales-manager", "operations-director"],
        slaHours=2,
        priority=100,
    ),
    _rule(
        id="cust_credit_limit",
        name="Credit Limit Request",
        description="Flags requests to exceed credit limits",
        entityTypes=["request"],
        conditionLogic="and",
        conditions=[
            {"field": "type", "operator": "eq", "value": "credit_extension"},
            {"field": "requestedAmount", "operator": "gt", "value": 5_000_000},
        ],
        greyAreaType="approval-required",
        severity="high",
        titleTemplate="Credit extension request: {{customer.name}}",
        descriptionTemplate=(
            "{{customer.name}} requests credit extension of {{requestedAmount}} UGX. Current "
            "limit: {{currentLimit}} UGX. Outstanding: {{outstanding}} UGX. Payment history: "
            "{{paymentScore}}/100."
        ),
        assignToRoles=["credit-manager", "finance-director"],
        slaHours=4,
        priority=85,
    ),
    _rule(
        id="cust_large_order_discount",
        name="Large Order Discount Request",
        description="Flags discount requests above standard rates",
        entityTypes=["request", "event"],
        eventTypes=["customer.quote_requested"],
        conditionLogic="and",
        conditions=[
            {"field": "discountPercentage", "operator": "gt", "value": 15},
            {"field": "orderValue", "operator": "gt", "value": 10_000_000},
        ],
        greyAreaType="approval-required",
        severity="medium",
        titleTemplate="Discount approval: {{discountPercentage}}% for {{customer.name}}",
        descriptionTemplate=(
            "Discount of {{discountPercentage}}% requested on order of {{orderValue}} UGX for "
            "{{customer.name}}. Standard max is 15%. Discount amount: {{discountAmount}} UGX."
        ),
        assignToRoles=["sales-manager", "finance-manager"],
        slaHours=8,
        priority=75,
    ),
    # Operational
    _rule(
        id="ops_quality_failure",
        name="Quality Failure",
        description="Flags quality issues in production",
        entityTypes=["event"],
        eventTypes=["production.quality_issue"],
        conditionLogic="or",
        conditions=[
            {"field": "severity", "operator": "in", "value": ["critical", "major"]},
            {"field": "affectedUnits", "operator": "gt", "value": 10},
        ],
        greyAreaType="escalation-needed",
        severity="critical",
        titleTemplate="Quality issue: {{product}} - {{issue}}",
        descriptionTemplate=(
            "{{severity}} quality issue detected in {{product}}. Issue: {{issue}}. Affected units: "
            "{{affectedUnits}}. Production line: {{productionLine}}. Root cause analysis needed."
        ),
        assignToRoles=["quality-manager", "production-manager"],
        slaHours=2,
        priority=95,
        checklist=["Quarantine affected units", "Run root cause analysis"],
    ),
    _rule(
        id="ops_delivery_delay",
        name="Delivery Delay Risk",
        description="Flags orders at risk of missing delivery date",
        entityTypes=["task", "event"],
        conditionLogic="and",
        conditions=[
            {"field": "deliveryRiskScore", "operator": "gt", "value": 70},
            {"field": "orderValue", "operator": "gt", "value": 5_000_000},
        ],
        greyAreaType="risk-identified",
        severity="high",
        titleTemplate="Delivery at risk: Order {{orderId}}",
        descriptionTemplate=(
            "Order {{orderId}} for {{customer.name}} is at risk of missing delivery date "
            "{{deliveryDate}}. Risk score: {{deliveryRiskScore}}%. Order value: {{orderValue}} UGX. "
            "Delay reason: {{delayReason}}."
        ),
        assignToRoles=["operations-manager", "project-manager"],
        slaHours=4,
        priority=80,
    ),
    _rule(
        id="ops_material_shortage",
        name="Material Shortage Alert",
        description="Flags materials running below safety stock",
        entityTypes=["event"],
        conditionLogic="and",
        conditions=[
            {"field": "stockLevel", "operator": "lt", "value": 20},
            {"field": "hasActiveOrders", "operator": "eq", "value": True},
        ],
        greyAreaType="risk-identified",
        severity="high",
        titleTemplate="Material shortage: {{material.name}}",
        descriptionTemplate=(
            "{{material.name}} stock at {{stockLevel}}% of safety level. Active orders requiring "
            "this material: {{activeOrderCount}}. Lead time for reorder: {{leadTimeDays}} days."
        ),
        assignToRoles=["procurement-manager", "production-manager"],
        slaHours=8,
        priority=85,
    ),
    # Compliance
    _rule(
        id="comp_missing_docs",
        name="Missing Compliance Documents",
        description="Flags missing required documents",
        entityTypes=["employee", "transaction"],
        conditionLogic="and",
        conditions=[
            {"field": "missingDocuments", "operator": "gt", "value": 0},
            {"field": "documentsDueInDays", "operator": "lte", "value": 30},
        ],
        greyAreaType="compliance-issue",
        severity="high",
        titleTemplate="Missing compliance documents: {{entityName}}",
        descriptionTemplate=(
            "{{missingDocumentCount}} required documents missing for {{entityName}}. Documents: "
            "{{missingDocuments}}. Due date: {{documentsDueDate}}."
        ),
        assignToRoles=["compliance-officer", "hr-manager"],
        slaHours=48,
        priority=75,
    ),
    _rule(
        id="comp_tax_anomaly",
        name="Tax Calculation Anomaly",
        description="Flags unusual tax calculation results",
        entityTypes=["transaction"],
        conditionLogic="or",
        conditions=[
            {"field": "taxDeviation", "operator": "gt", "value": 5},
            {"field": "taxExemptionUsed", "operator": "eq", "value": True},
        ],
        greyAreaType="data-inconsistency",
        severity="medium",
        titleTemplate="Tax calculation review needed",
        descriptionTemplate=(
            "Tax calculation for {{transactionType}} shows {{taxDeviation}}% deviation from "
            "expected. Amount: {{amount}} UGX. Calculated tax: {{calculatedTax}} UGX. Expected: "
            "{{expectedTax}} UGX."
        ),
        assignToRoles=["finance-officer", "tax-accountant"],
        slaHours=24,
        priority=70,
    ),
    _rule(
        id="comp_regulatory_deadline",
        name="Regulatory Deadline Approaching",
        description="Flags upcoming regulatory deadlines",
        entityTypes=["task", "document"],
        conditionLogic="and",
        conditions=[
            {"field": "isRegulatoryDeadline", "operator": "eq", "value": True},
            {"field": "daysUntilDeadline", "operator": "lte", "value": 14},
            {"field": "completionPercentage", "operator": "lt", "value": 80},
        ],
        greyAreaType="compliance-issue",
        severity="critical",
        titleTemplate="Regulatory deadline: {{deadlineName}}",
        descriptionTemplate=(
            'Regulatory deadline "{{deadlineName}}" is due in {{daysUntilDeadline}} days. Current '
            "completion: {{completionPercentage}}%. Regulatory body: {{regulatoryBody}}. Penalty "
            "risk: {{penaltyRisk}}."
        ),
        assignToRoles=["compliance-officer", "cfo"],
        slaHours=4,
        priority=100,
    ),
    # AI confidence
    _rule(
        id="ai_low_confidence",
        name="AI Low Confidence Decision",
        description="Flags AI decisions below confidence threshold",
        entityTypes=["task", "event", "transaction"],
        conditionLogic="and",
        conditions=[
            {"field": "aiConfidence", "operator": "lt", "value": 0.7},
            {"field": "requiresAiDecision", "operator": "eq", "value": True},
        ],
        greyAreaType="unclear-requirement",
        severity="medium",
        titleTemplate="AI uncertain: {{aiDecisionType}}",
        descriptionTemplate=(
            "AI confidence for {{aiDecisionType}} is {{aiConfidence}}% (below 70% threshold). "
            "Input: {{aiInput}}. Suggested action: {{aiSuggestion}}. Human review required."
        ),
        assignToRoles=[],
        slaHours=8,
        priority=65,
    ),
    _rule(
        id="ai_conflicting_suggestions",
        name="Conflicting AI Suggestions",
        description="Flags when AI models give conflicting suggestions",
        entityTypes=["task", "event"],
        conditionLogic="and",
        conditions=[
            {"field": "hasConflictingSuggestions", "operator": "eq", "value": True},
        ],
        greyAreaType="conflict-resolution",
        severity="medium",
        titleTemplate="Conflicting AI suggestions for {{entityType}}",
        descriptionTemplate=(
            "Multiple AI analyses have produced conflicting recommendations. Primary suggestion: "
            "{{primarySuggestion}}. Alternative: {{alternativeSuggestion}}. Confidence spread: "
            "{{confidenceSpread}}%."
        ),
        assignToRoles=[],
        slaHours=12,
        priority=60,
    ),
    # Workflow
    _rule(
        id="wf_stalled_approval",
        name="Stalled Approval",
        description="Flags approvals stuck without action",
        entityTypes=["task", "request"],
        conditionLogic="and",
        conditions=[
            {"field": "status", "operator": "eq", "value": "pending_approval"},
            {"field": "pendingHours", "operator": "gt", "value": 48},
        ],
        greyAreaType="escalation-needed",
        severity="medium",
        titleTemplate="Stalled approval: {{title}}",
        descriptionTemplate=(
            'Approval for "{{title}}" has been pending for {{pendingHours}} hours. Approver: '
            "{{approver.name}}. Original requester: {{requester.name}}. Impact: "
            "{{impactDescription}}."
        ),
        assignToRoles=[],
        slaHours=4,
        priority=70,
    ),
    _rule(
        id="wf_ownership_unclear",
        name="Unclear Task Ownership",
        description="Flags tasks with no clear owner or multiple owners",
        entityTypes=["task"],
        conditionLogic="or",
        conditions=[
            {"field": "hasNoOwner", "operator": "eq", "value": True},
            {"field": "hasMultipleOwners", "operator": "eq", "value": True},
        ],
        greyAreaType="ownership-gap",
        severity="medium",
        titleTemplate="Ownership unclear: {{title}}",
        descriptionTemplate=(
            'Task "{{title}}" has {{ownershipIssue}}. This may cause delays or duplicated effort. '
            "Related department: {{department}}. Task priority: {{priority}}."
        ),
        assignToRoles=["department-head"],
        slaHours=12,
        priority=65,
    ),
]


def default_catalog() -> RuleCatalog:
    """Built-in catalog, version 1."""
    return RuleCatalog.from_dicts(DEFAULT_RULES)
