"""
Rule matching engine for grey-area detection.
"""

import time
from typing import Any, List, Mapping, Optional

from shared.errors import ConditionEvaluationSkipped
from shared.logging import get_logger

from ..snapshot import EntitySnapshot
from .catalog import RuleCatalog
from .evaluator import evaluate_all
from .models import MatchReport, RuleMatch
from .templates import render


class RuleEngine:
    """Matches entity snapshots against a detection rule catalog.

    The catalog is injected and replaced wholesale by ``reload``; an
    evaluation in flight keeps the catalog it started with.
    """

    def __init__(self, catalog: RuleCatalog, metrics: Optional[Any] = None):
        self.logger = get_logger("task-engine.rule_engine")
        self.metrics = metrics
        self._catalog = catalog

    @property
    def catalog(self) -> RuleCatalog:
        return self._catalog

    @property
    def version(self) -> int:
        return self._catalog.version

    def reload(self, catalog: RuleCatalog) -> RuleCatalog:
        """Swap in a new catalog and return the previous one."""
        previous = self._catalog
        self._catalog = catalog
        self.logger.info(
            "Rule catalog reloaded",
            previous_version=previous.version,
            version=catalog.version,
            rules=len(catalog)
        )
        if self.metrics:
            self.metrics.set_gauge("catalog_version", catalog.version)
        return previous

    def match_rules(self, entity: Mapping, entity_type: str,
                    event_type: Optional[str] = None) -> List[RuleMatch]:
        """Matching rules ordered by priority, declaration order for ties."""
        return self.evaluate(entity, entity_type, event_type).matches

    def evaluate(self, entity: Mapping, entity_type: str,
                 event_type: Optional[str] = None) -> MatchReport:
        """Run the catalog against one entity, reporting skipped rules."""
        start_time = time.time()
        catalog = self._catalog
        snapshot = EntitySnapshot.of(entity)
        if event_type is None:
            event_type = snapshot.event_type()

        report = MatchReport()
        for rule in catalog.rules:
            if not rule.enabled or not rule.applies_to(entity_type, event_type):
                continue
            try:
                matched = evaluate_all(snapshot, rule.conditions, rule.condition_logic)
            except ConditionEvaluationSkipped as e:
                report.skipped_rules.append(rule.rule_id)
                self.logger.warning(
                    "Skipping malformed rule",
                    rule_id=rule.rule_id,
                    catalog_version=catalog.version,
                    reason=e.message,
                    details=e.details
                )
                if self.metrics:
                    self.metrics.increment_counter("rules_skipped_total", rule_id=rule.rule_id)
                continue

            if matched:
                report.matches.append(RuleMatch(
                    rule=rule,
                    title=render(rule.title_template, snapshot),
                    description=render(rule.description_template, snapshot),
                    catalog_version=catalog.version,
                ))

        # sort() is stable, so equal priorities keep declaration order
        report.matches.sort(key=lambda m: m.rule.priority, reverse=True)

        duration = time.time() - start_time
        report.evaluation_time_ms = duration * 1000
        if self.metrics:
            self.metrics.observe_histogram("rule_evaluation_duration_seconds", duration)

        self.logger.debug(
            "Rules evaluated",
            entity_type=entity_type,
            event_type=event_type,
            matched=[m.rule.rule_id for m in report.matches],
            skipped=report.skipped_rules,
            catalog_version=catalog.version
        )
        return report
