"""
Alert rules, evaluation and incident lifecycle.
"""

from hostwatch.alerts.alert_rule import (
    AlertRule, AlertRuleUpdate, AlertRuleTemplate, Direction, load_alert_rules, load_rule_templates,
)
from hostwatch.alerts.registry import AlertRegistry, RuleSnapshot
from hostwatch.alerts.incident_manager import IncidentManager
from hostwatch.alerts.alert_evaluator import AlertEvaluator, PassResult

__all__ = [
    'AlertRule',
    'AlertRuleUpdate',
    'AlertRuleTemplate',
    'Direction',
    'load_alert_rules',
    'load_rule_templates',
    'AlertRegistry',
    'RuleSnapshot',
    'IncidentManager',
    'AlertEvaluator',
    'PassResult',
]
