"""
Rules Engine — keyword overrides and spam filters that fire BEFORE the model.

Rules are loaded from the data directory (rules.yaml). A matching keyword
rule answers with its canned response; a matching spam rule either flags
the conversation or drops the message silently.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from models.schemas import Rule, SpamAction, SpamRule
from utils.conditions import evaluate_match, normalise

logger = structlog.get_logger()


@dataclass
class RuleMatch:
    rule: Rule
    response: str


@dataclass
class SpamMatch:
    rule: SpamRule
    action: SpamAction


# ──────────────────────────────────────────────────────────────
#  Rules Engine
# ──────────────────────────────────────────────────────────────

class RulesEngine:
    """
    Holds keyword rules and spam rules, and matches visitor text against them.
    """

    def __init__(self, rules: list[Rule] = None, spam_rules: list[SpamRule] = None):
        self._rules: dict[str, Rule] = {}
        self._spam_rules: list[SpamRule] = []
        for rule in rules or []:
            self.register_rule(rule)
        for rule in spam_rules or []:
            self.register_spam_rule(rule)

    def load_rules(self, rules_config: dict[str, Any]):
        """Load rules from the parsed rules.yaml mapping."""
        for raw in rules_config.get("rules") or []:
            self.register_rule(Rule(**raw))
        for raw in rules_config.get("spam") or []:
            self.register_spam_rule(SpamRule(**raw))
        logger.info("rules_loaded", rules=len(self._rules), spam_rules=len(self._spam_rules))

    def register_rule(self, rule: Rule):
        self._rules[rule.id] = rule
        logger.debug("rule_registered", rule_id=rule.id, match=rule.match.type)

    def register_spam_rule(self, rule: SpamRule):
        self._spam_rules.append(rule)
        logger.debug("spam_rule_registered", rule_id=rule.id, action=rule.action.value)

    def list_rules(self) -> list[Rule]:
        return list(self._rules.values())

    def list_spam_rules(self) -> list[SpamRule]:
        return list(self._spam_rules)

    # ── Matching ──────────────────────────────────────────────

    def match_rule(self, message: str) -> Optional[RuleMatch]:
        """Return the highest-priority enabled rule matching the message."""
        text = normalise(message)
        matches = [
            r for r in self._rules.values()
            if r.enabled and evaluate_match(r.match, text)
        ]
        if not matches:
            return None
        # stable sort: equal priorities keep registration order
        matches.sort(key=lambda r: r.priority, reverse=True)
        best = matches[0]
        logger.info("rule_matched", rule_id=best.id, priority=best.priority)
        return RuleMatch(rule=best, response=best.response)

    def match_spam(self, message: str) -> Optional[SpamMatch]:
        """Return the first spam rule matching the message."""
        text = normalise(message)
        for rule in self._spam_rules:
            if evaluate_match(rule.match, text):
                logger.info("spam_matched", rule_id=rule.id, action=rule.action.value)
                return SpamMatch(rule=rule, action=rule.action)
        return None
