"""Tests for the keyword and spam rules engine."""
import pytest
from pydantic import ValidationError

from models.schemas import ExactMatch, KeywordMatch, Rule, SpamAction, SpamRule
from rules.engine import RulesEngine


class TestMatchRule:

    def test_returns_canned_response(self, rules_engine):
        match = rules_engine.match_rule("How do I CONTACT you?")
        assert match is not None
        assert match.rule.id == "contact"
        assert match.response == "Use the contact form."

    def test_no_match(self, rules_engine):
        assert rules_engine.match_rule("tell me a joke") is None

    def test_highest_priority_wins(self):
        engine = RulesEngine(rules=[
            Rule(id="low", match=KeywordMatch(keywords=["price"]), response="low", priority=1),
            Rule(id="high", match=KeywordMatch(keywords=["price"]), response="high", priority=9),
        ])
        assert engine.match_rule("price?").rule.id == "high"

    def test_equal_priority_keeps_registration_order(self):
        engine = RulesEngine(rules=[
            Rule(id="first", match=KeywordMatch(keywords=["hi"]), response="1"),
            Rule(id="second", match=KeywordMatch(keywords=["hi"]), response="2"),
        ])
        assert engine.match_rule("hi").rule.id == "first"

    def test_disabled_rules_skipped(self):
        engine = RulesEngine(rules=[
            Rule(id="off", match=ExactMatch(value="ping"), response="pong", enabled=False),
        ])
        assert engine.match_rule("ping") is None

    def test_register_replaces_same_id(self, rules_engine):
        rules_engine.register_rule(
            Rule(id="contact", match=KeywordMatch(keywords=["phone"]), response="No phone."),
        )
        assert rules_engine.match_rule("email?") is None
        assert rules_engine.match_rule("phone?").response == "No phone."


class TestMatchSpam:

    def test_drop(self, rules_engine):
        match = rules_engine.match_spam("Free CRYPTO airdrop")
        assert match.rule.id == "crypto"
        assert match.action == SpamAction.DROP

    def test_flag(self, rules_engine):
        assert rules_engine.match_spam("cheap backlinks").action == SpamAction.FLAG

    def test_first_match_wins(self, rules_engine):
        assert rules_engine.match_spam("crypto backlinks").rule.id == "crypto"

    def test_clean_message(self, rules_engine):
        assert rules_engine.match_spam("hello there") is None


class TestLoadRules:

    def test_load_from_mapping(self):
        engine = RulesEngine()
        engine.load_rules({
            "rules": [{
                "id": "cv",
                "match": {"type": "keywords", "keywords": ["cv", "resume"]},
                "response": "The CV is on the about page.",
            }],
            "spam": [{
                "id": "casino",
                "match": {"type": "pattern", "pattern": "casino"},
                "action": "drop",
            }],
        })
        assert [r.id for r in engine.list_rules()] == ["cv"]
        assert [r.id for r in engine.list_spam_rules()] == ["casino"]
        assert engine.match_rule("send your resume").rule.id == "cv"
        assert engine.match_spam("online casino").action == SpamAction.DROP

    def test_empty_sections(self):
        engine = RulesEngine()
        engine.load_rules({"rules": None})
        assert engine.list_rules() == []
        assert engine.list_spam_rules() == []

    def test_unknown_match_type_rejected(self):
        with pytest.raises(ValidationError):
            Rule(id="bad", match={"type": "fuzzy", "value": "x"}, response="x")

    def test_spam_rule_rejects_exact_match(self):
        with pytest.raises(ValidationError):
            SpamRule(id="bad", match={"type": "exact", "value": "x"})
