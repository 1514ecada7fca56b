"""
Tests for label selector parsing and matching
"""

import pytest

from healthcheck_manager.errors import SelectorError
from healthcheck_manager.selector import Operator, from_label_selector, matches, parse_selector, validate


class TestParseSelector:
    """Tests for selector parsing."""

    def test_empty_selector(self):
        assert parse_selector("") == ()
        assert parse_selector("   ") == ()

    def test_equality_terms(self):
        requirements = parse_selector("env=prod, tier==web")
        assert [r.operator for r in requirements] == [Operator.EQUALS, Operator.EQUALS]
        assert requirements[1].values == ("web",)

    def test_set_terms(self):
        requirements = parse_selector("tier in (web, api),zone notin (a)")
        assert requirements[0].operator == Operator.IN
        assert requirements[0].values == ("web", "api")
        assert requirements[1].operator == Operator.NOT_IN

    def test_existence_terms(self):
        requirements = parse_selector("gpu,!canary")
        assert requirements[0].operator == Operator.EXISTS
        assert requirements[1].operator == Operator.DOES_NOT_EXIST
        assert requirements[1].key == "canary"

    def test_prefixed_key(self):
        requirements = parse_selector("projectsveltos.io/env=prod")
        assert requirements[0].key == "projectsveltos.io/env"

    def test_empty_value_is_valid(self):
        requirements = parse_selector("env=")
        assert requirements[0].values == ("",)

    @pytest.mark.parametrize("expression", [
        "=prod",
        "env in (web",
        "env in web)",
        "env prod",
        "env=pr od",
    ])
    def test_malformed(self, expression):
        with pytest.raises(SelectorError):
            validate(expression)


class TestMatches:
    """Tests for selector evaluation."""

    def test_empty_selector_matches_nothing(self):
        assert matches({"env": "prod"}, "") is False

    def test_equality(self):
        assert matches({"env": "prod"}, "env=prod")
        assert not matches({"env": "dev"}, "env=prod")
        assert not matches({}, "env=prod")

    def test_not_equals_matches_missing_key(self):
        assert matches({}, "env!=prod")
        assert not matches({"env": "prod"}, "env!=prod")

    def test_in_and_notin(self):
        labels = {"tier": "web"}
        assert matches(labels, "tier in (web,api)")
        assert not matches(labels, "tier notin (web)")
        assert matches({}, "tier notin (web)")

    def test_all_terms_must_match(self):
        labels = {"env": "prod", "tier": "web"}
        assert matches(labels, "env=prod,tier=web")
        assert not matches(labels, "env=prod,tier=api")

    def test_existence(self):
        assert matches({"gpu": "true"}, "gpu")
        assert not matches({"gpu": "true"}, "!gpu")
        assert matches({}, "!gpu")

    def test_malformed_raises(self):
        with pytest.raises(SelectorError):
            matches({"env": "prod"}, "env in (prod")


class TestFromLabelSelector:
    """Tests for converting structured LabelSelectors."""

    def test_match_labels_and_expressions(self):
        expression = from_label_selector({
            "matchLabels": {"env": "prod"},
            "matchExpressions": [{"key": "tier", "operator": "NotIn", "values": ["canary"]}],
        })
        assert expression == "env=prod,tier notin (canary)"
        assert matches({"env": "prod", "tier": "web"}, expression)
        assert not matches({"env": "prod", "tier": "canary"}, expression)

    def test_expressions_only(self):
        expression = from_label_selector({"matchExpressions": [
            {"key": "region", "operator": "In", "values": ["eu", "us"]},
            {"key": "gpu", "operator": "Exists"},
            {"key": "legacy", "operator": "DoesNotExist"},
        ]})
        assert expression == "region in (eu,us),gpu,!legacy"
        assert matches({"region": "eu", "gpu": "a100"}, expression)
        assert not matches({"region": "eu", "gpu": "a100", "legacy": "true"}, expression)

    def test_empty_selector(self):
        assert from_label_selector({}) == ""

    @pytest.mark.parametrize("requirement", [
        {"key": "env", "operator": "Gt", "values": ["1"]},
        {"key": "env", "operator": "In"},
        {"key": "env", "operator": "Exists", "values": ["prod"]},
        {"operator": "Exists"},
    ])
    def test_unsupported_expressions(self, requirement):
        with pytest.raises(SelectorError):
            from_label_selector({"matchExpressions": [requirement]})
