"""
Tests for automatic tag rule evaluation.
"""
import pytest

from formflow.models import TagRule
from formflow.tag_rules import evaluate_tag_rules, rule_matches

pytestmark = pytest.mark.unit


def make_rule(field_id, operator, value='', tag_id='tag-1', active=True):
    return TagRule(id=f'{field_id}-{operator}', field_id=field_id, operator=operator, value=value, tag_id=tag_id, active=active)


class TestOperators:
    def test_equals_is_case_sensitive(self):
        assert rule_matches('equals', 'Yes', 'Yes')
        assert not rule_matches('equals', 'yes', 'Yes')

    def test_contains_ignores_case(self):
        assert rule_matches('contains', 'A@Example.com', '@example.com')
        assert not rule_matches('contains', 'a@other.com', '@example.com')

    def test_numeric_comparisons(self):
        assert rule_matches('gt', '9', '8')
        assert rule_matches('gt', 10, '8.5')
        assert rule_matches('lt', '3', '7')
        assert not rule_matches('lt', '7', '7')

    @pytest.mark.parametrize('answer', ['abc', None, '', '  '])
    def test_numeric_comparisons_never_match_non_numbers(self, answer):
        assert not rule_matches('gt', answer, '-100')
        assert not rule_matches('lt', answer, '100')

    def test_numeric_comparison_with_non_numeric_rule_value(self):
        assert not rule_matches('gt', '5', 'five')

    def test_empty_and_not_empty(self):
        assert rule_matches('empty', None, '')
        assert rule_matches('empty', '   ', '')
        assert not rule_matches('empty', 'x', '')
        assert rule_matches('not_empty', 'x', '')
        assert not rule_matches('not_empty', '', '')

    def test_zero_is_not_empty(self):
        assert rule_matches('not_empty', 0, '')

    def test_lists_are_joined(self):
        assert rule_matches('contains', ['red', 'blue'], 'BLUE')

    def test_unknown_operator_does_not_match(self):
        assert not rule_matches('starts_with', 'abc', 'a')


class TestEvaluate:
    def test_inactive_rules_are_skipped(self):
        rules = [make_rule('q1', 'not_empty', active=False)]
        assert evaluate_tag_rules({'q1': 'hello'}, rules) == []

    def test_missing_answer_is_empty_string(self):
        rules = [make_rule('q1', 'empty', tag_id='no-answer')]
        assert evaluate_tag_rules({}, rules) == ['no-answer']

    def test_same_tag_from_several_rules_is_emitted_once(self):
        rules = [
            make_rule('q1', 'contains', 'vip', tag_id='vip'),
            make_rule('q2', 'gt', '100', tag_id='vip'),
            make_rule('q2', 'gt', '10', tag_id='big'),
        ]
        assert evaluate_tag_rules({'q1': 'VIP customer', 'q2': '500'}, rules) == ['vip', 'big']
