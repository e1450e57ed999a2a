import logging
from typing import Any, Iterable, List

from .models import TagRule, TagRuleOperator
from .utils import parse_number, to_text

logger = logging.getLogger(__name__)


def rule_matches(operator: str, answer: Any, expected: Any) -> bool:
    """Evaluate one operator against an answer; unknown operators never match."""
    actual = to_text(answer)
    expected = to_text(expected)

    if operator == TagRuleOperator.equals:
        return actual == expected
    if operator == TagRuleOperator.contains:
        return expected.lower() in actual.lower()
    if operator in (TagRuleOperator.gt, TagRuleOperator.lt):
        left = parse_number(actual)
        right = parse_number(expected)
        # non-numeric on either side behaves like a NaN comparison
        if left is None or right is None:
            return False
        return left > right if operator == TagRuleOperator.gt else left < right
    if operator == TagRuleOperator.empty:
        return actual.strip() == ''
    if operator == TagRuleOperator.not_empty:
        return actual.strip() != ''

    logger.warning('Unknown tag rule operator %r', operator)
    return False


def evaluate_tag_rules(answers: dict, rules: Iterable[TagRule]) -> List[str]:
    """
    Return the tag ids to attach to a response with ``answers``.

    Inactive rules are skipped. Several rules pointing at the same tag yield
    that tag once, in first-match order.
    """
    tag_ids: List[str] = []
    for rule in rules:
        if not rule.active:
            continue
        if rule_matches(rule.operator, answers.get(rule.field_id), rule.value):
            logger.debug('Tag rule %s matched field %s', rule.id, rule.field_id)
            if rule.tag_id not in tag_ids:
                tag_ids.append(rule.tag_id)
    return tag_ids
