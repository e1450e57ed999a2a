"""
Tests for the field validation engine.
"""
import pytest

from formflow.validators import DEFAULT_MESSAGES, merge_rules, validate_field

pytestmark = pytest.mark.unit


class TestRequired:
    @pytest.mark.parametrize('value', [None, '', '   ', []])
    def test_required_empty_values_fail(self, value):
        result = validate_field(value, 'short_text', True, None)
        assert result.valid is False
        assert result.error == DEFAULT_MESSAGES['required']

    def test_custom_required_message(self):
        result = validate_field(None, 'email', True, {'messages': {'required': 'Tell us your email'}})
        assert result.error == 'Tell us your email'

    def test_zero_and_false_are_answers(self):
        assert validate_field(0, 'rating', True, None).valid
        assert validate_field(False, 'yes_no', True, None).valid

    @pytest.mark.parametrize('value', [None, '', '  '])
    def test_optional_empty_skips_every_rule(self, value):
        rule = {'format': 'cpf', 'minLength': 5, 'pattern': '^x+$', 'min': 10}
        assert validate_field(value, 'email', False, rule).valid


class TestFormat:
    def test_email_type_implies_email_format(self):
        assert validate_field('nome@email.com', 'email', True, None).valid

        result = validate_field('not-an-email', 'email', True, None)
        assert result.valid is False
        assert result.error == DEFAULT_MESSAGES['email']

    def test_value_is_trimmed_before_format_check(self):
        assert validate_field('  nome@email.com  ', 'email', True, None).valid

    def test_custom_format_message_overrides_default(self):
        result = validate_field('nope', 'email', True, {'messages': {'format': 'Bad email'}})
        assert result.error == 'Bad email'

    @pytest.mark.parametrize('value', ['(11) 99999-9999', '+55 11 999999999', '11999999999'])
    def test_phone_accepts_common_shapes(self, value):
        assert validate_field(value, 'phone', True, None).valid

    def test_phone_rejects_letters(self):
        assert not validate_field('call me', 'phone', True, None).valid

    def test_url(self):
        assert validate_field('https://example.com/path?q=1', 'url', True, None).valid
        assert not validate_field('example', 'url', True, None).valid

    @pytest.mark.parametrize('fmt,good,bad', [
        ('cpf', '123.456.789-09', '123.456'),
        ('cnpj', '12.345.678/0001-95', '12345'),
    ])
    def test_document_formats_on_text_fields(self, fmt, good, bad):
        assert validate_field(good, 'short_text', True, {'format': fmt}).valid
        result = validate_field(bad, 'short_text', True, {'format': fmt})
        assert result.valid is False
        assert result.error == DEFAULT_MESSAGES[fmt]

    def test_stored_format_overrides_type_default(self):
        # an email field explicitly configured as cpf validates as cpf
        assert validate_field('123.456.789-09', 'email', True, {'format': 'cpf'}).valid


class TestLengthAndRange:
    def test_min_and_max_length(self):
        rule = {'minLength': 3, 'maxLength': 5}
        assert validate_field('abcd', 'short_text', True, rule).valid

        short = validate_field('ab', 'short_text', True, rule)
        assert short.error == 'Minimum of 3 characters'

        long = validate_field('abcdef', 'short_text', True, rule)
        assert long.error == 'Maximum of 5 characters'

    def test_length_uses_trimmed_value(self):
        assert validate_field('  ab  ', 'short_text', True, {'maxLength': 2}).valid

    def test_numeric_bounds_apply_to_numbers(self):
        result = validate_field('3', 'short_text', False, {'min': 5})
        assert result.valid is False
        assert result.error == 'Minimum value: 5'

        assert validate_field('12', 'short_text', False, {'max': 10}).error == 'Maximum value: 10'
        assert validate_field(7, 'rating', False, {'min': 1, 'max': 10}).valid

    def test_non_numeric_value_skips_numeric_bounds(self):
        assert validate_field('abc', 'short_text', False, {'min': 5}).valid

    def test_first_failure_wins(self):
        # too short and also below min: the length error is reported
        result = validate_field('3', 'short_text', True, {'minLength': 2, 'min': 5})
        assert result.error == 'Minimum of 2 characters'

    def test_custom_messages(self):
        rule = {'min': 18, 'messages': {'min': 'Adults only'}}
        assert validate_field('12', 'short_text', True, rule).error == 'Adults only'


class TestPattern:
    def test_pattern_is_searched(self):
        assert validate_field('order-123', 'short_text', True, {'pattern': r'\d+'}).valid
        result = validate_field('order', 'short_text', True, {'pattern': r'\d+'})
        assert result.valid is False
        assert result.error == DEFAULT_MESSAGES['invalid']

    def test_malformed_pattern_never_raises(self):
        assert validate_field('anything', 'short_text', True, {'pattern': '(unclosed'}).valid


class TestMerge:
    def test_messages_merge_one_level_deep(self):
        merged = merge_rules('email', {'messages': {'required': 'Need it'}})
        assert merged['format'] == 'email'
        assert merged['messages'] == {'format': DEFAULT_MESSAGES['email'], 'required': 'Need it'}

    def test_non_dict_rule_is_ignored(self):
        assert validate_field('hello', 'short_text', True, 'garbage').valid

    def test_structured_answers_are_not_empty(self):
        assert validate_field({'event': 'abc'}, 'calendly', True, None).valid
        assert validate_field(['a', 'b'], 'checkbox', True, None).valid
