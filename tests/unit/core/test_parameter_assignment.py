"""
Unit tests for ParameterAssignment and parameter value coercion.
"""
import pytest
from decimal import Decimal

from zenith_engine.core.parameters import (
    ParameterAssignment,
    coerce_value,
    value_type_tag,
)


class TestValueTypes:
    """Test type tagging and coercion of parameter values."""

    def test_bool_is_tagged_before_int(self):
        assert value_type_tag(True) == 'bool'
        assert value_type_tag(1) == 'int'

    def test_decimal_and_str_tags(self):
        assert value_type_tag(Decimal('1.5')) == 'decimal'
        assert value_type_tag('trend') == 'str'

    def test_float_becomes_exact_decimal(self):
        """0.1 must not carry binary noise."""
        assert coerce_value(0.1) == Decimal('0.1')
        assert isinstance(coerce_value(0.1), Decimal)

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            coerce_value([1, 2])
        with pytest.raises(TypeError):
            value_type_tag(None)


class TestParameterAssignment:
    """Test the immutable assignment mapping."""

    def test_mapping_access_and_order(self):
        assignment = ParameterAssignment([('slow', 50), ('fast', 10), ('mode', 'trend')])

        assert assignment['fast'] == 10
        assert list(assignment) == ['slow', 'fast', 'mode']
        assert len(assignment) == 3

    def test_missing_key_raises_key_error(self):
        assignment = ParameterAssignment({'fast': 10})
        with pytest.raises(KeyError):
            assignment['slow']
        assert assignment.get('slow') is None

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate parameter name"):
            ParameterAssignment([('fast', 10), ('fast', 20)])

    def test_equal_assignments_hash_equal(self):
        """Usable as an identity key regardless of construction order."""
        a = ParameterAssignment([('fast', 10), ('band', Decimal('1.5'))])
        b = ParameterAssignment([('band', Decimal('1.5')), ('fast', 10)])

        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

    def test_equals_plain_dict(self):
        assert ParameterAssignment({'fast': 10}) == {'fast': 10}

    def test_different_values_not_equal(self):
        assert ParameterAssignment({'fast': 10}) != ParameterAssignment({'fast': 20})

    def test_bool_int_and_decimal_are_distinct_identities(self):
        flag_true = ParameterAssignment({'flag': True})
        flag_one = ParameterAssignment({'flag': 1})
        flag_decimal = ParameterAssignment({'flag': Decimal('1')})

        assert flag_true != flag_one
        assert flag_one != flag_decimal
        assert flag_true != {'flag': 1}
        assert len({flag_true, flag_one, flag_decimal}) == 3

    def test_floats_are_coerced_on_construction(self):
        assignment = ParameterAssignment({'band': 1.1})
        assert assignment['band'] == Decimal('1.1')

    def test_to_json_tags_every_value(self):
        assignment = ParameterAssignment([
            ('fast', 10), ('band', Decimal('1.50')), ('mode', 'trend'), ('short', False),
        ])

        assert assignment.to_json() == [
            {'name': 'fast', 'type': 'int', 'value': 10},
            {'name': 'band', 'type': 'decimal', 'value': '1.50'},
            {'name': 'mode', 'type': 'str', 'value': 'trend'},
            {'name': 'short', 'type': 'bool', 'value': False},
        ]

    def test_from_json_restores_types_and_order(self):
        original = ParameterAssignment([
            ('fast', 10), ('band', Decimal('1.50')), ('mode', 'trend'), ('short', True),
        ])

        restored = ParameterAssignment.from_json(original.to_json())

        assert restored == original
        assert list(restored) == ['fast', 'band', 'mode', 'short']
        assert restored['band'] == Decimal('1.50')
        assert str(restored['band']) == '1.50'
        assert restored['short'] is True

    def test_from_json_rejects_unknown_tag(self):
        with pytest.raises(ValueError, match="Unknown parameter type tag"):
            ParameterAssignment.from_json([{'name': 'x', 'type': 'float', 'value': 1.0}])

    def test_to_dict_is_a_copy(self):
        assignment = ParameterAssignment({'fast': 10})
        copy = assignment.to_dict()
        copy['fast'] = 99
        assert assignment['fast'] == 10
