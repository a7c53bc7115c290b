"""
Parameter space parsing and enumeration.

A parameter space maps each parameter name to a ParameterSpec: either a
numeric range {start, end, step} or an explicit discrete set. Enumeration
yields the full cartesian product as ParameterAssignment objects in a
deterministic order: axes in declaration order, and within an axis ascending
numeric order or declared discrete order.

Example:
    space = parse_parameter_space({
        'fast_period': {'start': 5, 'end': 20, 'step': 5},
        'band_width': {'start': '1.0', 'end': '2.0', 'step': '0.5'},
        'mode': ['trend', 'revert'],
    })
    enumerator = ParameterSpaceEnumerator(space, max_combinations=1000)
    print(len(enumerator))          # 4 * 3 * 2 = 24
    for assignment in enumerator:
        ...
"""
import itertools
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Mapping, Tuple, Union

from zenith_engine.core.exceptions import InvalidParameterSpace
from zenith_engine.core.parameters import (
    ParameterAssignment,
    ParameterValue,
    coerce_value,
    value_type_tag,
)
from zenith_engine.utils.logging_config import get_optimization_logger

logger = get_optimization_logger('PARAMETERS')

DEFAULT_MAX_COMBINATIONS = 10_000


@dataclass(frozen=True)
class RangeSpec:
    """
    Inclusive numeric range.

    Values are start, start+step, start+2*step, ... up to the last value <= end.
    The i-th value is computed as start + i*step, never by repeated addition.

    Attributes:
        start: First value
        end: Upper bound (inclusive)
        step: Positive increment
    """
    start: Union[int, Decimal]
    end: Union[int, Decimal]
    step: Union[int, Decimal]

    @property
    def is_integer(self) -> bool:
        return all(
            isinstance(v, int) and not isinstance(v, bool)
            for v in (self.start, self.end, self.step)
        )

    def count(self) -> int:
        if self.is_integer:
            return (self.end - self.start) // self.step + 1
        return int((Decimal(self.end) - Decimal(self.start)) // Decimal(self.step)) + 1

    def values(self) -> Tuple[ParameterValue, ...]:
        if self.is_integer:
            return tuple(self.start + i * self.step for i in range(self.count()))
        start, step = Decimal(self.start), Decimal(self.step)
        return tuple(start + i * step for i in range(self.count()))

    def to_json(self) -> Dict[str, Any]:
        if self.is_integer:
            return {'start': self.start, 'end': self.end, 'step': self.step}
        return {'start': str(self.start), 'end': str(self.end), 'step': str(self.step)}


@dataclass(frozen=True)
class DiscreteSpec:
    """
    Explicit set of values, enumerated in declared order.

    Attributes:
        choices: Deduplicated values (first occurrence kept)
    """
    choices: Tuple[ParameterValue, ...]

    def count(self) -> int:
        return len(self.choices)

    def values(self) -> Tuple[ParameterValue, ...]:
        return self.choices

    def to_json(self) -> Dict[str, Any]:
        return {
            'values': [
                {'type': value_type_tag(v), 'value': str(v) if isinstance(v, Decimal) else v}
                for v in self.choices
            ]
        }


ParameterSpec = Union[RangeSpec, DiscreteSpec]


def _to_number(name: str, field_name: str, raw: Any) -> Union[int, Decimal]:
    """Range bound as int or Decimal; floats and numeric strings go through str()."""
    if isinstance(raw, bool):
        raise InvalidParameterSpace(f"Parameter '{name}': {field_name} must be numeric, got bool")
    if isinstance(raw, (int, Decimal)):
        return raw
    if isinstance(raw, (float, str)):
        try:
            number = Decimal(str(raw))
        except InvalidOperation:
            raise InvalidParameterSpace(
                f"Parameter '{name}': {field_name} is not a number: {raw!r}"
            ) from None
        if not number.is_finite():
            raise InvalidParameterSpace(f"Parameter '{name}': {field_name} must be finite")
        return number
    raise InvalidParameterSpace(
        f"Parameter '{name}': {field_name} must be numeric, got {type(raw).__name__}"
    )


def _parse_discrete_value(name: str, raw: Any) -> ParameterValue:
    # Tagged form written by DiscreteSpec.to_json
    if isinstance(raw, Mapping) and 'type' in raw and 'value' in raw:
        tag, value = raw['type'], raw['value']
        if tag == 'decimal':
            return _to_number(name, 'value', str(value))
        if tag == 'int':
            return int(value)
        if tag == 'bool':
            return bool(value)
        if tag == 'str':
            return str(value)
        raise InvalidParameterSpace(f"Parameter '{name}': unknown value type {tag!r}")
    try:
        return coerce_value(raw)
    except TypeError as e:
        raise InvalidParameterSpace(f"Parameter '{name}': {e}") from None


def parse_parameter_spec(name: str, raw: Any) -> ParameterSpec:
    """
    Parse one axis of a parameter space.

    Args:
        name: Parameter name (used in error messages)
        raw: Mapping with start/end/step, mapping with 'values', a list of
             values, or an already-built spec

    Returns:
        RangeSpec or DiscreteSpec

    Raises:
        InvalidParameterSpace: If the axis is malformed or empty
    """
    if isinstance(raw, (RangeSpec, DiscreteSpec)):
        spec = raw
    elif isinstance(raw, Mapping) and 'values' in raw:
        spec = _build_discrete(name, raw['values'])
    elif isinstance(raw, Mapping):
        missing = [key for key in ('start', 'end', 'step') if key not in raw]
        if missing:
            raise InvalidParameterSpace(
                f"Parameter '{name}': range is missing {', '.join(missing)}"
            )
        spec = RangeSpec(
            start=_to_number(name, 'start', raw['start']),
            end=_to_number(name, 'end', raw['end']),
            step=_to_number(name, 'step', raw['step']),
        )
    elif isinstance(raw, (list, tuple)):
        spec = _build_discrete(name, raw)
    else:
        raise InvalidParameterSpace(
            f"Parameter '{name}': expected a range mapping or a list of values, "
            f"got {type(raw).__name__}"
        )

    _validate_spec(name, spec)
    return spec


def _build_discrete(name: str, raw_values: Any) -> DiscreteSpec:
    if not isinstance(raw_values, (list, tuple)):
        raise InvalidParameterSpace(f"Parameter '{name}': 'values' must be a list")

    choices = []
    seen = set()
    for raw in raw_values:
        value = _parse_discrete_value(name, raw)
        # Tag in the key so that True and 1 stay distinct values
        key = (value_type_tag(value), value)
        if key in seen:
            continue
        seen.add(key)
        choices.append(value)
    return DiscreteSpec(choices=tuple(choices))


def _validate_spec(name: str, spec: ParameterSpec) -> None:
    if isinstance(spec, RangeSpec):
        if spec.step <= 0:
            raise InvalidParameterSpace(
                f"Parameter '{name}': step must be positive, got {spec.step}"
            )
        if spec.start > spec.end:
            raise InvalidParameterSpace(
                f"Parameter '{name}': start {spec.start} is greater than end {spec.end}"
            )
    if spec.count() < 1:
        raise InvalidParameterSpace(f"Parameter '{name}': axis yields no values")


def parse_parameter_space(raw: Mapping[str, Any]) -> Dict[str, ParameterSpec]:
    """
    Parse a full parameter space, preserving declaration order.

    Raises:
        InvalidParameterSpace: If the space is empty or any axis is invalid
    """
    if not isinstance(raw, Mapping):
        raise InvalidParameterSpace(
            f"Parameter space must be a mapping, got {type(raw).__name__}"
        )
    if not raw:
        raise InvalidParameterSpace("Parameter space declares no parameters")

    return {str(name): parse_parameter_spec(str(name), spec) for name, spec in raw.items()}


def parameter_space_to_json(space: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-safe form of a parameter space that parses back to the same specs."""
    parsed = parse_parameter_space(space)
    return {name: spec.to_json() for name, spec in parsed.items()}


def count_combinations(space: Mapping[str, Any]) -> int:
    """
    Size of the cartesian product, computed without enumerating.

    Example:
        count_combinations({'a': [1, 2], 'b': {'start': 1, 'end': 3, 'step': 1}})
        # 6
    """
    total = 1
    for spec in parse_parameter_space(space).values():
        total *= spec.count()
    return total


class ParameterSpaceEnumerator:
    """
    Restartable, lazy enumeration of a parameter space.

    The space is validated and the combination cap checked on construction,
    so configuration errors surface before any work starts. Each iteration
    starts from scratch and yields an identical sequence.

    Attributes:
        space: Parsed specs in declaration order
        max_combinations: Cap on the cartesian product size
        total: Number of assignments this enumerator yields
    """

    def __init__(
        self,
        space: Mapping[str, Any],
        max_combinations: int = DEFAULT_MAX_COMBINATIONS,
    ):
        self.space = parse_parameter_space(space)
        self.max_combinations = max_combinations

        total = 1
        for spec in self.space.values():
            total *= spec.count()
        self.total = total

        if total > max_combinations:
            raise InvalidParameterSpace(
                f"Parameter space has {total} combinations, "
                f"exceeding the cap of {max_combinations}"
            )

        # Axes are materialized only once the cap holds
        self._axes = [(name, spec.values()) for name, spec in self.space.items()]

        logger.debug(
            f"Parameter space: {len(self._axes)} axes, {total} combinations"
        )

    def __len__(self) -> int:
        return self.total

    def __iter__(self) -> Iterator[ParameterAssignment]:
        names = [name for name, _ in self._axes]
        for combo in itertools.product(*(values for _, values in self._axes)):
            yield ParameterAssignment(zip(names, combo))


def enumerate_parameter_space(
    space: Mapping[str, Any],
    max_combinations: int = DEFAULT_MAX_COMBINATIONS,
) -> ParameterSpaceEnumerator:
    """
    Validate a parameter space and return its enumerator.

    Raises:
        InvalidParameterSpace: On a malformed spec, an empty axis, or a
            cartesian product larger than max_combinations
    """
    return ParameterSpaceEnumerator(space, max_combinations=max_combinations)
