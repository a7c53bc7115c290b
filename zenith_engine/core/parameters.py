"""
Parameter assignment value type.

A ParameterAssignment maps each axis of a parameter space to one concrete
value. Values are a small tagged variant: int, Decimal, str or bool. Floats
are never stored; they are converted to Decimal through their string form so
that identical inputs always produce identical assignments.
"""
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Tuple, Union

ParameterValue = Union[int, Decimal, str, bool]

VALUE_TYPES = ('int', 'decimal', 'str', 'bool')


def value_type_tag(value: ParameterValue) -> str:
    """
    Return the type tag of a parameter value.

    Args:
        value: A coerced parameter value

    Returns:
        One of 'bool', 'int', 'decimal', 'str'

    Raises:
        TypeError: If the value is not a supported parameter type
    """
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, int):
        return 'int'
    if isinstance(value, Decimal):
        return 'decimal'
    if isinstance(value, str):
        return 'str'
    raise TypeError(f"Unsupported parameter value type: {type(value).__name__}")


def coerce_value(value: Any) -> ParameterValue:
    """
    Normalize a raw value (from YAML, JSON or Python) into a parameter value.

    Floats become Decimal via str() to avoid binary representation noise.

    Raises:
        TypeError: If the value cannot be represented
    """
    if isinstance(value, (bool, int, Decimal, str)):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    raise TypeError(f"Unsupported parameter value type: {type(value).__name__}")


class ParameterAssignment(Mapping):
    """
    Immutable, hashable, ordered mapping from parameter name to value.

    Used as the identity of a backtest inside a sweep. Iteration order is the
    declaration order of the parameter space axes.

    Example:
        >>> a = ParameterAssignment({'fast': 10, 'band': Decimal('1.5')})
        >>> a['fast']
        10
        >>> a.to_json()
        [{'name': 'fast', 'type': 'int', 'value': 10},
         {'name': 'band', 'type': 'decimal', 'value': '1.5'}]
    """

    __slots__ = ('_items', '_index', '_hash')

    def __init__(
        self,
        items: Union[Mapping, Iterable[Tuple[str, Any]]] = ()
    ):
        pairs = items.items() if isinstance(items, Mapping) else items
        coerced = tuple((str(name), coerce_value(value)) for name, value in pairs)

        index = {}
        for position, (name, _) in enumerate(coerced):
            if name in index:
                raise ValueError(f"Duplicate parameter name: {name}")
            index[name] = position

        self._items = coerced
        self._index = index
        self._hash = None

    def __getitem__(self, name: str) -> ParameterValue:
        try:
            return self._items[self._index[name]][1]
        except KeyError:
            raise KeyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def _typed_items(self) -> frozenset:
        # Tagged so that True, 1 and Decimal('1') stay distinct identities
        return frozenset((name, value_type_tag(value), value) for name, value in self._items)

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(self._typed_items())
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ParameterAssignment):
            return self._typed_items() == other._typed_items()
        if isinstance(other, Mapping):
            try:
                return self._typed_items() == ParameterAssignment(other)._typed_items()
            except (TypeError, ValueError):
                return False
        return NotImplemented

    def __repr__(self) -> str:
        body = ', '.join(f"{name}={value!r}" for name, value in self._items)
        return f"ParameterAssignment({body})"

    def to_dict(self) -> Dict[str, ParameterValue]:
        """Plain dict copy in declaration order."""
        return dict(self._items)

    def to_json(self) -> List[Dict[str, Any]]:
        """
        Tagged, order-preserving JSON form.

        Decimals are written as strings so they survive any JSON backend
        without precision loss.
        """
        encoded = []
        for name, value in self._items:
            tag = value_type_tag(value)
            encoded.append({
                'name': name,
                'type': tag,
                'value': str(value) if tag == 'decimal' else value,
            })
        return encoded

    @classmethod
    def from_json(cls, data: List[Dict[str, Any]]) -> 'ParameterAssignment':
        """
        Rebuild an assignment from its tagged JSON form.

        Raises:
            ValueError: If an entry carries an unknown type tag or bad value
        """
        pairs = []
        for entry in data:
            tag = entry['type']
            raw = entry['value']
            if tag == 'int':
                value = int(raw)
            elif tag == 'decimal':
                try:
                    value = Decimal(str(raw))
                except InvalidOperation:
                    raise ValueError(f"Invalid decimal value for {entry['name']}: {raw!r}")
            elif tag == 'bool':
                value = bool(raw)
            elif tag == 'str':
                value = str(raw)
            else:
                raise ValueError(f"Unknown parameter type tag: {tag!r}")
            pairs.append((entry['name'], value))
        return cls(pairs)
