"""
Parameter Binding
Typed binding of statement parameters. Callers pass either an ordered
sequence (positional) or a mapping with string keys (named), never a mix.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from database_error_handler import ParameterBindingError


class ParamType(Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    TEXT = "text"


def infer_param_type(value: Any) -> ParamType:
    """Bind type inferred from the runtime value (bool before int)"""
    if value is None:
        return ParamType.NULL
    if isinstance(value, bool):
        return ParamType.BOOL
    if isinstance(value, int):
        return ParamType.INT
    return ParamType.TEXT


@dataclass(frozen=True)
class BoundParam:
    name: Union[int, str]  # 1-based position or parameter name
    type: ParamType
    value: Any

    def driver_value(self) -> Any:
        if self.type is ParamType.TEXT and not isinstance(self.value, (str, bytes, bytearray, memoryview)):
            return str(self.value)
        return self.value


@dataclass(frozen=True)
class BoundParameters:
    positional: bool
    params: Tuple[BoundParam, ...] = ()

    def __len__(self):
        return len(self.params)

    def as_driver_args(self) -> Union[Tuple, Dict[str, Any], None]:
        """Arguments in the shape DB-API ``cursor.execute`` expects"""
        if not self.params:
            return None
        if self.positional:
            ordered = sorted(self.params, key=lambda p: p.name)
            return tuple(p.driver_value() for p in ordered)
        return {p.name: p.driver_value() for p in self.params}

    def raw(self) -> Union[List[Any], Dict[str, Any]]:
        """Original values, keyed the way the caller supplied them"""
        if self.positional:
            return [p.value for p in self.params]
        return {p.name: p.value for p in self.params}

    def serialize(self) -> List[List[Any]]:
        """Stable, type-tagged form used for cache fingerprints"""
        ordered = sorted(self.params, key=lambda p: (str(type(p.name)), p.name))
        return [[p.name, p.type.value, _stable_repr(p.driver_value())] for p in ordered]


def _stable_repr(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def bind_parameters(params: Optional[Union[Mapping, List, Tuple]]) -> BoundParameters:
    """Bind ``params`` with inferred types.

    Sequence indices are translated from 0-based to 1-based positions.
    """
    if params is None:
        return BoundParameters(positional=True)

    if isinstance(params, Mapping):
        keys = list(params.keys())
        if keys and not all(isinstance(k, str) for k in keys):
            kinds = sorted({type(k).__name__ for k in keys})
            raise ParameterBindingError(
                f"Named parameters must use string keys only, got key types: {', '.join(kinds)}"
            )
        return BoundParameters(
            positional=False,
            params=tuple(BoundParam(k, infer_param_type(v), v) for k, v in params.items()),
        )

    if isinstance(params, (list, tuple)):
        return BoundParameters(
            positional=True,
            params=tuple(
                BoundParam(index + 1, infer_param_type(value), value)
                for index, value in enumerate(params)
            ),
        )

    raise ParameterBindingError(
        f"Parameters must be a list, tuple or mapping, got {type(params).__name__}"
    )
