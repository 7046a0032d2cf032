"""
Handler descriptors: the explicit, immutable view of a handler's signature.

A handler is whatever callable the caller wants deployed: a plain function,
a `functools.partial` over one (its bound arguments become captured state),
or a bound method. The descriptor records

- scope: the declaring module (plus enclosing class, for methods)
- name: the function name
- parameters: the remaining call parameters, in order, with resolved types
- return_type: the declared return type; `async def` handlers are described
  with the deferred wrapper `collections.abc.Awaitable[<declared>]`
- shape_errors: reasons the host cannot call it (variadic or positional-only
  parameters, unresolvable annotations)
"""

from __future__ import annotations

import collections.abc
import functools
import inspect
import types
import typing
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, List, Optional, Set, Tuple

from .errors import InputShapeError

NoneType = type(None)


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    annotation: Any = Any


@dataclass(frozen=True)
class HandlerDescriptor:
    scope: str
    name: str
    parameters: Tuple[ParameterSpec, ...] = ()
    return_type: Any = NoneType
    shape_errors: Tuple[str, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.scope}.{self.name}"

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    @classmethod
    def from_callable(cls, value: Any) -> "HandlerDescriptor":
        """
        Describe `value` as the host will call it.

        Parameters a `functools.partial` already supplies (positionally or by
        keyword) are not part of the call signature. Signature shapes the host
        cannot call are recorded in `shape_errors` rather than raised, so one
        bad handler does not take down the rest of a batch.
        """
        fn = underlying_function(value)
        shape_errors: List[str] = []
        try:
            sig = inspect.signature(value)
        except (TypeError, ValueError) as e:
            raise InputShapeError(f"Not a function: {e}") from e
        try:
            hints = typing.get_type_hints(fn)
        except Exception as e:  # noqa: BLE001 (unresolvable forward references)
            hints = {}
            shape_errors.append(f"Cannot resolve annotations: {type(e).__name__}: {e}")

        supplied = bound_keywords(value)
        params = []
        for p in sig.parameters.values():
            if p.name in supplied:
                continue
            if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                shape_errors.append(f"Parameter '{p.name}' cannot be variadic")
                continue
            if p.kind is inspect.Parameter.POSITIONAL_ONLY:
                shape_errors.append(f"Parameter '{p.name}' cannot be positional-only")
                continue
            params.append(ParameterSpec(name=p.name, annotation=normalize_type(hints.get(p.name, Any))))

        ret = normalize_type(hints.get("return", Any))
        if inspect.iscoroutinefunction(fn):
            ret = collections.abc.Awaitable[ret]

        return cls(
            scope=_declaring_scope(fn),
            name=fn.__name__,
            parameters=tuple(params),
            return_type=ret,
            shape_errors=tuple(shape_errors),
        )


def normalize_type(t: Any) -> Any:
    if t is None:
        return NoneType
    return t


def underlying_function(value: Any) -> Callable[..., Any]:
    while True:
        if isinstance(value, functools.partial):
            value = value.func
        elif isinstance(value, types.MethodType):
            value = value.__func__
        elif isinstance(value, types.FunctionType):
            return value
        else:
            raise InputShapeError("Not a function")


def _declaring_scope(fn: Callable[..., Any]) -> str:
    prefix = fn.__qualname__.rpartition(".")[0]
    return f"{fn.__module__}.{prefix}" if prefix else str(fn.__module__)


def bound_keywords(value: Any) -> FrozenSet[str]:
    """Parameter names supplied by keyword anywhere in a partial/method chain."""
    names: Set[str] = set()
    while True:
        if isinstance(value, functools.partial):
            names.update(value.keywords)
            value = value.func
        elif isinstance(value, types.MethodType):
            value = value.__func__
        else:
            return frozenset(names)
