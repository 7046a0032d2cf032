"""
Declarative signature checks used by binding attributes.

Every check returns `(claimed_parameter_name | None, [messages])`. A claimed
name marks that parameter as bound by the attribute even when the messages
are non-empty, so a mistyped parameter is reported once (as mistyped) and not
a second time as unbound.
"""

from __future__ import annotations

import collections.abc
import logging
from typing import Any, Iterable, List, Optional, Sequence, Tuple, get_args, get_origin

from .descriptor import HandlerDescriptor, NoneType, normalize_type

CheckResult = Tuple[Optional[str], List[str]]

LOG_WRITER_TYPES: Tuple[type, ...] = (logging.Logger,)


def _issubclass(t: Any, target: Any) -> bool:
    if not isinstance(t, type) or not isinstance(target, type):
        return False
    try:
        return issubclass(t, target)
    except TypeError:
        return False


def _is_deferred(origin: Any) -> bool:
    return _issubclass(origin, collections.abc.Awaitable)


def is_assignable(t: Any, target: Any) -> bool:
    """
    True when a value declared as `t` satisfies a slot declared as `target`.

    Plain classes follow subclassing. Generic aliases must share (or subclass)
    the origin and match arguments exactly, except deferred wrappers which are
    covariant in their result type.
    """
    t = normalize_type(t)
    target = normalize_type(target)
    if t == target or target is Any:
        return True

    t_origin, target_origin = get_origin(t), get_origin(target)
    if target_origin is None:
        return _issubclass(t if t_origin is None else t_origin, target)
    if t_origin is None:
        return False
    if t_origin != target_origin and not _issubclass(t_origin, target_origin):
        return False

    t_args, target_args = get_args(t), get_args(target)
    if not target_args:
        return True
    if _is_deferred(target_origin):
        return bool(t_args) and is_assignable(t_args[-1], target_args[-1])
    return tuple(map(normalize_type, t_args)) == tuple(map(normalize_type, target_args))


def type_in_list(t: Any, types: Iterable[Any]) -> bool:
    return any(is_assignable(t, typ) for typ in types)


def with_deferred(types: Sequence[Any]) -> List[Any]:
    """Each allowed type followed by its awaitable form."""
    out: List[Any] = []
    for t in types:
        t = normalize_type(t)
        out.append(t)
        out.append(collections.abc.Awaitable[t])
    return out


def short_name(t: Any) -> str:
    t = normalize_type(t)
    if t is NoneType:
        return "None"
    origin = get_origin(t)
    if origin is not None:
        args = ", ".join(short_name(a) if a is not Ellipsis else "..." for a in get_args(t))
        return f"{short_name(origin)}[{args}]" if args else short_name(origin)
    name = getattr(t, "__name__", None) or getattr(t, "_name", None)
    return str(name or t)


def describe_types(types: Sequence[Any]) -> str:
    return "%s %s" % ("one of" if len(types) > 1 else "a", ", ".join(short_name(t) for t in types))


def _param(handler: HandlerDescriptor, name: str, types: Sequence[Any], optional: bool) -> CheckResult:
    p = handler.parameter(name)
    type_err = f"Parameter '{name}' must be {describe_types(types)}"
    if p is not None:
        if not type_in_list(p.annotation, types):
            return name, [type_err]
        return name, []
    if not optional:
        # Both messages: the missing name is itself the ambiguity.
        return name, [f"Must have a parameter named '{name}'", type_err]
    return None, []


def param(handler: HandlerDescriptor, name: str, types: Sequence[Any]) -> CheckResult:
    return _param(handler, name, types, optional=False)


def opt_param(handler: HandlerDescriptor, name: str, types: Sequence[Any]) -> CheckResult:
    return _param(handler, name, types, optional=True)


def result(handler: HandlerDescriptor, types: Sequence[Any]) -> CheckResult:
    accepted = with_deferred(types)
    if not type_in_list(handler.return_type, accepted):
        return None, [f"Return type must be {describe_types(accepted)}"]
    return None, []


def log_param(handler: HandlerDescriptor) -> Optional[str]:
    for p in handler.parameters:
        if type_in_list(p.annotation, LOG_WRITER_TYPES):
            return p.name
    return None


def unbound(handler: HandlerDescriptor, bound: Iterable[str]) -> List[str]:
    names = set(bound)
    return [f"Parameter '{p.name}' is not bound" for p in handler.parameters if p.name not in names]
