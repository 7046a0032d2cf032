"""
Binding attributes.

An attribute declares one binding between a handler and the host. Attributes
are attached with decorator syntax and stay open for extension: any subclass
of the three capability bases below participates in validation, manifest
writing and post-build hooks.

    @TimerTrigger(schedule="0 */5 * * * *")
    def tick(timer: TimerInfo, log: logging.Logger) -> None: ...

Capabilities:
- TriggerAttribute: how/when the host invokes the handler (exactly one)
- ResultAttribute: where the return value goes (at most one)
- ComplexAttribute: both at once
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, TypeVar

from . import contract
from .contract import CheckResult
from .descriptor import HandlerDescriptor, NoneType

ATTRIBUTES_ATTR = "__funcpack_attributes__"

F = TypeVar("F", bound=Callable[..., Any])


class BindingAttribute(ABC):
    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return []

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        return []

    def build(self, directory: Path) -> List[str]:
        """Post-build hook; returns the names of any extra artifacts written."""
        return []

    def __call__(self, fn: F) -> F:
        attach(fn, self)
        return fn

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{type(self).__name__}({fields})"


class TriggerAttribute(BindingAttribute):
    @abstractmethod
    def check(self, handler: HandlerDescriptor) -> List[CheckResult]: ...


class ResultAttribute(BindingAttribute):
    pass


class ComplexAttribute(BindingAttribute):
    pass


class NoResultAttribute(ResultAttribute):
    """Substituted when a handler declares no result binding."""

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return [contract.result(handler, [NoneType])]


def attach(fn: Callable[..., Any], *attrs: BindingAttribute) -> None:
    # Decorators run bottom-up; prepend so the stored order is source order.
    existing = list(getattr(fn, ATTRIBUTES_ATTR, ()))
    setattr(fn, ATTRIBUTES_ATTR, list(attrs) + existing)


def attributes_of(fn: Callable[..., Any]) -> List[BindingAttribute]:
    return [a for a in getattr(fn, ATTRIBUTES_ATTR, ()) if isinstance(a, BindingAttribute)]


def is_trigger_capable(attr: BindingAttribute) -> bool:
    return isinstance(attr, (TriggerAttribute, ComplexAttribute))


def is_result_capable(attr: BindingAttribute) -> bool:
    return isinstance(attr, (ResultAttribute, ComplexAttribute))
