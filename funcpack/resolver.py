from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple, Union

from . import contract
from .attributes import (
    BindingAttribute,
    NoResultAttribute,
    attributes_of,
    is_result_capable,
    is_trigger_capable,
)
from .descriptor import HandlerDescriptor, underlying_function
from .errors import InputShapeError
from .shim import is_reserved_name

NO_TRIGGER = "Function has no Trigger attribute"
MANY_TRIGGERS = "Function has more than one Trigger attribute"
MANY_RESULTS = "Function has more than one Result attribute"


class ParameterBinding(str, Enum):
    ATTRIBUTE = "attribute"
    LOG_WRITER = "log_writer"
    UNBOUND = "unbound"


@dataclass(frozen=True)
class Candidate:
    """A bound value plus the handler descriptor and attributes that describe it."""

    bound_value: Any
    handler: HandlerDescriptor
    attributes: Tuple[BindingAttribute, ...] = ()

    @classmethod
    def from_callable(cls, value: Any) -> "Candidate":
        fn = underlying_function(value)
        return cls(
            bound_value=value,
            handler=HandlerDescriptor.from_callable(value),
            attributes=tuple(attributes_of(fn)),
        )


@dataclass(frozen=True)
class BindingSet:
    handler: HandlerDescriptor
    attributes: Tuple[BindingAttribute, ...]
    plan: Dict[str, ParameterBinding] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


CandidateInput = Union[Candidate, Any, Sequence[Any]]


def _as_candidate(obj: Any) -> Candidate:
    if isinstance(obj, Candidate):
        return obj
    if callable(obj):
        return Candidate.from_callable(obj)
    raise InputShapeError("Not a function")


def extract_candidates(candidates: CandidateInput) -> List[Candidate]:
    """
    Accept a single candidate or a list/tuple of them.

    A candidate is a `Candidate` or a callable carrying binding attributes.
    Anything else cannot be enumerated into handlers and is rejected outright.
    """
    if isinstance(candidates, (list, tuple)):
        return [_as_candidate(c) for c in candidates]
    return [_as_candidate(candidates)]


class FunctionResolver:
    def resolve(self, candidate: Candidate) -> BindingSet:
        handler = candidate.handler
        attrs = list(candidate.attributes)

        # A signature the generated loader cannot reproduce blocks everything else.
        shape_errors = list(handler.shape_errors) + [
            f"Parameter '{p.name}' uses a reserved name" for p in handler.parameters if is_reserved_name(p.name)
        ]
        if shape_errors:
            return BindingSet(handler=handler, attributes=tuple(attrs), errors=shape_errors)

        triggers = [a for a in attrs if is_trigger_capable(a)]
        results = [a for a in attrs if is_result_capable(a)]

        errors: List[str] = []
        if len(results) > 1:
            errors.append(MANY_RESULTS)
        if not triggers:
            errors.append(NO_TRIGGER)
        elif len(triggers) > 1:
            errors.append(MANY_TRIGGERS)

        if not results:
            attrs.append(NoResultAttribute())

        if errors:
            return BindingSet(handler=handler, attributes=tuple(attrs), errors=errors)

        claimed: List[str] = []
        check_errors: List[str] = []
        for attr in attrs:
            for name, messages in attr.check(handler):
                if name is not None:
                    claimed.append(name)
                check_errors.extend(messages)

        log_name = contract.log_param(handler)
        plan: Dict[str, ParameterBinding] = {}
        for p in handler.parameters:
            if p.name in claimed:
                plan[p.name] = ParameterBinding.ATTRIBUTE
            elif p.name == log_name:
                plan[p.name] = ParameterBinding.LOG_WRITER
            else:
                plan[p.name] = ParameterBinding.UNBOUND

        bound = claimed + ([log_name] if log_name else [])
        errors = contract.unbound(handler, bound) + check_errors
        return BindingSet(handler=handler, attributes=tuple(attrs), plan=plan, errors=errors)
