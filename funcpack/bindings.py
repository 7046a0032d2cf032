"""
A small set of concrete host bindings.

Each binding contributes signature checks and one or more `function.json`
style fragments to the binding manifest. Third parties add bindings the same
way: subclass one of the capability bases from `funcpack.attributes`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from . import contract
from .attributes import BindingAttribute, ComplexAttribute, ResultAttribute, TriggerAttribute
from .contract import CheckResult
from .descriptor import HandlerDescriptor
from .host_types import HttpRequest, HttpResponse, TimerInfo

DEFAULT_CONNECTION = "AzureWebJobsStorage"


class HttpTrigger(ComplexAttribute):
    """HTTP request in, HTTP response out."""

    def __init__(
        self,
        *,
        methods: Sequence[str] = ("get", "post"),
        route: Optional[str] = None,
        auth_level: str = "function",
        param_name: str = "req",
    ) -> None:
        self.methods = [m.lower() for m in methods]
        self.route = route
        self.auth_level = auth_level
        self.param_name = param_name

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return [
            contract.param(handler, self.param_name, [HttpRequest]),
            contract.result(handler, [HttpResponse, str]),
        ]

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        trigger: Dict[str, Any] = {
            "type": "httpTrigger",
            "direction": "in",
            "name": self.param_name,
            "authLevel": self.auth_level,
            "methods": list(self.methods),
        }
        if self.route is not None:
            trigger["route"] = self.route
        return [trigger, {"type": "http", "direction": "out", "name": "$return"}]


class TimerTrigger(TriggerAttribute):
    def __init__(self, schedule: str, *, run_on_startup: bool = False, param_name: str = "timer") -> None:
        self.schedule = schedule
        self.run_on_startup = run_on_startup
        self.param_name = param_name

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return [contract.param(handler, self.param_name, [TimerInfo])]

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "timerTrigger",
                "direction": "in",
                "name": self.param_name,
                "schedule": self.schedule,
                "runOnStartup": self.run_on_startup,
            }
        ]


class QueueTrigger(TriggerAttribute):
    def __init__(self, queue_name: str, *, connection: str = DEFAULT_CONNECTION, param_name: str = "message") -> None:
        self.queue_name = queue_name
        self.connection = connection
        self.param_name = param_name

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return [contract.param(handler, self.param_name, [str, bytes])]

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "queueTrigger",
                "direction": "in",
                "name": self.param_name,
                "queueName": self.queue_name,
                "connection": self.connection,
            }
        ]


class QueueResult(ResultAttribute):
    """Return value is pushed onto a storage queue."""

    def __init__(self, queue_name: str, *, connection: str = DEFAULT_CONNECTION) -> None:
        self.queue_name = queue_name
        self.connection = connection

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        return [contract.result(handler, [str, bytes])]

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "queue",
                "direction": "out",
                "name": "$return",
                "queueName": self.queue_name,
                "connection": self.connection,
            }
        ]


class BlobInput(BindingAttribute):
    """Extra input binding; claims one parameter, takes no trigger/result role."""

    def __init__(
        self, path: str, *, param_name: str = "blob", connection: str = DEFAULT_CONNECTION, optional: bool = False
    ) -> None:
        self.path = path
        self.param_name = param_name
        self.connection = connection
        self.optional = optional

    def check(self, handler: HandlerDescriptor) -> List[CheckResult]:
        check = contract.opt_param if self.optional else contract.param
        return [check(handler, self.param_name, [bytes, str])]

    def manifest_fragment(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "blob",
                "direction": "in",
                "name": self.param_name,
                "path": self.path,
                "connection": self.connection,
            }
        ]
