"""
Value types the host passes to (and accepts from) packaged handlers.

These mirror the shapes the function host hands to Python workers; the
binding attributes in `funcpack.bindings` check handler signatures against
them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def get_body(self) -> bytes:
        return self.body


@dataclass(frozen=True)
class HttpResponse:
    body: bytes | str = b""
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    mimetype: Optional[str] = None


@dataclass(frozen=True)
class TimerInfo:
    past_due: bool = False
