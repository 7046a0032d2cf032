from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional


# Modules the deployment host ships with its function runtime. The standard
# library is always treated as present and is not listed here.
DEFAULT_HOST_MODULES: FrozenSet[str] = frozenset(
    {
        "azure.functions",
        "azure_functions_worker",
        "pydantic",
        "pydantic_core",
        "typing_extensions",
        "annotated_types",
    }
)

COMPILER_INPROCESS = "inprocess"
COMPILER_SUBPROCESS = "subprocess"


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _parse_float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_csv_env(name: str) -> FrozenSet[str]:
    raw = os.getenv(name) or ""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class PackagingConfig:
    """
    Knobs for one packaging run.

    - excluded_modules: host allow-list; never shipped in the module blob
    - isolate_failures: record capture/compile failures per handler instead of
      aborting the remaining batch
    - max_workers: >1 packages handlers on a thread pool. On an abort, handlers
      already in flight still finish; queued ones are cancelled.
    - compiler: "inprocess" (py_compile under a lock) or "subprocess"
    - compile_timeout_s: subprocess backend only
    """

    excluded_modules: FrozenSet[str] = field(default_factory=lambda: DEFAULT_HOST_MODULES)
    isolate_failures: bool = False
    max_workers: int = 1
    compiler: str = COMPILER_INPROCESS
    compile_timeout_s: Optional[float] = None

    @classmethod
    def from_env(cls) -> "PackagingConfig":
        compiler = (os.getenv("FUNCPACK_COMPILER") or COMPILER_INPROCESS).strip().lower()
        if compiler not in (COMPILER_INPROCESS, COMPILER_SUBPROCESS):
            raise ValueError(f"FUNCPACK_COMPILER must be '{COMPILER_INPROCESS}' or '{COMPILER_SUBPROCESS}'")
        return cls(
            excluded_modules=DEFAULT_HOST_MODULES | _parse_csv_env("FUNCPACK_EXCLUDE_MODULES"),
            isolate_failures=_parse_bool_env("FUNCPACK_ISOLATE_FAILURES", default=False),
            max_workers=max(1, _parse_int_env("FUNCPACK_MAX_WORKERS", 1)),
            compiler=compiler,
            compile_timeout_s=_parse_float_env("FUNCPACK_COMPILE_TIMEOUT_S", None),
        )
