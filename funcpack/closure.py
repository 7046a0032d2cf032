"""
Dependency-closure capture.

Given a handler's bound value, compute the minimal set of Python modules the
deployment host needs in order to unpickle it and run it, then serialize that
set and the value itself into two independent blobs.

Closure computation:
1) walk the value's object graph (functions and the globals their code
   references, closure cells, defaults, partial arguments, bound-method
   receivers, classes, instance attributes, containers) and note every
   module it touches
2) follow each module's `import` statements transitively (parsed, never
   executed), adding parent packages
3) drop the standard library and the host allow-list

The session (allow-list + cache directory) is scoped to one handler.
"""

from __future__ import annotations

import ast
import functools
import importlib.util
import logging
import os
import pickle
import sys
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

from .config import DEFAULT_HOST_MODULES
from .errors import CaptureError
from .logging import log_event
from .rehydrate import (
    MODULES_BLOB,
    VALUE_BLOB,
    ModuleRecord,
    decode_modules,
    decode_value,
    encode_modules,
    encode_value,
)

logger = logging.getLogger(__name__)

_SCALARS = (str, bytes, bytearray, int, float, complex, bool, type(None), type(Ellipsis))


@dataclass(frozen=True)
class ClosurePackage:
    value_blob: bytes
    module_blob: bytes
    modules: Tuple[str, ...] = ()


def _code_names(code: types.CodeType) -> Iterator[str]:
    yield from code.co_names
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            yield from _code_names(const)


def _resolve_relative(package: str, level: int, module: Optional[str]) -> str:
    parts = package.split(".") if package else []
    if level > 1:
        parts = parts[: len(parts) - (level - 1)]
    base = ".".join(parts)
    if module:
        return f"{base}.{module}" if base else module
    return base


class DependencyClosureEngine:
    def __init__(
        self,
        excluded_modules: Iterable[str] = DEFAULT_HOST_MODULES,
        cache_dir: Optional[Path] = None,
    ) -> None:
        self.excluded_modules: FrozenSet[str] = frozenset(excluded_modules)
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None

    def is_excluded(self, name: str) -> bool:
        if not name:
            return True
        top = name.partition(".")[0]
        if top in sys.builtin_module_names or top in sys.stdlib_module_names:
            return True
        parts = name.split(".")
        return any(".".join(parts[:i]) in self.excluded_modules for i in range(1, len(parts) + 1))

    # --- graph walk ---

    def referenced_modules(self, value: Any) -> Set[str]:
        modules: Set[str] = set()
        seen: Set[int] = set()
        stack: List[Any] = [value]

        def note(mod: Any) -> bool:
            # True when the object's home module is shipped and worth descending into.
            if not isinstance(mod, str) or not mod:
                return False
            modules.add(mod)
            return not self.is_excluded(mod)

        while stack:
            obj = stack.pop()
            if id(obj) in seen or isinstance(obj, _SCALARS):
                continue
            seen.add(id(obj))

            if isinstance(obj, types.ModuleType):
                note(obj.__name__)
            elif isinstance(obj, types.FunctionType):
                if not note(obj.__module__):
                    continue
                g = obj.__globals__
                stack.extend(g[n] for n in _code_names(obj.__code__) if n in g)
                for cell in obj.__closure__ or ():
                    try:
                        stack.append(cell.cell_contents)
                    except ValueError:
                        pass  # empty cell
                stack.extend(obj.__defaults__ or ())
                stack.extend((obj.__kwdefaults__ or {}).values())
            elif isinstance(obj, functools.partial):
                stack.append(obj.func)
                stack.extend(obj.args)
                stack.extend(obj.keywords.values())
            elif isinstance(obj, types.MethodType):
                stack.append(obj.__func__)
                stack.append(obj.__self__)
            elif isinstance(obj, (types.BuiltinFunctionType, types.BuiltinMethodType)):
                note(getattr(obj, "__module__", None))
            elif isinstance(obj, type):
                if not note(obj.__module__):
                    continue
                stack.extend(obj.__mro__[1:])
                stack.extend(vars(obj).values())
            elif isinstance(obj, (staticmethod, classmethod)):
                stack.append(obj.__func__)
            elif isinstance(obj, property):
                stack.extend(f for f in (obj.fget, obj.fset, obj.fdel) if f is not None)
            elif isinstance(obj, dict):
                stack.extend(obj.keys())
                stack.extend(obj.values())
            elif isinstance(obj, (list, tuple, set, frozenset)):
                stack.extend(obj)
            else:
                stack.append(type(obj))
                d = getattr(obj, "__dict__", None)
                if isinstance(d, dict):
                    stack.extend(d.values())
                for slot in getattr(type(obj), "__slots__", ()) or ():
                    if isinstance(slot, str) and hasattr(obj, slot):
                        stack.append(getattr(obj, slot))
        return modules

    # --- module records ---

    def _load_record(self, name: str) -> Optional[ModuleRecord]:
        mod = sys.modules.get(name)
        spec = getattr(mod, "__spec__", None) if mod is not None else None
        if spec is None:
            try:
                spec = importlib.util.find_spec(name)
            except (ImportError, ValueError):
                spec = None
        if spec is None:
            logger.debug("closure: module %s not importable here; skipped", name)
            return None

        is_package = spec.submodule_search_locations is not None
        origin = spec.origin
        if is_package and (origin is None or origin == "namespace"):
            return ModuleRecord(name=name, is_package=True, source=b"")
        if not origin or not origin.endswith(".py") or not os.path.isfile(origin):
            raise CaptureError(
                f"module {name!r} has no Python source ({origin}); add it to the host allow-list"
            )
        return ModuleRecord(name=name, is_package=is_package, source=Path(origin).read_bytes())

    def _imports_of(self, rec: ModuleRecord) -> Iterator[str]:
        try:
            tree = ast.parse(rec.source, filename=rec.name)
        except SyntaxError as e:
            raise CaptureError(f"cannot parse module {rec.name!r}: {e}") from e

        package = rec.name if rec.is_package else rec.name.rpartition(".")[0]
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    yield alias.name
            elif isinstance(node, ast.ImportFrom):
                mod = _resolve_relative(package, node.level, node.module) if node.level else (node.module or "")
                if not mod:
                    continue
                yield mod
                # `from pkg import name` may name a submodule.
                for alias in node.names:
                    if alias.name != "*":
                        yield f"{mod}.{alias.name}"

    def compute_closure(self, value: Any) -> List[ModuleRecord]:
        try:
            roots = self.referenced_modules(value)
        except CaptureError:
            raise
        except Exception as e:  # noqa: BLE001
            raise CaptureError(f"dependency walk failed: {type(e).__name__}: {e}") from e
        if "__main__" in roots:
            raise CaptureError("values defined in __main__ cannot be captured; move the handler into a module")

        found: Dict[str, ModuleRecord] = {}
        pending = sorted(roots)
        while pending:
            name = pending.pop()
            if name in found or self.is_excluded(name):
                continue
            rec = self._load_record(name)
            if rec is None:
                continue
            found[name] = rec
            parent = name.rpartition(".")[0]
            if parent:
                pending.append(parent)
            pending.extend(self._imports_of(rec))
        return [found[k] for k in sorted(found)]

    # --- serialization ---

    @staticmethod
    def serialize_modules(records: Iterable[ModuleRecord]) -> bytes:
        return encode_modules(sorted(records, key=lambda r: r.name))

    @staticmethod
    def serialize_value(value: Any) -> bytes:
        try:
            return encode_value(value)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise CaptureError(f"cannot serialize bound value {value!r}: {e}") from e

    @staticmethod
    def deserialize_modules(blob: bytes) -> List[ModuleRecord]:
        return decode_modules(blob)

    @staticmethod
    def deserialize_value(blob: bytes) -> Any:
        return decode_value(blob)

    def capture(self, value: Any) -> ClosurePackage:
        records = self.compute_closure(value)
        package = ClosurePackage(
            value_blob=self.serialize_value(value),
            module_blob=self.serialize_modules(records),
            modules=tuple(r.name for r in records),
        )
        log_event(
            logger,
            "funcpack.closure.captured",
            severity="DEBUG",
            modules=list(package.modules),
            module_blob_bytes=len(package.module_blob),
            value_blob_bytes=len(package.value_blob),
        )
        return package

    def write(self, package: ClosurePackage, directory: Optional[Path] = None) -> Tuple[Path, Path]:
        target = Path(directory) if directory is not None else self.cache_dir
        if target is None:
            raise CaptureError("no directory to write closure blobs to")
        target.mkdir(parents=True, exist_ok=True)
        modules_path = target / MODULES_BLOB
        value_path = target / VALUE_BLOB
        modules_path.write_bytes(package.module_blob)
        value_path.write_bytes(package.value_blob)
        return modules_path, value_path
