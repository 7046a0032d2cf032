"""
Generated loader + invocation shim.

Two sources are produced per handler:

- `<name>_loader.py`: owns a locked single-slot cache. The first call
  rehydrates the captured closure from the artifact directory; later calls go
  straight to the cached callable. Its entry point takes the handler's
  parameters plus `__dir`, the artifact directory, because the host may run
  the artifact from any working directory. This source is compiled to
  `<name>_loader.pyc` and then deleted.
- `run.py`: the stable entry point the host calls. It loads the compiled
  loader by name from its own directory and injects `__dir`.

Both carry the handler's structural signature as string annotations rendered
by `type_name`, so they line up parameter-for-parameter with the original.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Optional, Tuple, get_args, get_origin

from .compiler_backend import CompilerBackend, InProcessCompilerBackend
from .descriptor import HandlerDescriptor, NoneType, normalize_type
from .errors import CompileError
from .logging import log_event

logger = logging.getLogger(__name__)

VOID_TOKEN = "None"
SHIM_FILE = "run.py"
SHIM_ENTRYPOINT = "main"
DIR_PARAM = "__dir"


def _qualified_name(t: Any) -> str:
    if isinstance(t, type):
        return f"{t.__module__}.{t.__qualname__}"
    name = getattr(t, "_name", None) or getattr(t, "__name__", None)
    if name:
        return f"{getattr(t, '__module__', 'typing')}.{name}"
    return repr(t)


def type_name(t: Any) -> str:
    t = normalize_type(t)
    if t is NoneType:
        return VOID_TOKEN
    if isinstance(t, list):
        return "[%s]" % ", ".join(type_name(a) for a in t)
    origin, args = get_origin(t), get_args(t)
    # tuple[T, ...] is the homogeneous array form.
    if origin is tuple and len(args) == 2 and args[1] is Ellipsis:
        return f"{type_name(args[0])} []"
    if origin is not None:
        if not args:
            return _qualified_name(origin)
        return "%s<%s>" % (_qualified_name(origin), ", ".join(type_name(a) for a in args))
    return _qualified_name(t)


@dataclass(frozen=True)
class StructuralSignature:
    parameters: Tuple[Tuple[str, str], ...]
    return_type: str

    @property
    def function_type(self) -> str:
        return "(%s) -> %s" % (", ".join(t for _, t in self.parameters), self.return_type)


def render_signature(handler: HandlerDescriptor) -> StructuralSignature:
    return StructuralSignature(
        parameters=tuple((p.name, type_name(p.annotation)) for p in handler.parameters),
        return_type=type_name(handler.return_type),
    )


# Every module-level name the generated sources define starts with this
# prefix; handler parameters may not use it (nor `__dir`).
RESERVED_PREFIX = "__funcpack"


def is_reserved_name(name: str) -> bool:
    return name == DIR_PARAM or name.startswith(RESERVED_PREFIX)


_LOADER_TEMPLATE = Template(
    '''"""Generated loader for $qualified_name. Do not edit."""

import threading as __funcpack_threading

import funcpack_rehydrate as __funcpack_runtime

__funcpack_function_type = $function_type

__funcpack_lock = __funcpack_threading.Lock()
__funcpack_cached = None


def ${name}_execute($parameters) -> $return_type:
    global __funcpack_cached
    __funcpack_target = __funcpack_cached
    if __funcpack_target is None:
        with __funcpack_lock:
            if __funcpack_cached is None:
                __funcpack_cached = __funcpack_runtime.rehydrate(__dir, __funcpack_function_type)
            __funcpack_target = __funcpack_cached
    return __funcpack_target($arguments)
'''
)

_SHIM_TEMPLATE = Template(
    '''"""Generated entry point for $qualified_name. Do not edit."""

import importlib.util as __funcpack_importlib_util
import os as __funcpack_os
import sys as __funcpack_sys

__dir = __funcpack_os.path.dirname(__funcpack_os.path.abspath(__file__))
if __dir not in __funcpack_sys.path:
    __funcpack_sys.path.insert(0, __dir)

__funcpack_spec = __funcpack_importlib_util.spec_from_file_location(
    $loader_module, __funcpack_os.path.join(__dir, $loader_file)
)
__funcpack_loader = __funcpack_importlib_util.module_from_spec(__funcpack_spec)
__funcpack_spec.loader.exec_module(__funcpack_loader)


def $entrypoint($parameters) -> $return_type:
    return __funcpack_loader.${name}_execute($arguments)
'''
)


def loader_module_name(handler: HandlerDescriptor) -> str:
    return f"{handler.name}_loader"


def _param_list(sig: StructuralSignature, extra: Tuple[Tuple[str, str], ...] = ()) -> str:
    return ", ".join(f"{n}: {t!r}" for n, t in sig.parameters + extra)


def render_loader_source(handler: HandlerDescriptor, sig: Optional[StructuralSignature] = None) -> str:
    sig = sig or render_signature(handler)
    return _LOADER_TEMPLATE.substitute(
        qualified_name=handler.qualified_name,
        name=handler.name,
        function_type=repr(sig.function_type),
        parameters=_param_list(sig, ((DIR_PARAM, type_name(str)),)),
        return_type=repr(sig.return_type),
        arguments=", ".join(f"{n}={n}" for n, _ in sig.parameters),
    )


def render_shim_source(handler: HandlerDescriptor, sig: Optional[StructuralSignature] = None) -> str:
    sig = sig or render_signature(handler)
    module = loader_module_name(handler)
    return _SHIM_TEMPLATE.substitute(
        qualified_name=handler.qualified_name,
        name=handler.name,
        loader_module=repr(module),
        loader_file=repr(f"{module}.pyc"),
        entrypoint=SHIM_ENTRYPOINT,
        parameters=_param_list(sig),
        return_type=repr(sig.return_type),
        arguments=", ".join([n for n, _ in sig.parameters] + [DIR_PARAM]),
    )


@dataclass(frozen=True)
class SynthesizedShim:
    signature: StructuralSignature
    loader_module: Path
    shim_path: Path


class ShimSynthesizer:
    def __init__(self, backend: Optional[CompilerBackend] = None) -> None:
        self.backend = backend or InProcessCompilerBackend()

    def synthesize(self, directory: Path, handler: HandlerDescriptor) -> SynthesizedShim:
        directory = Path(directory)
        sig = render_signature(handler)
        module = loader_module_name(handler)
        source_path = directory / f"{module}.py"
        output_path = directory / f"{module}.pyc"

        source_path.write_text(render_loader_source(handler, sig), encoding="utf-8")
        result = self.backend.compile(source_path, output_path, [directory])
        if not result.ok:
            # Generated source stays on disk for postmortem inspection.
            log_event(
                logger,
                "funcpack.compile.failed",
                severity="ERROR",
                handler=handler.qualified_name,
                exit_code=result.exit_code,
                source=str(source_path),
            )
            text = "\n".join(result.diagnostics) or f"compiler exited with code {result.exit_code}"
            raise CompileError(text, result.diagnostics)
        source_path.unlink()

        shim_path = directory / SHIM_FILE
        shim_path.write_text(render_shim_source(handler, sig), encoding="utf-8")
        return SynthesizedShim(signature=sig, loader_module=output_path, shim_path=shim_path)
