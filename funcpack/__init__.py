"""
Package annotated handler functions into self-contained serverless artifacts.

    from funcpack import PackagingOrchestrator

    results = PackagingOrchestrator().compile("build/", [handler_a, handler_b])
    for scope, name, output_dir, errors in results:
        ...
"""

from __future__ import annotations

from .attributes import (
    BindingAttribute,
    ComplexAttribute,
    NoResultAttribute,
    ResultAttribute,
    TriggerAttribute,
    attach,
    attributes_of,
)
from .closure import ClosurePackage, DependencyClosureEngine
from .compiler_backend import CompilerBackend, CompileResult, InProcessCompilerBackend, SubprocessCompilerBackend
from .config import DEFAULT_HOST_MODULES, PackagingConfig
from .descriptor import HandlerDescriptor, ParameterSpec
from .errors import CaptureError, CompileError, InputShapeError, PackagingError
from .orchestrator import PackageResult, PackagingOrchestrator, compile_handlers
from .resolver import BindingSet, Candidate, FunctionResolver, ParameterBinding
from .shim import ShimSynthesizer, StructuralSignature, render_signature, type_name

__all__ = [
    "BindingAttribute",
    "TriggerAttribute",
    "ResultAttribute",
    "ComplexAttribute",
    "NoResultAttribute",
    "attach",
    "attributes_of",
    "ClosurePackage",
    "DependencyClosureEngine",
    "CompilerBackend",
    "CompileResult",
    "InProcessCompilerBackend",
    "SubprocessCompilerBackend",
    "DEFAULT_HOST_MODULES",
    "PackagingConfig",
    "HandlerDescriptor",
    "ParameterSpec",
    "PackagingError",
    "InputShapeError",
    "CaptureError",
    "CompileError",
    "PackageResult",
    "PackagingOrchestrator",
    "compile_handlers",
    "BindingSet",
    "Candidate",
    "FunctionResolver",
    "ParameterBinding",
    "ShimSynthesizer",
    "StructuralSignature",
    "render_signature",
    "type_name",
]
