from __future__ import annotations

import os
import py_compile
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .config import COMPILER_SUBPROCESS, PackagingConfig

# Hash-based pycs carry no source mtime and `dfile` drops the build
# directory from code object filenames, so identical source yields identical
# bytes.
_INVALIDATION_MODE = py_compile.PycInvalidationMode.UNCHECKED_HASH

_COMPILE_SNIPPET = (
    "import os, py_compile, sys; "
    "py_compile.compile(sys.argv[1], cfile=sys.argv[2], dfile=os.path.basename(sys.argv[1]), doraise=True, "
    "invalidation_mode=py_compile.PycInvalidationMode.UNCHECKED_HASH)"
)


@dataclass(frozen=True)
class CompileResult:
    diagnostics: List[str] = field(default_factory=list)
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CompilerBackend(ABC):
    """
    Turns generated loader source into a loadable module.

    Contract:
    - never raises for compile errors; reports them via a non-zero exit code
      plus human-readable diagnostics
    - `search_paths` are the directories the compiled module resolves imports
      against at load time
    """

    @abstractmethod
    def compile(self, source_path: Path, output_path: Path, search_paths: Sequence[Path] = ()) -> CompileResult: ...


class InProcessCompilerBackend(CompilerBackend):
    """py_compile inside this interpreter; invocations are serialized."""

    _lock = threading.Lock()

    def compile(self, source_path: Path, output_path: Path, search_paths: Sequence[Path] = ()) -> CompileResult:
        with self._lock:
            try:
                py_compile.compile(
                    str(source_path),
                    cfile=str(output_path),
                    dfile=Path(source_path).name,
                    doraise=True,
                    invalidation_mode=_INVALIDATION_MODE,
                )
            except py_compile.PyCompileError as e:
                return CompileResult(diagnostics=[str(e.msg).strip()], exit_code=1)
        return CompileResult()


class SubprocessCompilerBackend(CompilerBackend):
    """
    Compiles with a separate interpreter (e.g. one matching the host's Python
    version). Reentrant: each call is its own process.
    """

    def __init__(self, python: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
        self.python = python or sys.executable
        self.timeout_s = timeout_s

    def compile(self, source_path: Path, output_path: Path, search_paths: Sequence[Path] = ()) -> CompileResult:
        env = dict(os.environ)
        paths = [str(p) for p in search_paths]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        if paths:
            env["PYTHONPATH"] = os.pathsep.join(paths)

        cmd = [self.python, "-c", _COMPILE_SNIPPET, str(source_path), str(output_path)]
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                timeout=self.timeout_s,
                check=False,
            )
        except FileNotFoundError as e:
            return CompileResult(diagnostics=[f"compiler not found: {e}"], exit_code=127)
        except subprocess.TimeoutExpired:
            return CompileResult(diagnostics=[f"compiler timed out after {self.timeout_s}s"], exit_code=124)

        diagnostics = [ln for ln in (proc.stdout + proc.stderr).splitlines() if ln.strip()]
        return CompileResult(diagnostics=diagnostics, exit_code=proc.returncode)


def make_backend(config: PackagingConfig) -> CompilerBackend:
    if config.compiler == COMPILER_SUBPROCESS:
        return SubprocessCompilerBackend(timeout_s=config.compile_timeout_s)
    return InProcessCompilerBackend()
