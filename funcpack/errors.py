from __future__ import annotations

from typing import Sequence


class PackagingError(RuntimeError):
    pass


class InputShapeError(PackagingError):
    """Raised when the candidate set cannot even be enumerated into handlers."""


class CaptureError(PackagingError):
    pass


class CompileError(PackagingError):
    def __init__(self, message: str, diagnostics: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.diagnostics = list(diagnostics)
