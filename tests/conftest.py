from __future__ import annotations

import sys
from typing import Iterator

import pytest


@pytest.fixture()
def isolated_imports() -> Iterator[None]:
    """
    Loading a generated shim mutates interpreter-wide import state: it puts the
    artifact directory on sys.path, appends a blob finder to sys.meta_path and
    imports `funcpack_rehydrate`. Undo all of it after the test.
    """
    saved_path = list(sys.path)
    saved_meta_path = list(sys.meta_path)
    saved_modules = set(sys.modules)
    try:
        yield
    finally:
        sys.path[:] = saved_path
        sys.meta_path[:] = saved_meta_path
        for name in set(sys.modules) - saved_modules:
            if name == "funcpack_rehydrate" or name.endswith("_loader"):
                sys.modules.pop(name, None)
