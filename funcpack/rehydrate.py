"""
Closure blob codec + rehydration runtime.

This module is copied verbatim into every artifact as `funcpack_rehydrate.py`
and imported by the generated loader on the deployment host, where funcpack
itself is not installed. It must stay stdlib-only and must not use relative
imports.

Module blob layout (big-endian):
- b"FPKM", version byte
- uint32 record count
- per record: uint16 name length, UTF-8 name, uint8 flags (bit 0 = package),
  uint32 source length, raw source bytes

The value blob is a plain pickle at a fixed protocol.
"""

from __future__ import annotations

import importlib.abc
import importlib.util
import os
import pickle
import struct
import sys
import threading
from dataclasses import dataclass
from types import ModuleType
from typing import Any, Callable, Dict, Iterable, List, Optional

MODULES_BLOB = "closure-modules.bin"
VALUE_BLOB = "closure-value.bin"
PICKLE_PROTOCOL = 4

_MAGIC = b"FPKM"
_VERSION = 1
_FLAG_PACKAGE = 0x01


class RehydrationError(RuntimeError):
    pass


@dataclass(frozen=True)
class ModuleRecord:
    name: str
    is_package: bool
    source: bytes


def encode_modules(records: Iterable[ModuleRecord]) -> bytes:
    recs = list(records)
    out = [_MAGIC, struct.pack(">BI", _VERSION, len(recs))]
    for rec in recs:
        name = rec.name.encode("utf-8")
        out.append(struct.pack(">H", len(name)))
        out.append(name)
        out.append(struct.pack(">BI", _FLAG_PACKAGE if rec.is_package else 0, len(rec.source)))
        out.append(rec.source)
    return b"".join(out)


def decode_modules(blob: bytes) -> List[ModuleRecord]:
    if blob[:4] != _MAGIC:
        raise RehydrationError("module blob has bad magic")
    try:
        version, count = struct.unpack_from(">BI", blob, 4)
        if version != _VERSION:
            raise RehydrationError(f"unsupported module blob version: {version}")
        pos = 9
        records: List[ModuleRecord] = []
        for _ in range(count):
            (name_len,) = struct.unpack_from(">H", blob, pos)
            pos += 2
            name = blob[pos : pos + name_len].decode("utf-8")
            pos += name_len
            flags, size = struct.unpack_from(">BI", blob, pos)
            pos += 5
            source = blob[pos : pos + size]
            if len(source) != size:
                raise RehydrationError(f"module blob truncated in record {name!r}")
            pos += size
            records.append(ModuleRecord(name=name, is_package=bool(flags & _FLAG_PACKAGE), source=source))
    except struct.error as e:
        raise RehydrationError(f"module blob truncated: {e}") from e
    return records


def encode_value(value: Any) -> bytes:
    return pickle.dumps(value, protocol=PICKLE_PROTOCOL)


def decode_value(blob: bytes) -> Any:
    return pickle.loads(blob)


class BlobModuleFinder(importlib.abc.MetaPathFinder, importlib.abc.Loader):
    """
    Serves modules out of a decoded module blob.

    Installed at the end of `sys.meta_path`: anything the host can import on
    its own keeps winning, the blob only fills the gaps.
    """

    def __init__(self, records: Iterable[ModuleRecord], origin: str) -> None:
        self._records: Dict[str, ModuleRecord] = {r.name: r for r in records}
        self._origin = origin

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def find_spec(self, fullname: str, path: Any = None, target: Optional[ModuleType] = None):
        rec = self._records.get(fullname)
        if rec is None:
            return None
        return importlib.util.spec_from_loader(
            fullname,
            self,
            origin=f"{self._origin}/{MODULES_BLOB}/{fullname}",
            is_package=rec.is_package,
        )

    def create_module(self, spec):  # noqa: ANN001
        return None

    def exec_module(self, module: ModuleType) -> None:
        rec = self._records[module.__name__]
        origin = module.__spec__.origin if module.__spec__ is not None else module.__name__
        module.__file__ = origin
        code = compile(rec.source, origin, "exec", dont_inherit=True)
        exec(code, module.__dict__)


_INSTALLED: Dict[str, BlobModuleFinder] = {}
_INSTALL_LOCK = threading.Lock()


def install_modules(directory: str) -> BlobModuleFinder:
    key = os.path.abspath(directory)
    with _INSTALL_LOCK:
        finder = _INSTALLED.get(key)
        if finder is None:
            with open(os.path.join(key, MODULES_BLOB), "rb") as f:
                finder = BlobModuleFinder(decode_modules(f.read()), origin=key)
            sys.meta_path.append(finder)
            _INSTALLED[key] = finder
    return finder


def rehydrate(directory: str, function_type: str) -> Callable[..., Any]:
    """Load the artifact's modules, then unpickle its bound value."""
    install_modules(directory)
    with open(os.path.join(os.path.abspath(directory), VALUE_BLOB), "rb") as f:
        value = decode_value(f.read())
    if not callable(value):
        raise RehydrationError(f"rehydrated value is not a function of type {function_type}")
    return value
