from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, ConfigDict, Field

from .attributes import BindingAttribute

MANIFEST_FILE = "binding-manifest.json"


class BindingManifest(BaseModel):
    """
    Host-facing binding manifest.

    Fixed shape: `{"disabled": false, "bindings": [<fragment>, ...]}` with one
    or more fragments per attribute, in attribute order.
    """

    model_config = ConfigDict(extra="forbid")

    disabled: bool = False
    bindings: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_attributes(cls, attributes: Iterable[BindingAttribute]) -> "BindingManifest":
        return cls(bindings=[frag for attr in attributes for frag in attr.manifest_fragment()])


def write_manifest(directory: Path, attributes: Iterable[BindingAttribute]) -> Path:
    path = Path(directory) / MANIFEST_FILE
    manifest = BindingManifest.from_attributes(attributes)
    path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
    return path


def read_manifest(directory: Path) -> BindingManifest:
    return BindingManifest.model_validate_json((Path(directory) / MANIFEST_FILE).read_bytes())
