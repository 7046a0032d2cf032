from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List

# source file (relative to this package) -> name inside the artifact
SUPPORT_FILES: Dict[str, str] = {
    "rehydrate.py": "funcpack_rehydrate.py",
}


def copy_support_files(directory: Path) -> List[Path]:
    """Copy the fixed runtime-support files the generated loader imports."""
    here = Path(__file__).resolve().parent
    out: List[Path] = []
    for src_name, dst_name in SUPPORT_FILES.items():
        dst = Path(directory) / dst_name
        shutil.copyfile(here / src_name, dst)
        out.append(dst)
    return out
