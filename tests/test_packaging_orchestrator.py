from __future__ import annotations

import dataclasses
import functools
import importlib.util
import json
import logging
import os
import shutil
import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path
from types import ModuleType
from typing import Any, List, Sequence

import pytest

from funcpack.bindings import TimerTrigger
from funcpack.compiler_backend import CompileResult, CompilerBackend, InProcessCompilerBackend
from funcpack.config import PackagingConfig
from funcpack.errors import CompileError, InputShapeError
from funcpack.host_types import TimerInfo
from funcpack.manifest import MANIFEST_FILE, read_manifest
from funcpack.orchestrator import PackageResult, PackagingOrchestrator, compile_handlers
from funcpack.resolver import NO_TRIGGER, Candidate
from funcpack.shim import ShimSynthesizer
from tests import sample_handlers

EXPECTED_ARTIFACTS = {
    "closure-modules.bin",
    "closure-value.bin",
    "funcpack_rehydrate.py",
    MANIFEST_FILE,
    "run.py",
}


class _SelectiveFailingBackend(CompilerBackend):
    """Fails loaders whose file name starts with `prefix`; compiles the rest."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self._inner = InProcessCompilerBackend()

    def compile(self, source_path: Path, output_path: Path, search_paths: Sequence[Path] = ()) -> CompileResult:
        if Path(source_path).name.startswith(self.prefix):
            return CompileResult(diagnostics=["injected failure"], exit_code=1)
        return self._inner.compile(source_path, output_path, search_paths)


_CLEAN_HOST = """
import importlib.util
import os
import sys

# Only the artifact may provide the handler's own modules.
sys.path[:] = [p for p in sys.path if not os.path.isfile(os.path.join(p or os.curdir, "tests", "sample_handlers.py"))]

spec = importlib.util.spec_from_file_location("run", sys.argv[1])
run = importlib.util.module_from_spec(spec)
spec.loader.exec_module(run)
print(run.main("2"))
print(sys.modules["tests.sample_handlers"].__spec__.origin)
"""


def _load_shim(run_py: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"funcpack_shim_{uuid.uuid4().hex}", run_py)
    assert spec is not None and spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def _bound_quote() -> Any:
    return functools.partial(sample_handlers.price_quote, sample_handlers.Pricing(1.5, "EUR"))


def test_valid_and_invalid_handlers_in_one_batch(tmp_path: Path) -> None:
    results = PackagingOrchestrator().compile(tmp_path, [sample_handlers.heartbeat, sample_handlers.untriggered])

    assert [r.name for r in results] == ["heartbeat", "untriggered"]
    ok, rejected = results
    assert ok.ok and ok.errors == []
    assert ok.scope == "tests.sample_handlers"
    assert ok.output_dir is not None and ok.output_dir.name == "heartbeat"
    assert {p.name for p in ok.output_dir.iterdir()} == EXPECTED_ARTIFACTS | {"heartbeat_loader.pyc"}

    assert rejected.output_dir is None
    assert rejected.errors == [NO_TRIGGER]
    build_dir = ok.output_dir.parent
    assert [p.name for p in build_dir.iterdir()] == ["heartbeat"]


def test_result_unpacks_as_tuple(tmp_path: Path) -> None:
    (scope, name, output_dir, errors), = compile_handlers(tmp_path, sample_handlers.receipt)
    assert (scope, name, errors) == ("tests.sample_handlers", "receipt", [])
    assert output_dir is not None and (output_dir / "receipt_loader.pyc").is_file()


def test_every_run_gets_a_fresh_build_directory(tmp_path: Path) -> None:
    orchestrator = PackagingOrchestrator()
    (first,) = orchestrator.compile(tmp_path, sample_handlers.heartbeat)
    (second,) = orchestrator.compile(tmp_path, sample_handlers.heartbeat)

    assert first.output_dir is not None and second.output_dir is not None
    assert first.output_dir.parent != second.output_dir.parent
    assert first.output_dir.parent.parent == tmp_path
    uuid.UUID(first.output_dir.parent.name)


@pytest.mark.parametrize("bad", [42, [sample_handlers.heartbeat, "heartbeat"]])
def test_malformed_input_is_rejected_before_any_output(tmp_path: Path, bad: Any) -> None:
    with pytest.raises(InputShapeError, match="Not a function"):
        PackagingOrchestrator().compile(tmp_path, bad)
    assert list(tmp_path.iterdir()) == []


def test_rejected_only_batch_writes_no_handler_directories(tmp_path: Path) -> None:
    results = PackagingOrchestrator().compile(tmp_path, [sample_handlers.untriggered, sample_handlers.price_quote])

    assert [r.errors for r in results] == [[NO_TRIGGER], ["Parameter 'pricing' is not bound"]]
    (build_dir,) = list(tmp_path.iterdir())
    assert list(build_dir.iterdir()) == []


def test_manifest_lists_fragments_in_attribute_order(tmp_path: Path) -> None:
    (result,) = PackagingOrchestrator().compile(tmp_path, sample_handlers.receipt)
    assert result.output_dir is not None

    raw = json.loads((result.output_dir / MANIFEST_FILE).read_text(encoding="utf-8"))
    assert raw == {
        "disabled": False,
        "bindings": [
            {
                "type": "queueTrigger",
                "direction": "in",
                "name": "message",
                "queueName": "orders",
                "connection": "AzureWebJobsStorage",
            },
            {
                "type": "queue",
                "direction": "out",
                "name": "$return",
                "queueName": "receipts",
                "connection": "AzureWebJobsStorage",
            },
        ],
    }
    assert read_manifest(result.output_dir).bindings == raw["bindings"]


def test_packaged_handler_behaves_like_the_original(tmp_path: Path, isolated_imports: None) -> None:
    value = _bound_quote()
    (result,) = PackagingOrchestrator().compile(tmp_path, Candidate.from_callable(value))
    assert result.ok and result.output_dir is not None

    shim = _load_shim(result.output_dir / "run.py")
    assert shim.main("2") == value("2") == "3.00 EUR"
    assert shim.main(message="10") == "15.00 EUR"


def test_first_calls_rehydrate_exactly_once(
    tmp_path: Path, isolated_imports: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    (result,) = PackagingOrchestrator().compile(tmp_path, Candidate.from_callable(_bound_quote()))
    assert result.output_dir is not None
    shim = _load_shim(result.output_dir / "run.py")

    runtime = shim.__funcpack_loader.__funcpack_runtime
    real = runtime.rehydrate
    calls: List[str] = []

    def counting(directory: str, function_type: str) -> Any:
        calls.append(directory)
        time.sleep(0.05)
        return real(directory, function_type)

    monkeypatch.setattr(runtime, "rehydrate", counting)

    barrier = threading.Barrier(8)
    outputs: List[str] = []
    lock = threading.Lock()

    def call() -> None:
        barrier.wait()
        out = shim.main("4")
        with lock:
            outputs.append(out)

    threads = [threading.Thread(target=call) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == [str(result.output_dir)]
    assert outputs == ["6.00 EUR"] * 8


def test_compile_failure_aborts_the_batch_by_default(tmp_path: Path) -> None:
    orchestrator = PackagingOrchestrator(synthesizer=ShimSynthesizer(_SelectiveFailingBackend("heartbeat")))
    with pytest.raises(CompileError, match="injected failure"):
        orchestrator.compile(tmp_path, [sample_handlers.heartbeat, sample_handlers.receipt])

    (build_dir,) = list(tmp_path.iterdir())
    # Generated loader source is kept for inspection.
    assert (build_dir / "heartbeat" / "heartbeat_loader.py").is_file()
    assert not (build_dir / "receipt").exists()


def test_compile_failure_is_isolated_when_configured(tmp_path: Path) -> None:
    orchestrator = PackagingOrchestrator(
        PackagingConfig(isolate_failures=True),
        synthesizer=ShimSynthesizer(_SelectiveFailingBackend("heartbeat")),
    )
    failed, ok = orchestrator.compile(tmp_path, [sample_handlers.heartbeat, sample_handlers.receipt])

    assert failed == PackageResult(
        scope="tests.sample_handlers", name="heartbeat", output_dir=None, errors=["injected failure"]
    )
    assert ok.ok and ok.output_dir is not None and (ok.output_dir / "run.py").is_file()


def test_thread_pool_preserves_input_order(tmp_path: Path) -> None:
    handlers = [
        sample_handlers.heartbeat,
        sample_handlers.receipt,
        sample_handlers.untriggered,
        sample_handlers.greet,
        sample_handlers.archive,
    ]
    results = PackagingOrchestrator(PackagingConfig(max_workers=3)).compile(tmp_path, handlers)

    assert [r.name for r in results] == ["heartbeat", "receipt", "untriggered", "greet", "archive"]
    assert [r.ok for r in results] == [True, True, False, True, True]


def test_same_name_in_two_scopes_gets_a_qualified_directory(tmp_path: Path) -> None:
    other = Candidate.from_callable(sample_handlers.heartbeat)
    renamed = dataclasses.replace(other, handler=dataclasses.replace(other.handler, scope="tests.other_handlers"))
    first, second = PackagingOrchestrator().compile(tmp_path, [other, renamed])

    assert first.output_dir is not None and second.output_dir is not None
    assert first.output_dir.name == "heartbeat"
    assert second.output_dir.name == "tests.other_handlers.heartbeat"


def test_artifact_runs_in_a_clean_interpreter(tmp_path: Path) -> None:
    value = functools.partial(sample_handlers.price_quote, pricing=sample_handlers.Pricing(1.5, "EUR"))
    (result,) = PackagingOrchestrator().compile(tmp_path / "build", Candidate.from_callable(value))
    assert result.output_dir is not None

    deployed = tmp_path / "deployed" / "price_quote"
    shutil.copytree(result.output_dir, deployed)
    env = {k: v for k, v in os.environ.items() if k != "PYTHONPATH"}
    proc = subprocess.run(
        [sys.executable, "-I", "-c", _CLEAN_HOST, str(deployed / "run.py")],
        cwd=str(deployed),
        env=env,
        capture_output=True,
        text=True,
        timeout=120,
        check=False,
    )

    assert proc.returncode == 0, proc.stderr
    answer, origin = proc.stdout.splitlines()[-2:]
    assert answer == "3.00 EUR"
    assert origin == f"{deployed}/closure-modules.bin/tests.sample_handlers"


def test_parameters_named_like_runtime_modules_still_work(tmp_path: Path, isolated_imports: None) -> None:
    (result,) = PackagingOrchestrator().compile(tmp_path, sample_handlers.shadowing)
    assert result.ok and result.output_dir is not None

    shim = _load_shim(result.output_dir / "run.py")
    assert shim.main("abc", logging.getLogger("tests.shadowing")) == "ABC"


def test_uncallable_signature_is_rejected_per_handler(tmp_path: Path) -> None:
    @TimerTrigger("* * * * * *")
    def variadic(timer: TimerInfo, *rest: str) -> None:
        return None

    rejected, ok = PackagingOrchestrator().compile(tmp_path, [variadic, sample_handlers.heartbeat])

    assert rejected.output_dir is None
    assert rejected.errors == ["Parameter 'rest' cannot be variadic"]
    assert ok.ok


class _GatedBackend(CompilerBackend):
    """Fails `heartbeat` at once; holds every other compile until released."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self._inner = InProcessCompilerBackend()

    def compile(self, source_path: Path, output_path: Path, search_paths: Sequence[Path] = ()) -> CompileResult:
        if Path(source_path).name.startswith("heartbeat"):
            return CompileResult(diagnostics=["injected failure"], exit_code=1)
        self.release.wait(timeout=1.0)
        return self._inner.compile(source_path, output_path, search_paths)


def test_thread_pool_abort_cancels_queued_handlers(tmp_path: Path) -> None:
    backend = _GatedBackend()
    orchestrator = PackagingOrchestrator(PackagingConfig(max_workers=2), synthesizer=ShimSynthesizer(backend))
    handlers = [
        sample_handlers.heartbeat,
        sample_handlers.receipt,
        sample_handlers.greet,
        sample_handlers.archive,
        sample_handlers.hourly,
    ]
    with pytest.raises(CompileError, match="injected failure"):
        orchestrator.compile(tmp_path, handlers)

    (build_dir,) = list(tmp_path.iterdir())
    started = {p.name for p in build_dir.iterdir()}
    assert "heartbeat" in started
    assert "hourly" not in started
