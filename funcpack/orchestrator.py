"""
Packaging orchestrator.

One `compile` run:
- parses the candidate input (a single handler or a list of them)
- mints a fresh `<output_root>/<uuid4>/` build directory
- per handler, independently:
  1) resolve + validate its binding attributes
  2) capture and write the dependency closure
  3) copy runtime-support files, write the binding manifest
  4) generate + compile the loader, write the invocation shim
  5) run attribute build hooks

Validation errors are always isolated per handler. Capture/compile failures
abort the remaining batch unless `isolate_failures` is set; on a thread pool
the handlers already in flight finish first.
"""

from __future__ import annotations

import contextvars
import logging
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

from .attributes import BindingAttribute
from .closure import DependencyClosureEngine
from .compiler_backend import make_backend
from .config import PackagingConfig
from .descriptor import HandlerDescriptor
from .errors import PackagingError
from .logging import bind_build_id, log_event
from .manifest import write_manifest
from .resolver import BindingSet, Candidate, CandidateInput, FunctionResolver, extract_candidates
from .shim import ShimSynthesizer
from .support_files import copy_support_files

logger = logging.getLogger(__name__)

ClosureEngineFactory = Callable[[Iterable[str], Path], DependencyClosureEngine]
ManifestWriter = Callable[[Path, Iterable[BindingAttribute]], Any]
SupportCopier = Callable[[Path], Any]


@dataclass(frozen=True)
class PackageResult:
    """
    Outcome for one handler. `errors` is empty iff `output_dir` is set.

    Iterates as `(scope, name, output_dir, errors)`.
    """

    scope: str
    name: str
    output_dir: Optional[Path]
    errors: List[str] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.output_dir is not None

    def __iter__(self) -> Iterator[Any]:
        return iter((self.scope, self.name, self.output_dir, self.errors))


class PackagingOrchestrator:
    def __init__(
        self,
        config: Optional[PackagingConfig] = None,
        *,
        resolver: Optional[FunctionResolver] = None,
        synthesizer: Optional[ShimSynthesizer] = None,
        closure_engine_factory: Optional[ClosureEngineFactory] = None,
        manifest_writer: ManifestWriter = write_manifest,
        support_copier: SupportCopier = copy_support_files,
    ) -> None:
        self.config = config or PackagingConfig()
        self.resolver = resolver or FunctionResolver()
        self.synthesizer = synthesizer or ShimSynthesizer(make_backend(self.config))
        self.closure_engine_factory = closure_engine_factory or (
            lambda excluded, cache_dir: DependencyClosureEngine(excluded, cache_dir)
        )
        self.manifest_writer = manifest_writer
        self.support_copier = support_copier

    def compile(self, output_root: Union[str, Path], candidates: CandidateInput) -> List[PackageResult]:
        return self.compile_expr(output_root, candidates)

    def compile_expr(self, output_root: Union[str, Path], candidates: CandidateInput) -> List[PackageResult]:
        # Raises InputShapeError before anything touches the filesystem.
        parsed = extract_candidates(candidates)

        build_dir = Path(output_root) / str(uuid.uuid4())
        build_dir.mkdir(parents=True, exist_ok=False)

        with bind_build_id(build_id=build_dir.name):
            log_event(
                logger,
                "funcpack.build.start",
                build_dir=str(build_dir),
                handlers=[c.handler.qualified_name for c in parsed],
            )
            if self.config.max_workers > 1 and len(parsed) > 1:
                return self._package_concurrently(build_dir, parsed)
            return [self._package_one(build_dir, c) for c in parsed]

    def _package_concurrently(self, build_dir: Path, parsed: List[Candidate]) -> List[PackageResult]:
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = [pool.submit(contextvars.copy_context().run, self._package_one, build_dir, c) for c in parsed]
            wait(futures, return_when=FIRST_EXCEPTION)
            failed = next((f for f in futures if f.done() and not f.cancelled() and f.exception() is not None), None)
            if failed is not None:
                # Handlers already running finish; queued ones never start.
                for f in futures:
                    f.cancel()
                raise failed.exception()  # type: ignore[misc]
            return [f.result() for f in futures]

    def _package_one(self, build_dir: Path, candidate: Candidate) -> PackageResult:
        handler = candidate.handler
        binding = self.resolver.resolve(candidate)
        if binding.errors:
            log_event(
                logger,
                "funcpack.handler.rejected",
                severity="WARNING",
                handler=handler.qualified_name,
                errors=list(binding.errors),
            )
            return PackageResult(scope=handler.scope, name=handler.name, output_dir=None, errors=list(binding.errors))

        try:
            return self._build(build_dir, candidate, binding)
        except PackagingError as e:
            if not self.config.isolate_failures:
                raise
            log_event(
                logger,
                "funcpack.handler.failed",
                severity="ERROR",
                handler=handler.qualified_name,
                error=f"{type(e).__name__}: {e}",
            )
            return PackageResult(scope=handler.scope, name=handler.name, output_dir=None, errors=[str(e)])

    def _build(self, build_dir: Path, candidate: Candidate, binding: BindingSet) -> PackageResult:
        handler = candidate.handler
        local_dir = _mint_handler_dir(build_dir, handler)

        engine = self.closure_engine_factory(self.config.excluded_modules, local_dir)
        package = engine.capture(candidate.bound_value)
        engine.write(package, local_dir)

        self.support_copier(local_dir)
        self.manifest_writer(local_dir, binding.attributes)
        self.synthesizer.synthesize(local_dir, handler)

        artifacts = [a for attr in binding.attributes for a in attr.build(local_dir)]
        log_event(
            logger,
            "funcpack.handler.packaged",
            handler=handler.qualified_name,
            output_dir=str(local_dir),
            modules=len(package.modules),
        )
        return PackageResult(
            scope=handler.scope,
            name=handler.name,
            output_dir=local_dir,
            errors=[],
            artifacts=artifacts,
        )


def _mint_handler_dir(build_dir: Path, handler: HandlerDescriptor) -> Path:
    # Handlers sharing a name (different scopes) get a scope-qualified sibling.
    names = [handler.name, handler.qualified_name]
    names += [f"{handler.qualified_name}-{i}" for i in range(2, 100)]
    for name in names:
        p = build_dir / name
        try:
            p.mkdir(parents=True, exist_ok=False)
            return p
        except FileExistsError:
            continue
    raise PackagingError(f"could not allocate an output directory for {handler.qualified_name}")


def compile_handlers(
    output_root: Union[str, Path],
    candidates: CandidateInput,
    config: Optional[PackagingConfig] = None,
) -> List[PackageResult]:
    return PackagingOrchestrator(config).compile(output_root, candidates)
