"""
Sync pipeline coordinator.
Runs one incremental build: discover inputs, detect changes, pack and bleed
spritesheets, upload, and generate Lua modules for the results.
"""

import os
import time
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field

from .config import SyncConfig, InputConfig, ConfigurationError
from .providers import host_registry
from .providers.base import AssetHost, HostError, RateLimitedError
from .processing.changes import ChangeDetector, ChangeKind, Classification
from .processing.codegen import (
    AssetOutput, CodegenError, CodegenInput, LuaCodegen, PackedOutput, UnpackedOutput
)
from .processing.manifest import ManifestCorruptError, ManifestStore
from .processing.packer import InputRect, PackingConstraints, PackResult, RectanglePacker
from .processing.spritesheet import RenderedPage, SpritesheetCompositor, decode_images
from .processing.uploader import (
    BackoffPolicy, ManifestUpdate, UploadJob, UploadOrchestrator, UploadReport
)


class PipelineStep(Enum):
    """Enumeration of pipeline steps, in execution order."""
    DISCOVER = "discover"
    DETECT = "detect"
    PACK = "pack"
    BLEED = "bleed"
    UPLOAD = "upload"
    CODEGEN = "codegen"


class FailureKind(Enum):
    """Kinds of per-asset problems collected during a run."""
    IO_FAILURE = "io_failure"
    HOST_ERROR = "host_error"
    HOST_RATE_LIMITED = "host_rate_limited"
    PACKING_INFEASIBLE = "packing_infeasible"


@dataclass
class AssetFailure:
    """A problem isolated to one asset."""
    identity: str
    kind: FailureKind
    message: str


@dataclass
class StepResult:
    """Result of a pipeline step execution."""
    step: PipelineStep
    success: bool
    duration: float
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveredInput:
    """An input file matched by exactly one input group."""
    identity: str
    path: Path
    config: InputConfig
    group_relative_path: str
    data: Optional[bytes] = None
    classification: Optional[Classification] = None


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    outputs: Dict[str, AssetOutput] = field(default_factory=dict)
    failures: List[AssetFailure] = field(default_factory=list)
    warnings: List[AssetFailure] = field(default_factory=list)
    step_results: Dict[PipelineStep, StepResult] = field(default_factory=dict)
    discovered: int = 0
    unchanged: int = 0
    pages: int = 0
    jobs: int = 0
    pruned: int = 0
    aborted: bool = False
    aborted_by: Optional[str] = None
    codegen_files: List[Path] = field(default_factory=list)
    start_time: Optional[float] = None

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted or self.failures else 0


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    def __init__(self, message: str, step: Optional[PipelineStep] = None, recoverable: bool = False):
        super().__init__(message)
        self.step = step
        self.recoverable = recoverable


class SyncPipeline:
    """
    Coordinates one sync run.

    Only changed or new inputs are packed and uploaded. Packable inputs are
    combined into spritesheet pages; an input too large for any page is
    uploaded on its own instead. Every confirmed upload is committed to the
    manifest before the next one is counted, so an aborted run resumes cleanly.
    """

    def __init__(self, config: SyncConfig, host: Optional[AssetHost] = None,
                 store: Optional[ManifestStore] = None, prune: bool = False,
                 verbose: bool = False, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the sync pipeline.

        Args:
            config: Project configuration
            host: Asset host; created from config.host when omitted
            store: Manifest store; defaults to the configured manifest path
            prune: Remove manifest entries for inputs that no longer exist
            verbose: Log at DEBUG level
            sleep: Sleep function used for upload backoff
        """
        self.config = config
        self.prune = prune
        self.logger = self._setup_logging(verbose)
        self.store = store or ManifestStore(config.resolved_manifest_path)
        self._host = host
        self._sleep = sleep

        self._step_handlers: Dict[PipelineStep, Callable] = {
            PipelineStep.DISCOVER: self._execute_discover_step,
            PipelineStep.DETECT: self._execute_detect_step,
            PipelineStep.PACK: self._execute_pack_step,
            PipelineStep.BLEED: self._execute_bleed_step,
            PipelineStep.UPLOAD: self._execute_upload_step,
            PipelineStep.CODEGEN: self._execute_codegen_step,
        }

        # Per-run state
        self.result = SyncResult()
        self._inputs: List[DiscoveredInput] = []
        self._changed: List[DiscoveredInput] = []
        self._pack_result = PackResult()
        self._packed_images: Dict[str, Any] = {}
        self._unpacked: List[DiscoveredInput] = []
        self._pages: List[RenderedPage] = []

    def _setup_logging(self, verbose: bool) -> logging.Logger:
        """Set up logging for the pipeline."""
        logger = logging.getLogger("asset_sync")
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    @property
    def host(self) -> AssetHost:
        if self._host is None:
            options = dict(self.config.host.options)
            if self.config.host.type == "debug":
                options.setdefault("output_dir", str(self.config.project_dir / ".asset-sync-debug"))
            try:
                self._host = host_registry.create_host(self.config.host.type, options)
            except (ValueError, HostError) as e:
                raise PipelineError(f"Cannot create asset host: {e}", PipelineStep.UPLOAD) from e
        return self._host

    def run(self) -> SyncResult:
        """
        Run every pipeline step.

        Returns:
            SyncResult with outputs, collected failures and the abort flag

        Raises:
            PipelineError: On configuration errors or a corrupt manifest
        """
        self.logger.info(f"Starting sync of '{self.config.name}'")
        self.result = SyncResult(start_time=time.time())

        try:
            self.store.load()
        except ManifestCorruptError as e:
            raise PipelineError(f"Refusing to sync: {e}", PipelineStep.DETECT) from e

        for step in PipelineStep:
            if step is PipelineStep.CODEGEN and self.result.aborted:
                self.logger.warning("Skipping codegen because the upload was aborted")
                continue
            self._execute_step(step)

        if self.prune and not self.result.aborted:
            self.result.pruned = self.store.prune(item.identity for item in self._inputs)
            if self.result.pruned:
                self.store.flush()

        self._generate_execution_summary()
        return self.result

    def _execute_step(self, step: PipelineStep) -> None:
        """Execute a single pipeline step with error handling and timing."""
        self.logger.info(f"Executing step: {step.value}")
        start_time = time.time()

        try:
            data = self._step_handlers[step]() or {}
        except PipelineError as e:
            self._record_step(step, False, start_time, str(e))
            raise
        except (ConfigurationError, CodegenError) as e:
            self._record_step(step, False, start_time, str(e))
            raise PipelineError(str(e), step) from e

        duration = self._record_step(step, True, start_time, f"Step {step.value} completed", data)
        self.logger.info(f"Step {step.value} completed in {duration:.2f}s")

    def _record_step(self, step: PipelineStep, success: bool, start_time: float,
                     message: str, data: Optional[Dict[str, Any]] = None) -> float:
        duration = time.time() - start_time
        self.result.step_results[step] = StepResult(
            step=step, success=success, duration=duration, message=message, data=data or {}
        )
        if not success:
            self.logger.error(f"Step {step.value} failed after {duration:.2f}s: {message}")
        return duration

    def _execute_discover_step(self) -> Dict[str, Any]:
        """Expand every input glob; a file matched by two groups is an error."""
        project_dir = self.config.project_dir
        owners: Dict[str, InputConfig] = {}
        inputs: List[DiscoveredInput] = []

        for input_config in self.config.inputs:
            matches = sorted(p for p in input_config.base_dir.glob(input_config.glob) if p.is_file())
            self.logger.debug(f"Glob '{input_config.glob}' matched {len(matches)} files")

            for path in matches:
                identity = Path(os.path.relpath(path, project_dir)).as_posix()
                if identity in owners:
                    raise ConfigurationError(
                        f"'{identity}' is matched by both '{owners[identity].glob}' "
                        f"and '{input_config.glob}'; input globs must not overlap"
                    )
                owners[identity] = input_config

                # A literal glob names the file itself
                relative = Path(os.path.relpath(path, input_config.base_path)).as_posix()
                if relative == ".":
                    relative = path.name

                inputs.append(DiscoveredInput(
                    identity=identity,
                    path=path,
                    config=input_config,
                    group_relative_path=relative,
                ))

        self._inputs = inputs
        self.result.discovered = len(inputs)
        self.logger.info(f"Discovered {len(inputs)} inputs")
        return {"discovered": len(inputs)}

    def _execute_detect_step(self) -> Dict[str, Any]:
        """Read and classify every input; unchanged inputs keep their recorded output."""
        detector = ChangeDetector(self.store.manifest)
        counts = {kind.value: 0 for kind in ChangeKind}
        self._changed = []

        for item in self._inputs:
            try:
                item.data = item.path.read_bytes()
            except OSError as e:
                self._fail(item.identity, FailureKind.IO_FAILURE, f"Cannot read {item.path}: {e}")
                continue

            item.classification = detector.classify_input(item.identity, item.data, item.config.packable)
            counts[item.classification.kind.value] += 1

            if item.classification.needs_upload:
                self._changed.append(item)
                continue

            entry = self.store.get(item.identity)
            if entry.slice is not None:
                self.result.outputs[item.identity] = PackedOutput(entry.remote_id, entry.slice)
            else:
                self.result.outputs[item.identity] = UnpackedOutput(entry.remote_id)

        self.result.unchanged = counts[ChangeKind.UNCHANGED.value]
        self.logger.info(
            f"Changes: {counts['new']} new, {counts['changed']} changed, {counts['unchanged']} unchanged"
        )
        return counts

    def _execute_pack_step(self) -> Dict[str, Any]:
        """Pack changed packable inputs; infeasible ones fall back to unpacked uploads."""
        packable = [item for item in self._changed if item.config.packable]
        self._unpacked = [item for item in self._changed if not item.config.packable]

        images, errors = decode_images({item.identity: item.data for item in packable})
        for identity, message in errors.items():
            self._fail(identity, FailureKind.IO_FAILURE, message)

        sheet = self.config.spritesheet
        packer = RectanglePacker(PackingConstraints(
            padding=sheet.padding, min_size=sheet.min_size, max_size=sheet.max_size
        ))
        self._pack_result = packer.pack(
            InputRect(identity, image.width, image.height) for identity, image in images.items()
        )
        self._packed_images = images

        for identity, error in self._pack_result.failures.items():
            self.result.warnings.append(
                AssetFailure(identity, FailureKind.PACKING_INFEASIBLE, f"{error}; uploading unpacked")
            )
            self._unpacked.append(next(item for item in packable if item.identity == identity))

        self.result.pages = len(self._pack_result.pages)
        return {
            "packed": len(self._pack_result.placements),
            "pages": len(self._pack_result.pages),
            "infeasible": len(self._pack_result.failures),
        }

    def _execute_bleed_step(self) -> Dict[str, Any]:
        sheet = self.config.spritesheet
        compositor = SpritesheetCompositor(
            padding=sheet.padding, bleed=sheet.alpha_bleed, compress_level=sheet.compress_level
        )
        self._pages = compositor.render_pages(self._pack_result.pages, self._packed_images)
        self._packed_images = {}
        return {"pages": len(self._pages)}

    def _execute_upload_step(self) -> Dict[str, Any]:
        jobs = self._build_jobs()
        self.result.jobs = len(jobs)
        if not jobs:
            self.logger.info("Nothing to upload")
            return {"jobs": 0}

        upload = self.config.upload
        orchestrator = UploadOrchestrator(
            self.host,
            store=self.store,
            policy=BackoffPolicy(upload.max_retries, upload.base_delay, upload.max_delay),
            parallelism=upload.parallelism,
            sleep=self._sleep,
        )
        report = orchestrator.run(jobs)
        self._collect_upload_results(jobs, report)

        return {
            "jobs": len(jobs),
            "succeeded": len(report.succeeded),
            "failed": len(report.failed),
            "pending": len(report.pending),
        }

    def _build_jobs(self) -> List[UploadJob]:
        fingerprints = {
            item.identity: item.classification.new_fingerprint for item in self._changed
        }
        jobs = []

        for rendered in self._pages:
            updates = [
                ManifestUpdate(p.id, fingerprints[p.id], packable=True, slice=p.to_slice())
                for p in rendered.page.placements
            ]
            jobs.append(UploadJob(
                key=f"spritesheet-{rendered.index}",
                data=rendered.data,
                display_name=f"{self.config.name}-spritesheet-{rendered.index}",
                updates=updates,
            ))

        for item in self._unpacked:
            jobs.append(UploadJob(
                key=item.identity,
                data=item.data,
                display_name=item.identity,
                updates=[ManifestUpdate(item.identity, fingerprints[item.identity],
                                        packable=item.config.packable)],
            ))

        return jobs

    def _collect_upload_results(self, jobs: List[UploadJob], report: UploadReport) -> None:
        self.result.aborted = report.aborted
        self.result.aborted_by = report.aborted_by

        for job in jobs:
            if job.key in report.succeeded:
                for update in job.updates:
                    if update.slice is not None:
                        output = PackedOutput(job.remote_id, update.slice)
                    else:
                        output = UnpackedOutput(job.remote_id)
                    self.result.outputs[update.identity] = output
                continue

            if job.key in report.failed:
                kind, message = FailureKind.HOST_ERROR, str(report.failed[job.key])
            elif isinstance(job.error, RateLimitedError):
                kind = FailureKind.HOST_RATE_LIMITED
                message = f"Rate limited after {job.retry_count} attempts; re-run to resume"
            else:
                kind, message = FailureKind.HOST_RATE_LIMITED, "Not uploaded: run aborted; re-run to resume"

            for update in job.updates:
                self._fail(update.identity, kind, message)

    def _execute_codegen_step(self) -> Dict[str, Any]:
        inputs = [
            CodegenInput(
                identity=item.identity,
                path=item.path,
                group_relative_path=item.group_relative_path,
                kind=item.config.codegen_kind,
                output=self.result.outputs.get(item.identity),
                codegen_path=item.config.resolved_codegen_path,
            )
            for item in self._inputs
        ]
        self.result.codegen_files = LuaCodegen().write(inputs)
        return {"files": len(self.result.codegen_files)}

    def _fail(self, identity: str, kind: FailureKind, message: str) -> None:
        self.logger.error(f"{identity}: {message}")
        self.result.failures.append(AssetFailure(identity, kind, message))

    def _generate_execution_summary(self):
        """Generate and log execution summary."""
        total_duration = time.time() - (self.result.start_time or time.time())

        self.logger.info("=" * 60)
        self.logger.info("SYNC SUMMARY")
        self.logger.info("=" * 60)
        self.logger.info(f"Total execution time: {total_duration:.2f}s")
        self.logger.info(f"Inputs discovered: {self.result.discovered}")
        self.logger.info(f"Inputs unchanged: {self.result.unchanged}")
        self.logger.info(f"Spritesheet pages: {self.result.pages}")
        self.logger.info(f"Upload jobs: {self.result.jobs}")

        if self.result.aborted:
            self.logger.info(f"Run aborted: retry budget exhausted by '{self.result.aborted_by}'")

        if self.result.failures:
            self.logger.info("Failures:")
            for failure in self.result.failures:
                self.logger.info(f"  - {failure.identity} [{failure.kind.value}]: {failure.message}")

        if self.result.warnings:
            self.logger.info("Warnings:")
            for warning in self.result.warnings:
                self.logger.info(f"  - {warning.identity} [{warning.kind.value}]: {warning.message}")

        self.logger.info("=" * 60)
