"""
Pipeline orchestrator: parse, resolve the base image, compose, store, persist.

Every collaborator is injected so tests can run the whole pipeline with
in-memory fakes. Phases advance ``received -> parsed -> base_image_resolving
-> composing -> stored -> persisted -> completed``; any fatal error ends the
run in ``failed``. Recoverable problems (overlay asset unavailable,
persistence failure) only add warnings.
"""
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from wowowify.commands.overrides import apply_overrides
from wowowify.commands.parser import parse
from wowowify.media.compositor import compose
from wowowify.media.image_generator import ImageGenerator
from wowowify.shared.blob_store import BlobPersister
from wowowify.shared.config import Settings, get_settings
from wowowify.shared.deadline import Deadline
from wowowify.shared.http_fetch import HttpFetcher
from wowowify.shared.image_store import ImageStore
from wowowify.shared.kv_store import select_kv_store
from wowowify.shared.logging_utils import info as log_info, warning as log_warning, error as log_error
from wowowify.shared.metrics import RequestMetrics
from wowowify.shared.rate_limiter import AdmissionController
from wowowify.shared.state import RunStateStore, select_run_state_store
from wowowify.specs.command import CommandOverrides, ParsedCommand
from wowowify.specs.common.envelope import StepResult
from wowowify.specs.common.enums import PipelinePhase, RunStatus
from wowowify.specs.common.errors import (
    AdmissionDeniedError,
    CommandValidationError,
    ConfigurationError,
    FetchError,
    GenerationError,
    PersistenceError,
    ResolutionError,
    WowowifyError,
)
from wowowify.specs.http.agent import AgentResult, CallerContext
from wowowify.specs.overlays import DEFAULT_REGISTRY, OverlayEntry, OverlayRegistry

FetchBytes = Callable[[str, Deadline], bytes]
GenerateImage = Callable[[str, Deadline], bytes]
Persist = Callable[..., StepResult]


def rewrite_image_url(url: str) -> str:
    """Ask imagedelivery.net (Farcaster CDN) for the original-size variant."""
    if "imagedelivery.net" in url and "/original" not in url:
        return f"{url.split('?')[0].rstrip('/')}/original"
    return url


class _RunTracker:
    """Phase bookkeeping for one run; run-state writes are best-effort."""

    def __init__(self, run_id: str, store: Optional[RunStateStore]) -> None:
        self.run_id = run_id
        self.phase = PipelinePhase.RECEIVED
        self._store = store

    def advance(self, phase: PipelinePhase, **data: Any) -> None:
        self.phase = phase
        log_info(self.run_id, f"pipeline:{phase.value}", **data)
        if self._store is None:
            return
        try:
            self._store.add_event(self.run_id, phase=phase.value, action="advance", data=data or None)
        except Exception as exc:
            log_warning(self.run_id, "pipeline:run_state_failed", phase=phase.value, error=str(exc))

    def finish(self, status: RunStatus, summary: Dict[str, Any]) -> None:
        if self._store is None:
            return
        try:
            self._store.set_status(self.run_id, self.phase.value, status.value, summary)
        except Exception as exc:
            log_warning(self.run_id, "pipeline:run_state_failed", phase=self.phase.value, error=str(exc))


class Pipeline:
    def __init__(
        self,
        *,
        fetch_bytes: FetchBytes,
        generate_image: GenerateImage,
        image_store: ImageStore,
        persist: Optional[Persist] = None,
        run_state: Optional[RunStateStore] = None,
        admission: Optional[AdmissionController] = None,
        metrics: Optional[RequestMetrics] = None,
        registry: OverlayRegistry = DEFAULT_REGISTRY,
        settings: Optional[Settings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.fetch_bytes = fetch_bytes
        self.generate_image = generate_image
        self.image_store = image_store
        self.persist = persist
        self.run_state = run_state
        self.admission = admission
        self.metrics = metrics
        self.registry = registry
        self.settings = settings or Settings()
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="wowowify-asset")

    # -- validation --------------------------------------------------------

    def validate(self, command: ParsedCommand) -> None:
        """Shape checks that must pass before any network or raster work."""
        if command.overlayMode and command.overlayMode not in self.registry:
            raise CommandValidationError(
                f"Invalid overlay mode: {command.overlayMode}. Supported modes are: {', '.join(self.registry.modes)}.",
                details={"overlayMode": command.overlayMode},
            )
        if not (command.baseImageUrl or command.useParentImage or command.prompt or command.overlayMode):
            raise CommandValidationError(
                "Command has no image source: give an image URL, reply to an image, or describe what to generate"
            )

    # -- overlay assets ----------------------------------------------------

    def _asset_source(self, entry: OverlayEntry) -> str:
        if self.settings.overlay_asset_dir:
            return str(Path(self.settings.overlay_asset_dir) / entry.asset_locator.lstrip("/"))
        base = (self.settings.overlay_asset_base_url or "").rstrip("/")
        if not base:
            raise ConfigurationError("No overlay asset location configured")
        return f"{base}{entry.asset_locator}"

    def _load_asset(self, entry: OverlayEntry, deadline: Deadline, run_id: str) -> Optional[bytes]:
        try:
            source = self._asset_source(entry)
            if self.settings.overlay_asset_dir:
                return Path(source).read_bytes()
            return self.fetch_bytes(source, deadline)
        except (WowowifyError, OSError) as exc:
            log_warning(run_id, "pipeline:overlay_asset_unavailable", overlayMode=entry.mode, error=str(exc))
            return None

    def _await_asset(self, future: Optional["Future[Optional[bytes]]"], deadline: Deadline, run_id: str) -> Optional[bytes]:
        if future is None:
            return None
        try:
            return future.result(timeout=max(0.0, deadline.remaining()))
        except FutureTimeoutError:
            future.cancel()
            log_warning(run_id, "pipeline:overlay_asset_timeout")
            return None

    # -- base image --------------------------------------------------------

    def _download(self, url: str, deadline: Deadline, what: str) -> bytes:
        url = rewrite_image_url(url)
        try:
            return self.fetch_bytes(url, deadline)
        except FetchError as exc:
            raise ResolutionError(f"Failed to download {what}: {exc}", cause="download_failed", details=exc.details) from exc

    def resolve_base(self, command: ParsedCommand, context: CallerContext, deadline: Deadline) -> Tuple[bytes, str]:
        """Return (bytes, source) following URL > parent image > generation."""
        if command.baseImageUrl:
            return self._download(command.baseImageUrl, deadline, "base image"), "url"
        if command.useParentImage:
            if not context.parentImageUrl:
                raise ResolutionError("No parent image available to apply the overlay to", cause="parent_missing")
            return self._download(context.parentImageUrl, deadline, "parent image"), "parent"
        prompt = command.prompt or (self.registry.default_prompt(command.overlayMode) if command.overlayMode else None)
        if not prompt:
            raise CommandValidationError("Nothing to generate: prompt is empty")
        try:
            return self.generate_image(prompt, deadline), "generated"
        except (GenerationError, ConfigurationError) as exc:
            raise ResolutionError(f"Image generation failed: {exc}", cause="generation_failed", details=exc.details) from exc

    # -- persistence -------------------------------------------------------

    def _persist(self, data: bytes, filename: str, owner_hint: Optional[str], deadline: Deadline, run_id: str) -> StepResult:
        if self.persist is None:
            return StepResult.skipped()
        if deadline.expired:
            log_warning(run_id, "pipeline:persist_skipped", reason="deadline")
            return StepResult.skipped("deadline")
        try:
            return self.persist(data, filename, owner_hint, deadline)
        except Exception as exc:
            # the persister contract is never to raise; treat a broken one as a failed step
            log_error(run_id, "pipeline:persist_raised", error=str(exc))
            return StepResult.failed(PersistenceError(str(exc)))

    # -- run ---------------------------------------------------------------

    def _check_admission(self, context: CallerContext) -> None:
        if self.admission is None:
            return
        decision = self.admission.check(context.clientKey)
        if not decision.allowed:
            raise AdmissionDeniedError(decision.resetSeconds, details={"limit": decision.limit})

    def _bump(self, name: str) -> None:
        if self.metrics is not None:
            getattr(self.metrics, name)()

    def run(
        self,
        command: Union[str, ParsedCommand, None],
        context: Optional[CallerContext] = None,
        overrides: Union[CommandOverrides, Dict[str, Any], None] = None,
    ) -> AgentResult:
        context = context or CallerContext()
        run_id = str(uuid.uuid4())
        tracker = _RunTracker(run_id, self.run_state)
        deadline = Deadline(context.deadlineSeconds or self.settings.pipeline_deadline_seconds)
        warnings: List[str] = []
        parsed: Optional[ParsedCommand] = None
        log_info(run_id, "pipeline:received", interface=context.interface.value, clientKey=context.clientKey)

        try:
            self._check_admission(context)
            self._bump("increment_total")

            if isinstance(command, ParsedCommand):
                parsed = command
            elif command and command.strip():
                parsed = parse(command, context.interface, context.parentImageUrl, registry=self.registry)
            elif overrides is None:
                raise CommandValidationError("No command or parameters provided")
            else:
                parsed = ParsedCommand()
            parsed = apply_overrides(parsed, overrides, self.registry)
            self.validate(parsed)
            tracker.advance(PipelinePhase.PARSED, **parsed.history_fields())

            tracker.advance(PipelinePhase.BASE_IMAGE_RESOLVING)
            entry = self.registry.get(parsed.overlayMode)
            asset_future = self._executor.submit(self._load_asset, entry, deadline, run_id) if entry else None
            try:
                base_bytes, source = self.resolve_base(parsed, context, deadline)
            except Exception:
                if asset_future is not None:
                    asset_future.cancel()
                raise
            asset_bytes = self._await_asset(asset_future, deadline, run_id)

            deadline.check("compose")
            tracker.advance(PipelinePhase.COMPOSING, source=source, overlayAsset=asset_bytes is not None)
            composed = compose(base_bytes, parsed, asset_bytes, font_dir=self.settings.font_dir, run_trace_id=run_id)
            warnings.extend(composed.warnings)

            result_id = self.image_store.store(composed.fullBuffer, "image/png")
            preview_id = self.image_store.store(composed.previewBuffer, "image/png")
            tracker.advance(PipelinePhase.STORED, resultId=result_id, previewId=preview_id)

            filename = f"{parsed.overlayMode or 'generated'}-{result_id}.png"
            persisted = self._persist(composed.fullBuffer, filename, context.ownerHint, deadline, run_id)
            persisted_fields = (persisted.result or {}) if persisted.ok else {}
            if persisted.ok:
                tracker.advance(PipelinePhase.PERSISTED, locator=persisted_fields.get("locator"))
            elif persisted.status == "failed":
                warnings.append("Permanent storage failed; the result is available from the ephemeral store only")

            base_url = context.baseUrl.rstrip("/")
            result = AgentResult(
                id=run_id,
                status=RunStatus.COMPLETED,
                resultUrl=f"{base_url}/api/image?id={result_id}",
                previewUrl=f"{base_url}/api/image?id={preview_id}",
                resultId=result_id,
                previewId=preview_id,
                overlayMode=parsed.overlayMode,
                persistedLocator=persisted_fields.get("locator"),
                persistedUrl=persisted_fields.get("publicUrl"),
                phase=PipelinePhase.COMPLETED,
                warnings=warnings,
            )
            tracker.advance(PipelinePhase.COMPLETED)
            tracker.finish(RunStatus.COMPLETED, self._summary(result))
            return result
        except WowowifyError as exc:
            return self._failed(run_id, tracker, parsed, exc, warnings)
        except Exception as exc:
            log_error(run_id, "pipeline:unexpected_error", error=str(exc), errorType=type(exc).__name__)
            return self._failed(run_id, tracker, parsed, WowowifyError(str(exc), code="INTERNAL_ERROR"), warnings)

    @staticmethod
    def _summary(result: AgentResult) -> Dict[str, Any]:
        # derived fields only; the parsed command is never stored
        return {
            "overlayMode": result.overlayMode,
            "resultUrl": result.resultUrl,
            "previewUrl": result.previewUrl,
            "persistedLocator": result.persistedLocator,
            "persistedUrl": result.persistedUrl,
            "errorCode": (result.error or {}).get("code"),
        }

    def _failed(
        self,
        run_id: str,
        tracker: _RunTracker,
        parsed: Optional[ParsedCommand],
        exc: WowowifyError,
        warnings: List[str],
    ) -> AgentResult:
        failed_in = tracker.phase
        log_error(run_id, "pipeline:failed", phase=failed_in.value, code=exc.code, error=str(exc))
        if not isinstance(exc, AdmissionDeniedError):
            self._bump("increment_failed")
        error = exc.to_dict()
        error["details"] = {**error["details"], "phase": failed_in.value}
        result = AgentResult(
            id=run_id,
            status=RunStatus.FAILED,
            overlayMode=parsed.overlayMode if parsed else None,
            error=error,
            retryAfterSeconds=exc.retry_after if isinstance(exc, AdmissionDeniedError) else None,
            phase=PipelinePhase.FAILED,
            warnings=warnings,
        )
        tracker.advance(PipelinePhase.FAILED, code=exc.code, failedIn=failed_in.value)
        tracker.finish(RunStatus.FAILED, self._summary(result))
        return result


def build_pipeline(settings: Settings) -> Pipeline:
    kv = select_kv_store(settings)
    persist = (
        BlobPersister(
            settings.blob_connection_string,
            settings.blob_container,
            upload_timeout=settings.upload_timeout_seconds,
        )
        if settings.blob_connection_string
        else None
    )
    return Pipeline(
        fetch_bytes=HttpFetcher(default_timeout=settings.download_timeout_seconds),
        generate_image=ImageGenerator.from_settings(settings),
        image_store=ImageStore(kv, ttl_seconds=settings.image_ttl_seconds),
        persist=persist,
        run_state=select_run_state_store(settings),
        admission=AdmissionController(
            kv,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        metrics=RequestMetrics(kv),
        settings=settings,
    )


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    return build_pipeline(get_settings())
