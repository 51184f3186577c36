"""End-to-end region capture per session.

Pipeline: analyze -> plan -> capture -> stitch -> encode -> persist.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from region_capture.capture.encoder import FormatEncoder
from region_capture.capture.errors import (
    CaptureCancelledError,
    CaptureError,
    CaptureFailedError,
    DownloadFailedError,
    classify_exception,
)
from region_capture.capture.geometry import GeometryAnalyzer
from region_capture.capture.host import CaptureHost, PersistenceCollaborator
from region_capture.capture.models import (
    CaptureSegment,
    EncodedOutput,
    EncodeOptions,
    ImageFormat,
    RegionGeometry,
    SessionStatus,
)
from region_capture.capture.orchestrator import CaptureOrchestrator
from region_capture.capture.performance import PerformanceController, compression_ratio, device_preset
from region_capture.capture.planner import ScrollSegmentPlanner
from region_capture.capture.retry import RetryPolicy
from region_capture.capture.session import (
    CaptureSession,
    ErrorNotification,
    LoggingProgressReporter,
    ProgressReporter,
    SessionStore,
)
from region_capture.capture.stitcher import SegmentStitcher
from region_capture.config import CaptureSettings
from region_capture.utils.logging import CaptureSessionLogger, LogContext, log_operation

logger = structlog.get_logger(__name__)

# Progress milestones (percent)
PROGRESS_STARTED = 5
PROGRESS_ANALYZED = 15
PROGRESS_PLANNED = 20
PROGRESS_CAPTURED = 70
PROGRESS_STITCHED = 80
PROGRESS_ENCODED = 90
PROGRESS_DONE = 100


class RegionCaptureService:
    """
    Runs capture sessions against one host.

    Sessions are registered in the SessionStore for their lifetime.
    Completed sessions stay registered for the store's grace period;
    failed and cancelled ones are removed immediately and yield no
    artifact. When persistence fails after a complete encode, the artifact
    is kept for a manual save and the session still completes.
    """

    def __init__(
        self,
        host: CaptureHost,
        persistence: PersistenceCollaborator | None = None,
        store: SessionStore | None = None,
        reporter: ProgressReporter | None = None,
        settings: CaptureSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or CaptureSettings()
        self.host = host
        self.persistence = persistence
        self.store = store or SessionStore(
            grace_period_s=self.settings.session_grace_period_s,
            pending_save_ttl_s=self.settings.pending_save_ttl_s,
        )
        self.reporter = reporter or LoggingProgressReporter()
        self.timeout_s = self.settings.operation_timeout_ms / 1000

        self.performance = PerformanceController(self.settings, memory_sampler=host.sample_memory, sleep=sleep)
        self.retry_policy = RetryPolicy.from_settings(self.settings, sleep=sleep)
        self.analyzer = GeometryAnalyzer()
        self.planner = ScrollSegmentPlanner(self.settings.overlap_factor, self.settings.max_segments)
        self.orchestrator = CaptureOrchestrator(
            self.settings,
            retry_policy=self.retry_policy,
            performance=self.performance,
            sleep=sleep,
        )
        self.stitcher = SegmentStitcher(self.performance)
        self.encoder = FormatEncoder()
        self.log = logger.bind(component="capture_service")

    def default_options(self) -> EncodeOptions:
        return EncodeOptions(
            format=ImageFormat(self.settings.default_format),
            quality=self.settings.default_quality,
            filename_template=self.settings.filename_template,
        )

    async def _progress(
        self,
        session: CaptureSession,
        progress: int,
        status: SessionStatus | None = None,
        message: str | None = None,
    ) -> None:
        if session.update_progress(progress, status):
            await self.reporter.report_progress(session.to_update(message))

    async def _analyze(self, selector: str) -> RegionGeometry:
        async def attempt() -> RegionGeometry:
            try:
                return await asyncio.wait_for(
                    self.analyzer.analyze_element(self.host, selector),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError as e:
                raise CaptureFailedError(f"analyze timed out after {self.timeout_s}s") from e

        return await self.retry_policy.execute(attempt, context="analyze")

    async def _persist(self, session: CaptureSession, output: EncodedOutput) -> None:
        if self.persistence is None:
            return

        async def attempt() -> str:
            try:
                return await self.persistence.save(output)
            except CaptureError:
                raise
            except Exception as e:
                raise DownloadFailedError(str(e)) from e

        try:
            session.saved_path = await self.retry_policy.execute(attempt, context="save")
        except DownloadFailedError as e:
            self.store.store_pending_save(session.session_id, output)
            self.log.warning(
                "Save failed, artifact kept for manual save",
                session_id=session.session_id,
                filename=output.filename,
            )
            await self.reporter.report_error(ErrorNotification.from_error_info(session.session_id, e.info))

    async def capture(
        self,
        selector: str,
        options: EncodeOptions | None = None,
        session_id: str | None = None,
    ) -> CaptureSession:
        """
        Capture a region and run it through the whole pipeline.

        Args:
            selector: CSS selector of the region
            options: Output encoding, defaults from settings
            session_id: Explicit session id, generated when omitted

        Returns:
            The completed session holding the encoded artifact

        Raises:
            CaptureError: Classified failure of any stage
            CaptureCancelledError: The session was cancelled
        """
        options = options or self.default_options()
        session = self.store.create(selector, session_id)
        return await self.run_session(session, options)

    async def run_session(self, session: CaptureSession, options: EncodeOptions) -> CaptureSession:
        """Run the pipeline for an already registered session."""
        sid = session.session_id
        token = session.cancel_token
        session_log = CaptureSessionLogger(sid, session.selector)

        with LogContext(session_id=sid):
            self.performance.start_monitoring(sid)
            session_log.session_started({"format": options.format.value, "quality": options.quality})
            try:
                await self._progress(session, PROGRESS_STARTED, SessionStatus.PROCESSING)

                session_log.stage_started("analyze")
                geometry = await self._analyze(session.selector)
                dpr = geometry.device_pixel_ratio
                self.performance.update_metrics(sid, device_pixel_ratio=dpr)
                self.performance.apply_device_preset(device_preset(dpr, geometry.viewport_width))
                budget_rows = self.performance.segment_pixel_budget(
                    geometry.scrollable_total_height, geometry.bounding_box.width, dpr
                )
                max_step = budget_rows / dpr if dpr > 0 else None
                self.performance.update_metrics(sid, segment_budget_rows=budget_rows)
                await self._progress(session, PROGRESS_ANALYZED)
                token.raise_if_cancelled()

                session_log.stage_started("plan")
                plan = self.planner.plan(geometry, max_step=max_step)
                self.performance.update_metrics(sid, segment_count=len(plan))
                await self._progress(session, PROGRESS_PLANNED)

                async def on_segment(segment: CaptureSegment, total: int) -> None:
                    session_log.segment_captured(
                        segment.sequence_index,
                        segment.requested_offset.y,
                        len(segment.raster),
                    )
                    span = PROGRESS_CAPTURED - PROGRESS_PLANNED
                    await self._progress(
                        session,
                        PROGRESS_PLANNED + span * (segment.sequence_index + 1) // total,
                    )

                session_log.stage_started("capture")
                segments = await self.orchestrator.capture(
                    self.host,
                    geometry,
                    plan,
                    cancel_token=token,
                    session_id=sid,
                    on_segment=on_segment,
                )
                token.raise_if_cancelled()

                session_log.stage_started("stitch")
                with log_operation("stitch", logger=self.log, session_id=sid) as op:
                    raster = await self.retry_policy.execute(
                        lambda: self.stitcher.stitch(segments, geometry, dpr),
                        context="stitch",
                    )
                    op["size_bytes"] = len(raster)
                await self._progress(session, PROGRESS_STITCHED)
                token.raise_if_cancelled()

                session_log.stage_started("encode")
                output = await self.retry_policy.execute(
                    lambda: asyncio.to_thread(self.encoder.encode, raster, options),
                    context="encode",
                )
                self.performance.update_metrics(
                    sid,
                    image_size=output.size_bytes,
                    compression_ratio=compression_ratio(len(raster), output.size_bytes),
                )
                session.result = output
                await self._progress(session, PROGRESS_ENCODED)

                session_log.stage_started("persist")
                await self._persist(session, output)
                await self._progress(session, PROGRESS_DONE, SessionStatus.COMPLETED)

                metrics = self.performance.end_monitoring(sid)
                session_log.session_completed(
                    output.filename,
                    metrics.duration_ms if metrics else 0.0,
                    output.size_bytes,
                )
                for recommendation in self.performance.recommendations(sid):
                    session_log.warning("Performance recommendation", recommendation=recommendation)
                self.store.schedule_removal(sid)
                return session

            except CaptureCancelledError:
                session.result = None
                await self._progress(session, session.progress, SessionStatus.CANCELLED)
                self.log.info("Capture cancelled", session_id=sid)
                self.store.remove(sid)
                raise

            except asyncio.CancelledError:
                session.result = None
                session.update_progress(session.progress, SessionStatus.CANCELLED)
                self.store.remove(sid)
                raise

            except Exception as e:
                error = classify_exception(e)
                session.result = None
                session.error = error.info
                await self._progress(session, session.progress, SessionStatus.ERROR, message=error.info.message)
                session_log.session_failed(error.kind.value, error.severity.value, str(e))
                await self.reporter.report_error(ErrorNotification.from_error_info(sid, error.info))
                self.store.remove(sid)
                if error is e:
                    raise
                raise error from e

            finally:
                self.performance.clear_metrics(sid)

    def cancel(self, session_id: str) -> bool:
        """Request cancellation; False when the session is unknown or finished."""
        session = self.store.get(session_id)
        if session is None or session.status.is_terminal:
            return False
        session.cancel_token.cancel()
        self.log.info("Cancellation requested", session_id=session_id)
        return True

    async def manual_save(self, session_id: str) -> str:
        """
        Save an artifact whose automatic save failed.

        Raises:
            LookupError: No artifact is pending for the session
            DownloadFailedError: The save failed again; the artifact stays pending
        """
        output = self.store.pop_pending_save(session_id)
        if output is None:
            raise LookupError(f"No artifact pending manual save for session {session_id}")
        if self.persistence is None:
            self.store.store_pending_save(session_id, output)
            raise DownloadFailedError("No persistence collaborator configured")

        try:
            path = await self.persistence.save(output, interactive=True)
        except Exception as e:
            self.store.store_pending_save(session_id, output)
            if isinstance(e, CaptureError):
                raise
            raise DownloadFailedError(str(e)) from e

        session = self.store.get(session_id)
        if session is not None:
            session.saved_path = path
        self.log.info("Manual save completed", session_id=session_id, path=path)
        return path
