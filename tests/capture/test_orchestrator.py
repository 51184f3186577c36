"""Tests for the scroll-and-capture orchestrator."""

import pytest

from region_capture.capture.errors import (
    CaptureCancelledError,
    CaptureFailedError,
    ElementNotFoundError,
    PermissionDeniedError,
)
from region_capture.capture.geometry import GeometryAnalyzer
from region_capture.capture.models import MemoryUsage
from region_capture.capture.orchestrator import CancellationToken, CaptureOrchestrator
from region_capture.capture.performance import PerformanceController
from region_capture.capture.planner import ScrollSegmentPlanner
from region_capture.capture.retry import RetryPolicy
from region_capture.config import CaptureSettings


@pytest.fixture
def orchestrator(settings, no_sleep):
    return CaptureOrchestrator(
        settings=settings,
        retry_policy=RetryPolicy.from_settings(settings, sleep=no_sleep),
        sleep=no_sleep,
    )


async def plan_for(host):
    geometry = await GeometryAnalyzer().analyze_element(host, "#feed")
    return geometry, ScrollSegmentPlanner().plan(geometry)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel(self):
        token = CancellationToken("s1")
        assert not token.is_cancelled
        token.raise_if_cancelled()

        token.cancel()

        assert token.is_cancelled
        with pytest.raises(CaptureCancelledError) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.session_id == "s1"


class TestCaptureOrchestrator:
    """Tests for CaptureOrchestrator.capture."""

    @pytest.mark.asyncio
    async def test_call_order(self, orchestrator, element_host):
        geometry, plan = await plan_for(element_host)

        segments = await orchestrator.capture(element_host, geometry, plan)

        assert [segment.sequence_index for segment in segments] == [0, 1, 2, 3]
        expected = [("reset",)]
        for offset in plan:
            expected += [("scroll", offset.y), ("capture",), ("measure",)]
        expected.append(("reset",))
        assert element_host.calls[1:] == expected  # calls[0] is the probe

    @pytest.mark.asyncio
    async def test_settle_delay_after_each_scroll(self, element_host, no_sleep):
        settings = CaptureSettings(settle_delay_ms=150, retry_base_delay_ms=0)
        orchestrator = CaptureOrchestrator(settings=settings, sleep=no_sleep)
        geometry, plan = await plan_for(element_host)

        await orchestrator.capture(element_host, geometry, plan)

        assert no_sleep.delays == [0.15] * len(plan)

    @pytest.mark.asyncio
    async def test_observed_offsets_recorded(self, orchestrator, make_host):
        host = make_host(max_reachable_scroll=400)
        geometry, plan = await plan_for(host)

        segments = await orchestrator.capture(host, geometry, plan)

        assert [s.requested_offset.y for s in segments] == [0, 170, 340, 500]
        assert [s.observed_offset.y for s in segments] == [0, 170, 340, 400]
        assert segments[-1].effective_offset.y == 400
        assert segments[-1].observed_offset.is_final

    @pytest.mark.asyncio
    async def test_capture_failure_retried(self, orchestrator, element_host):
        element_host.capture_failures = [CaptureFailedError("blank frame")]
        geometry, plan = await plan_for(element_host)

        segments = await orchestrator.capture(element_host, geometry, plan)

        assert len(segments) == len(plan)
        assert element_host.calls.count(("capture",)) == len(plan) + 1

    @pytest.mark.asyncio
    async def test_capture_timeout_raises_capture_failed(self, element_host, no_sleep):
        settings = CaptureSettings(operation_timeout_ms=20, retry_base_delay_ms=0, retry_max_attempts=2)
        orchestrator = CaptureOrchestrator(
            settings=settings,
            retry_policy=RetryPolicy.from_settings(settings, sleep=no_sleep),
            sleep=no_sleep,
        )
        element_host.capture_delay = 1.0
        geometry, plan = await plan_for(element_host)

        with pytest.raises(CaptureFailedError, match="timed out"):
            await orchestrator.capture(element_host, geometry, plan)

        assert element_host.calls.count(("capture",)) == 2
        assert element_host.calls[-1] == ("reset",)

    @pytest.mark.asyncio
    async def test_permission_failure_not_retried(self, orchestrator, element_host):
        element_host.scroll_failures = [RuntimeError("Permission denied for tab")]
        geometry, plan = await plan_for(element_host)

        with pytest.raises(PermissionDeniedError):
            await orchestrator.capture(element_host, geometry, plan)

        assert element_host.calls.count(("scroll", 0)) == 1
        assert element_host.calls[-1] == ("reset",)

    @pytest.mark.asyncio
    async def test_region_disappears(self, orchestrator, element_host):
        geometry, plan = await plan_for(element_host)

        def vanish():
            element_host.missing = True

        element_host.on_capture = vanish

        with pytest.raises(ElementNotFoundError):
            await orchestrator.capture(element_host, geometry, plan)

        assert element_host.calls.count(("measure",)) == 1
        assert element_host.scroll == 0

    @pytest.mark.asyncio
    async def test_cancel_mid_capture_restores_scroll(self, orchestrator, element_host):
        geometry, plan = await plan_for(element_host)
        token = CancellationToken("s1")
        seen = []

        async def on_segment(segment, total):
            seen.append((segment.sequence_index, total))
            if segment.sequence_index == 1:
                token.cancel()

        with pytest.raises(CaptureCancelledError):
            await orchestrator.capture(element_host, geometry, plan, cancel_token=token, on_segment=on_segment)

        assert seen == [(0, 4), (1, 4)]
        assert element_host.calls.count(("capture",)) == 2
        assert element_host.calls[-1] == ("reset",)
        assert element_host.scroll == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator, element_host):
        geometry, plan = await plan_for(element_host)
        token = CancellationToken()
        token.cancel()
        element_host.calls.clear()

        with pytest.raises(CaptureCancelledError):
            await orchestrator.capture(element_host, geometry, plan, cancel_token=token)

        # Only the best-effort restore reaches the host.
        assert element_host.calls == [("reset",)]

    @pytest.mark.asyncio
    async def test_restore_failure_does_not_mask_result(self, orchestrator, element_host):
        geometry, plan = await plan_for(element_host)
        original_reset = element_host.reset_scroll
        resets = []

        async def flaky_reset(selector):
            resets.append(selector)
            if len(resets) > 1:
                raise RuntimeError("page navigated")
            await original_reset(selector)

        element_host.reset_scroll = flaky_reset

        segments = await orchestrator.capture(element_host, geometry, plan)

        assert len(segments) == len(plan)
        assert len(resets) == 2

    @pytest.mark.asyncio
    async def test_memory_monitored_per_segment(self, settings, no_sleep, element_host):
        element_host.memory = MemoryUsage(used_bytes=90, total_bytes=100)
        performance = PerformanceController(settings, memory_sampler=element_host.sample_memory, sleep=no_sleep)
        performance.start_monitoring("s1")
        orchestrator = CaptureOrchestrator(
            settings=settings,
            retry_policy=RetryPolicy.from_settings(settings, sleep=no_sleep),
            performance=performance,
            sleep=no_sleep,
        )
        geometry, plan = await plan_for(element_host)

        await orchestrator.capture(element_host, geometry, plan, session_id="s1")

        assert performance.get_metrics("s1").memory_usage == MemoryUsage(90, 100)
