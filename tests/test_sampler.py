"""Tests for adaptive frame sampling."""

import asyncio

import pytest

from config import LONG_INTERVAL, SHORT_INTERVAL
from frame_extractor import CaptureError, CaptureRegion, compute_sampling_interval, screen_grab_command
from sampler import FrameSampler, SamplingMode, SamplingSession, target_interval


class FakeTime:
    """Clock plus sleep that advances the clock instead of waiting."""

    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


async def write_capture(path):
    path.write_bytes(b"\xff\xd8fake-jpeg")


async def wait_for_ticks(fake: FakeTime, count: int) -> None:
    for _ in range(10_000):
        if len(fake.sleeps) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("sampler did not tick")


class TestIntervals:

    def test_target_interval(self):
        assert target_interval(0.0) == SHORT_INTERVAL
        assert target_interval(9.99) == SHORT_INTERVAL
        assert target_interval(10.0) == LONG_INTERVAL
        assert target_interval(3600.0) == LONG_INTERVAL

    @pytest.mark.parametrize("duration,expected", [
        (5.0, 2.0),
        (9.9, 2.0),
        (10.0, 10.0),
        (600.0, 10.0),
        (0.0, 10.0),
        (-1.0, 10.0),
    ])
    def test_post_hoc_interval(self, duration, expected):
        assert compute_sampling_interval(duration) == expected

    def test_switch_happens_once_and_never_reverts(self):
        session = SamplingSession(start=50.0)

        assert session.update(55.0) is False
        assert session.update(60.0) is True
        assert session.interval == LONG_INTERVAL
        assert session.update(90.0) is False
        # A clock reading before the switch point does not shrink the interval.
        assert session.update(52.0) is False
        assert session.interval == LONG_INTERVAL

    def test_post_hoc_session_is_fixed(self):
        session = SamplingSession.for_recording(5.0)

        assert session.mode is SamplingMode.POST_HOC
        assert session.interval == SHORT_INTERVAL
        assert session.update(1000.0) is False
        assert session.interval == SHORT_INTERVAL


class TestFrameSampler:

    @pytest.mark.asyncio
    async def test_adaptive_schedule(self, tmp_path):
        fake = FakeTime()
        captured = []
        sampler = FrameSampler(
            tmp_path,
            capture=write_capture,
            on_frame_captured=lambda path, ts: captured.append(ts),
            clock=fake.clock,
            sleep=fake.sleep,
        )

        sampler.start()
        await wait_for_ticks(fake, 8)
        await sampler.stop()

        assert fake.sleeps[:8] == [2.0, 2.0, 2.0, 2.0, 2.0, 10.0, 10.0, 10.0]
        assert captured[:8] == [0.0, 2.0, 4.0, 6.0, 8.0, 10.0, 20.0, 30.0]
        assert captured == sorted(captured)

    @pytest.mark.asyncio
    async def test_first_frame_is_immediate(self, tmp_path):
        captured = []

        async def block_forever(delay):
            await asyncio.Event().wait()

        sampler = FrameSampler(
            tmp_path,
            capture=write_capture,
            on_frame_captured=lambda path, ts: captured.append((path, ts)),
            sleep=block_forever,
        )
        sampler.start()
        await asyncio.sleep(0)
        await sampler.stop()

        [(path, ts)] = captured
        assert ts == 0.0
        assert path.exists()

    @pytest.mark.asyncio
    async def test_first_frame_stamped_at_session_start(self, tmp_path):
        readings = iter(range(100, 10_000))
        captured = []

        async def block_forever(delay):
            await asyncio.Event().wait()

        # Every clock read moves time forward, like a real monotonic clock.
        sampler = FrameSampler(
            tmp_path,
            capture=write_capture,
            on_frame_captured=lambda path, ts: captured.append(ts),
            clock=lambda: float(next(readings)),
            sleep=block_forever,
        )
        session = sampler.start()
        await asyncio.sleep(0)
        await sampler.stop()

        assert session.start == 100.0
        assert captured == [0.0]

    @pytest.mark.asyncio
    async def test_capture_error_keeps_sampling(self, tmp_path):
        fake = FakeTime()
        calls = 0
        captured, errors = [], []

        async def flaky_capture(path):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise CaptureError("display busy")
            await write_capture(path)

        sampler = FrameSampler(
            tmp_path,
            capture=flaky_capture,
            on_frame_captured=lambda path, ts: captured.append(ts),
            on_capture_error=errors.append,
            clock=fake.clock,
            sleep=fake.sleep,
        )
        sampler.start()
        await wait_for_ticks(fake, 4)
        await sampler.stop()

        assert errors == ["display busy"]
        assert captured[:3] == [0.0, 4.0, 6.0]

    @pytest.mark.asyncio
    async def test_frames_emitted_in_tick_order(self, tmp_path):
        fake = FakeTime()
        captured = []
        release_first = asyncio.Event()

        async def slow_first(path):
            if path.name.startswith("frame_0001"):
                await release_first.wait()
            await write_capture(path)

        sampler = FrameSampler(
            tmp_path,
            capture=slow_first,
            on_frame_captured=lambda path, ts: captured.append(ts),
            clock=fake.clock,
            sleep=fake.sleep,
        )
        sampler.start()
        await wait_for_ticks(fake, 3)
        assert captured == []
        release_first.set()
        await sampler.stop()

        assert captured[:3] == [0.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_cancel_removes_partial_frames(self, tmp_path):
        captured = []
        started = asyncio.Event()

        async def hanging_capture(path):
            path.write_bytes(b"partial")
            started.set()
            await asyncio.Event().wait()

        async def block_forever(delay):
            await asyncio.Event().wait()

        sampler = FrameSampler(
            tmp_path,
            capture=hanging_capture,
            on_frame_captured=lambda path, ts: captured.append(ts),
            sleep=block_forever,
        )
        sampler.start()
        await started.wait()
        await sampler.cancel()

        assert captured == []
        assert list(tmp_path.glob("frame_*.jpg")) == []
        assert not sampler.running

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, tmp_path):
        async def block_forever(delay):
            await asyncio.Event().wait()

        sampler = FrameSampler(tmp_path, capture=write_capture, sleep=block_forever)
        sampler.start()
        with pytest.raises(RuntimeError):
            sampler.start()
        await sampler.cancel()


class TestCaptureCommand:

    def test_region_parse(self):
        assert CaptureRegion.parse("1280x720+10+20") == CaptureRegion(x=10, y=20, width=1280, height=720)

    @pytest.mark.parametrize("value", ["1280x720", "axb+0+0", "0x720+0+0"])
    def test_region_parse_rejects(self, value):
        with pytest.raises(ValueError):
            CaptureRegion.parse(value)

    def test_x11_command(self, tmp_path, monkeypatch):
        monkeypatch.setattr("frame_extractor.sys.platform", "linux")
        out = tmp_path / "f.jpg"
        cmd = screen_grab_command(out, CaptureRegion(10, 20, 640, 480), display=":1")

        assert cmd[cmd.index("-f") + 1] == "x11grab"
        assert cmd[cmd.index("-video_size") + 1] == "640x480"
        assert cmd[cmd.index("-i") + 1] == ":1+10,20"
        assert cmd[-1] == str(out)
        assert cmd[cmd.index("-frames:v") + 1] == "1"
