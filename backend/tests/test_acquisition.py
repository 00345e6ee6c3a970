"""Tests for URL parsing, preflight and the acquisition fallback chain."""
import asyncio
from pathlib import Path

import httpx
import pytest

from shortsmith.pipeline import acquisition
from shortsmith.pipeline.acquisition import (
    AcquisitionError,
    AcquisitionOrchestrator,
    parse_source_url,
    preflight,
)
from shortsmith.pipeline.errors import ErrorKind, PipelineError
from shortsmith.pipeline.rate_governor import RateGovernor
from shortsmith.pipeline.strategies import AcquisitionStrategy

VALID_MP4 = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 20000
HTML_PAGE = b"<!DOCTYPE html><html><body>Sign in to confirm you're not a bot</body></html>"
VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


# =============================================================================
# parse_source_url
# =============================================================================

@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtube.com/watch?v=dQw4w9WgXcQ&t=42s&si=tracking",
        "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ?si=abc",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "www.youtube.com/watch?v=dQw4w9WgXcQ",
        "dQw4w9WgXcQ",
    ],
)
def test_parse_youtube_variants(url):
    source = parse_source_url(url)
    assert source.platform == "YouTube"
    assert source.video_id == "dQw4w9WgXcQ"
    assert source.canonical_url == VIDEO_URL


def test_parse_tiktok_video_url():
    source = parse_source_url("https://www.tiktok.com/@creator/video/7234567890123456789?lang=en")
    assert source.platform == "TikTok"
    assert source.video_id == "7234567890123456789"
    assert source.canonical_url == "https://www.tiktok.com/@creator/video/7234567890123456789"


def test_parse_tiktok_short_link():
    source = parse_source_url("https://vm.tiktok.com/ZMabc123/")
    assert source.platform == "TikTok"
    assert source.canonical_url == "https://vm.tiktok.com/ZMabc123/"


@pytest.mark.parametrize(
    "url",
    [
        "",
        "not a url",
        "https://vimeo.com/123456",
        "https://www.youtube.com/watch?v=short",
        "https://www.youtube.com/channel/UC123",
        "https://www.tiktok.com/@creator",
        "ftp://youtube.com/watch?v=dQw4w9WgXcQ",
    ],
)
def test_parse_rejects_unsupported(url):
    with pytest.raises(PipelineError) as exc:
        parse_source_url(url)
    assert exc.value.kind == ErrorKind.FORMAT_UNSUPPORTED


# =============================================================================
# preflight
# =============================================================================

class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload


class _FakeClient:
    def __init__(self, response=None, error=None, **kwargs):
        self._response = response
        self._error = error
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get(self, url, params=None, **kwargs):
        self.requests.append((url, params))
        if self._error:
            raise self._error
        return self._response


def _patch_client(monkeypatch, response=None, error=None):
    clients = []

    def _factory(**kwargs):
        client = _FakeClient(response=response, error=error, **kwargs)
        clients.append(client)
        return client

    monkeypatch.setattr(acquisition.httpx, "AsyncClient", _factory)
    return clients


@pytest.mark.asyncio
async def test_preflight_returns_oembed_metadata(monkeypatch):
    clients = _patch_client(monkeypatch, _FakeResponse(200, {"title": "Never Gonna Give You Up"}))

    data = await preflight(parse_source_url(VIDEO_URL), timeout=1)

    assert data == {"title": "Never Gonna Give You Up"}
    url, params = clients[0].requests[0]
    assert url == acquisition.OEMBED_URL
    assert params == {"url": VIDEO_URL, "format": "json"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403, 404])
async def test_preflight_conclusive_failures(monkeypatch, status):
    _patch_client(monkeypatch, _FakeResponse(status))

    with pytest.raises(PipelineError) as exc:
        await preflight(parse_source_url(VIDEO_URL), timeout=1)
    assert exc.value.kind == ErrorKind.VIDEO_UNAVAILABLE


@pytest.mark.asyncio
async def test_preflight_inconclusive_status(monkeypatch):
    _patch_client(monkeypatch, _FakeResponse(500))
    assert await preflight(parse_source_url(VIDEO_URL), timeout=1) is None


@pytest.mark.asyncio
async def test_preflight_network_error_is_inconclusive(monkeypatch):
    _patch_client(monkeypatch, error=httpx.ConnectError("Connection refused"))
    assert await preflight(parse_source_url(VIDEO_URL), timeout=1) is None


@pytest.mark.asyncio
async def test_preflight_skips_tiktok(monkeypatch):
    clients = _patch_client(monkeypatch, _FakeResponse(404))
    source = parse_source_url("https://www.tiktok.com/@creator/video/7234567890123456789")

    assert await preflight(source, timeout=1) is None
    assert clients == []


# =============================================================================
# AcquisitionOrchestrator
# =============================================================================

class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now


class _Sleeps:
    """Records sleeps and advances the shared clock instead of waiting."""

    def __init__(self, clock: _Clock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.now += seconds


class _FakeStrategy(AcquisitionStrategy):
    """Plays back a list of outcomes: bytes to write, or an exception to raise."""

    def __init__(self, name, outcomes, partial=False):
        super().__init__(user_agents=[])
        self.name = name
        self.outcomes = list(outcomes)
        self.partial = partial
        self.calls = 0

    def _next(self):
        self.calls += 1
        return self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]

    async def fetch_info(self, url):
        outcome = self._next()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def download(self, url, output_dir, processing_id):
        outcome = self._next()
        if self.partial:
            (Path(output_dir) / f"{processing_id}_original.mp4.part").write_bytes(b"\x00" * 64)
        if isinstance(outcome, BaseException):
            raise outcome
        path = Path(output_dir) / f"{processing_id}_original.mp4"
        path.write_bytes(outcome)
        return path


class _SlowStrategy(AcquisitionStrategy):
    name = "slow"

    async def download(self, url, output_dir, processing_id):
        await asyncio.sleep(10)


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def sleeps(clock):
    return _Sleeps(clock)


@pytest.fixture
def governor(clock):
    return RateGovernor(
        max_requests=5,
        window_seconds=60,
        base_backoff=5,
        max_backoff=300,
        bot_backoff=30,
        max_global_backoff=1800,
        clock=clock,
    )


def _orchestrator(strategies, governor, sleeps, **kwargs):
    options = dict(
        attempts_per_strategy=2,
        strategy_timeout=5,
        info_timeout=5,
        retry_delay=3,
        admission_retries=3,
        max_admission_wait=120,
        bot_delay_base=15,
        bot_delay_max=120,
        bot_delay_jitter=0,
        sleep=sleeps,
    )
    options.update(kwargs)
    return AcquisitionOrchestrator(strategies, governor, **options)


@pytest.mark.asyncio
async def test_first_strategy_success(tmp_path, governor, sleeps):
    primary = _FakeStrategy("primary", [VALID_MP4])
    secondary = _FakeStrategy("secondary", [VALID_MP4])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    result = await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert result.strategy == "primary"
    assert result.value == tmp_path / "job1_original.mp4"
    assert secondary.calls == 0
    assert sleeps.calls == []
    assert [a.describe() for a in result.attempts] == ["primary#1 -> ok"]


@pytest.mark.asyncio
async def test_bot_detection_waits_then_falls_back(tmp_path, governor, sleeps):
    primary = _FakeStrategy("primary", [RuntimeError("ERROR: Sign in to confirm you're not a bot")])
    secondary = _FakeStrategy("secondary", [VALID_MP4])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    result = await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert result.strategy == "secondary"
    assert primary.calls == 1
    # Bot delay before the next strategy, then the rest of the global cooldown.
    assert sleeps.calls == pytest.approx([15, 45])
    assert result.attempts[0].error_kind == ErrorKind.BOT_DETECTION
    assert governor.failures("www.youtube.com") == 0
    assert governor.cooldown_remaining() == 0


@pytest.mark.asyncio
async def test_permanent_failure_stops_chain(tmp_path, governor, sleeps):
    primary = _FakeStrategy(
        "primary",
        [RuntimeError("ERROR: [youtube] dQw4w9WgXcQ: Private video. Sign in if you've been granted access")],
    )
    secondary = _FakeStrategy("secondary", [VALID_MP4])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    with pytest.raises(AcquisitionError) as exc:
        await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert exc.value.kind == ErrorKind.VIDEO_UNAVAILABLE
    assert primary.calls == 1
    assert secondary.calls == 0
    assert len(exc.value.attempts) == 1


@pytest.mark.asyncio
async def test_transient_failure_retried_within_strategy(tmp_path, governor, sleeps):
    primary = _FakeStrategy("primary", [RuntimeError("Connection reset by peer"), VALID_MP4])
    orchestrator = _orchestrator([primary], governor, sleeps)

    result = await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert result.strategy == "primary"
    assert primary.calls == 2
    # Retry delay, then the rest of the backoff floor left by the failure.
    assert sleeps.calls == [3, 7]
    assert [a.attempt for a in result.attempts] == [1, 2]
    assert result.attempts[0].error_kind == ErrorKind.NETWORK_TIMEOUT


@pytest.mark.asyncio
async def test_html_download_rejected_and_partials_removed(tmp_path, governor, sleeps):
    primary = _FakeStrategy("primary", [HTML_PAGE], partial=True)
    secondary = _FakeStrategy("secondary", [VALID_MP4])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    result = await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert result.strategy == "secondary"
    assert primary.calls == 2
    assert [a.error_kind for a in result.attempts[:2]] == [ErrorKind.CORRUPTED_DOWNLOAD] * 2
    assert "HTML error page" in result.attempts[0].error_message
    assert not (tmp_path / "job1_original.mp4.part").exists()
    assert (tmp_path / "job1_original.mp4").read_bytes() == VALID_MP4
    assert sleeps.calls[0] == 3


@pytest.mark.asyncio
async def test_all_strategies_exhausted(tmp_path, governor, sleeps):
    primary = _FakeStrategy("primary", [RuntimeError("Read timed out")])
    secondary = _FakeStrategy("secondary", [RuntimeError("Read timed out")])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    with pytest.raises(AcquisitionError) as exc:
        await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert exc.value.kind == ErrorKind.NETWORK_TIMEOUT
    assert "All download strategies failed" in str(exc.value)
    assert primary.calls == 2
    assert secondary.calls == 2
    assert len(exc.value.attempts) == 4


@pytest.mark.asyncio
async def test_long_cooldown_skips_every_strategy(tmp_path, governor, sleeps):
    governor.report_failure("www.youtube.com", "Sign in to confirm you're not a bot")
    primary = _FakeStrategy("primary", [VALID_MP4])
    secondary = _FakeStrategy("secondary", [VALID_MP4])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps, max_admission_wait=10)

    with pytest.raises(AcquisitionError) as exc:
        await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert exc.value.kind == ErrorKind.RATE_LIMITED
    assert primary.calls == 0
    assert secondary.calls == 0
    assert [a.attempt for a in exc.value.attempts] == [0, 0]
    assert sleeps.calls == []


@pytest.mark.asyncio
async def test_strategy_timeout_becomes_network_timeout(tmp_path, governor, sleeps):
    orchestrator = _orchestrator(
        [_SlowStrategy(user_agents=[])], governor, sleeps,
        attempts_per_strategy=1, strategy_timeout=0.01,
    )

    with pytest.raises(AcquisitionError) as exc:
        await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert exc.value.kind == ErrorKind.NETWORK_TIMEOUT
    assert "timed out" in exc.value.attempts[0].error_message


@pytest.mark.asyncio
async def test_fetch_info_uses_same_chain(governor, sleeps):
    primary = _FakeStrategy("primary", [RuntimeError("HTTP Error 429: Too Many Requests")])
    secondary = _FakeStrategy("secondary", [{"title": "Demo", "duration": 600}])
    orchestrator = _orchestrator([primary, secondary], governor, sleeps)

    result = await orchestrator.fetch_info(parse_source_url(VIDEO_URL), "job1")

    assert result.value == {"title": "Demo", "duration": 600}
    assert result.strategy == "secondary"
    assert primary.calls == 1
    assert result.attempts[0].error_kind == ErrorKind.RATE_LIMITED


def test_bot_delay_grows_with_strategy_position(governor, sleeps):
    orchestrator = _orchestrator([], governor, sleeps)
    assert orchestrator.bot_delay(0) == 15
    assert orchestrator.bot_delay(1) == 30
    assert orchestrator.bot_delay(5) == 120


@pytest.mark.asyncio
async def test_retries_need_admission_too(tmp_path, clock, sleeps):
    governor = RateGovernor(max_requests=1, window_seconds=60, base_backoff=5, clock=clock)
    flaky = _FakeStrategy("flaky", [RuntimeError("Connection reset by peer")])
    orchestrator = _orchestrator(
        [flaky], governor, sleeps,
        attempts_per_strategy=3, max_admission_wait=10,
    )

    with pytest.raises(AcquisitionError) as exc:
        await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert flaky.calls == 1
    assert exc.value.kind == ErrorKind.RATE_LIMITED
    assert [a.describe().split(" ->")[0] for a in exc.value.attempts] == ["flaky#1", "flaky#0"]


@pytest.mark.asyncio
async def test_retry_waits_for_window_to_reopen(tmp_path, clock, sleeps):
    governor = RateGovernor(max_requests=1, window_seconds=60, base_backoff=5, clock=clock)
    flaky = _FakeStrategy("flaky", [RuntimeError("Connection reset by peer"), VALID_MP4])
    orchestrator = _orchestrator([flaky], governor, sleeps, attempts_per_strategy=2)

    result = await orchestrator.download(parse_source_url(VIDEO_URL), tmp_path, "job1")

    assert flaky.calls == 2
    assert result.strategy == "flaky"
    # Retry delay of 3s, then the remaining 57s of the one-request window.
    assert sleeps.calls == pytest.approx([3, 57])
