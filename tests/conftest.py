"""
Global test configuration and shared fixtures.
"""

import base64
from collections.abc import Callable
import io
import json
import logging
import os
import struct
import zlib

import httpx
from PIL import Image
import pytest

from vision_bridge.config import BridgeConfig
from vision_bridge.pipeline.circuit_breaker import BreakerPolicy
from vision_bridge.pipeline.classification import RetryPolicy


# --- Environment Isolation (Autouse) ---
@pytest.fixture(autouse=True)
def isolate_bridge_env(request, monkeypatch):
    """Ensure a clean VISION_BRIDGE_* environment for each test.

    Escape hatch: mark a test with @pytest.mark.allow_env_pollution to keep
    the current environment unchanged.
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith("VISION_BRIDGE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)


@pytest.fixture(autouse=True)
def neutral_home_config(request, monkeypatch, tmp_path, isolate_bridge_env):  # noqa: ARG001
    """Point the home-config path to an isolated temp file by default.

    Prevents reading a developer's real ~/.config/vision_bridge.toml.

    Escape hatch: mark test with @pytest.mark.allow_real_home_config to use
    the real path.
    """
    if request.node.get_closest_marker("allow_real_home_config"):
        return

    fake_home_dir = tmp_path / "home_config_isolated"
    fake_home_dir.mkdir(parents=True, exist_ok=True)
    fake_home_file = fake_home_dir / "vision_bridge.toml"
    monkeypatch.setenv("VISION_BRIDGE_CONFIG_HOME", str(fake_home_file))


# --- Logging Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Sets the log level for noisy external libraries to WARNING."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


# --- Test Environment Markers ---
def pytest_configure(config):
    """Configure custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "integration: Component integration tests with mocked HTTP transports",
        "allow_env_pollution: Keep VISION_BRIDGE_* variables set outside the test",
        "allow_real_home_config: Read the real home configuration file",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# --- Clock & Sleep Fakes ---


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(fake_clock):
    """Async sleep that advances ``fake_clock`` and records requested delays."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)
        fake_clock.advance(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep


# --- Image Fixtures ---


def make_image_bytes(
    size: tuple[int, int] = (10, 10),
    image_format: str = "PNG",
    color: tuple[int, int, int] = (200, 30, 30),
) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format=image_format)
    return out.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def png_data_url(png_bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def png_header(width: int, height: int) -> bytes:
    """A PNG that declares ``width`` x ``height`` but carries almost no pixel data."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        body = kind + data
        return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body))

    ihdr = struct.pack(">IIBBBBB", width, height, 1, 0, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", ihdr)
        + chunk(b"IDAT", zlib.compress(b"\x00"))
        + chunk(b"IEND", b"")
    )


@pytest.fixture
def huge_png_header() -> bytes:
    return png_header(20_000, 20_000)


# --- HTTP Fixtures ---


def chat_completion(
    content: str = "The image shows a red square.",
    *,
    model: str = "openai/gpt-4o-mini",
    finish_reason: str = "stop",
    usage: dict | None = None,
) -> dict:
    """A minimal chat-completions body as returned by the provider."""
    return {
        "id": "gen-test",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": usage
        or {"prompt_tokens": 100, "completion_tokens": 60, "total_tokens": 160},
    }


def sse_body(*chunks: str, done: bool = True, finish_reason: str = "stop") -> bytes:
    """Server-sent event stream carrying ``chunks`` as content deltas."""
    lines = [": OPENROUTER PROCESSING", ""]
    for chunk in chunks:
        event = {"choices": [{"index": 0, "delta": {"content": chunk}}]}
        lines.extend([f"data: {json.dumps(event)}", ""])
    final = {
        "choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }
    lines.extend([f"data: {json.dumps(final)}", ""])
    if done:
        lines.extend(["data: [DONE]", ""])
    return "\n".join(lines).encode("utf-8")


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


# --- Config Fixtures ---


@pytest.fixture
def bridge_config() -> BridgeConfig:
    """Fast-failing configuration with a single vision fallback."""
    return BridgeConfig(
        primary_model="openai/gpt-4o-mini",
        fallback_models=("openai/gpt-4o",),
        api_key="test_api_key_12345",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.5),
        breaker_policy=BreakerPolicy(failure_threshold=5, recovery_timeout=30.0),
        request_timeout=30.0,
        call_timeout=10.0,
    )


@pytest.fixture
def completion_body():
    """Factory for provider chat-completions bodies."""
    return chat_completion


@pytest.fixture
def sse_stream():
    """Factory for provider server-sent event streams."""
    return sse_body


@pytest.fixture
def image_bytes():
    """Factory for small generated images."""
    return make_image_bytes
