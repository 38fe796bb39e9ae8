"""Pytest configuration and fixtures for flashtile tests."""

import pytest
import torch
import sys
from pathlib import Path

# Add project root to path
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


@pytest.fixture(scope="session")
def device():
    """Get the appropriate device for testing."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


@pytest.fixture(scope="session")
def dtype():
    """Get the default dtype for testing."""
    return torch.float64


@pytest.fixture
def make_qkv(device, dtype):
    """Factory for seeded random [B, H, N, d] inputs."""

    def _make(B, H, N, D, count=3, seed=0, scale=1.0):
        gen = torch.Generator().manual_seed(seed)
        return tuple(
            (torch.randn(B, H, N, D, generator=gen, dtype=dtype) * scale).to(device)
            for _ in range(count)
        )

    return _make


@pytest.fixture(autouse=True)
def _clear_limits_cache(monkeypatch):
    """Keep device limits independent of the caller's environment."""
    from flashtile.kernels.device import clear_device_limits_cache

    monkeypatch.delenv("FLASHTILE_SRAM_BYTES", raising=False)
    monkeypatch.delenv("FLASHTILE_MAX_GROUP_WIDTH", raising=False)
    clear_device_limits_cache()
    yield
    clear_device_limits_cache()


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "gpu: marks tests that require GPU")
