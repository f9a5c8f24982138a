"""Shared test fixtures and helpers.

Every component that reads time takes a Clock and every component that
persists state takes a StateStore, so the fixtures here are a MockClock and
a MemoryStateStore bound to it. No test ever sleeps for real: retry backoff
goes through ``clock.sleep``.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

from __future__ import annotations

import os

import pytest
from hypothesis import Phase, Verbosity, settings

from errorferry.core.clock import MockClock
from errorferry.core.store.memory import MemoryStateStore

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================

# 2023-11-14T22:13:20Z
START_TIME = 1_700_000_000.0


@pytest.fixture
def clock() -> MockClock:
    return MockClock(start=START_TIME)


@pytest.fixture
def store(clock: MockClock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)
