import os

import pytest
from hypothesis import settings

import tutils
from safestarttls import options


@pytest.fixture
def opts() -> options.Options:
    return options.Options()


@pytest.fixture
def wire() -> tutils.Wire:
    return tutils.Wire()


@pytest.fixture
def event_log() -> tutils.EventLog:
    return tutils.EventLog()


settings.register_profile("fast", max_examples=10, deadline=None)
settings.register_profile("deep", max_examples=100_000, deadline=None)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))
