"""Shared pytest fixtures and configuration for the ephemera test suite.

Guidelines
----------
* No network access in any test; the API is :class:`fakes.FakeClient`
  or a mocked ``requests`` session.
* Async code is driven with ``asyncio.run``.
* Poll delays go through an injected sleep, never a real one.
* Settings tests pass ``env={}`` and a ``tmp_path`` config file so the
  developer's own configuration is never read.
"""

from __future__ import annotations

import pytest

from fakes import FakeClient, ScriptedPresenter, SleepRecorder


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def presenter() -> ScriptedPresenter:
    return ScriptedPresenter()
