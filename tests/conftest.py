from __future__ import annotations

import os

# Set deterministic defaults before importing modules that read the environment.
os.environ.setdefault("EVS_ENV", "test")
os.environ.setdefault("EVS_BACKEND_URL", "http://evebox.test")
os.environ.setdefault("EVS_QUERY_TIMEOUT", "0")
os.environ.setdefault("EVS_TIMESTAMP_MODE", "utc")
os.environ.setdefault("EVS_LOG_LEVEL", "WARNING")

import pytest

from api.config.settings import Settings
from api.main import build_app as _build_app
from tests.fakes import FakeBackend


@pytest.fixture(autouse=True)
def _restore_env():
    before = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(before)


@pytest.fixture
def settings() -> Settings:
    return Settings(env="test", backend_url="http://evebox.test", timestamp_mode="utc", max_sessions=4)


@pytest.fixture
def build_app(settings: Settings):
    """
    Factory fixture: an app whose sessions all talk to in-memory fake
    backends. ``prepare(fake)`` seeds each new backend; the created
    backends are exposed as ``app.state.backends``.
    """

    def _factory(prepare=None, **overrides):
        cfg = Settings(**{**settings.__dict__, **overrides})
        backends: list[FakeBackend] = []

        def _backend_factory(_settings: Settings) -> FakeBackend:
            fake = FakeBackend()
            if prepare is not None:
                prepare(fake)
            backends.append(fake)
            return fake

        app = _build_app(cfg, backend_factory=_backend_factory)
        app.state.backends = backends
        return app

    return _factory
