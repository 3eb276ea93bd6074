"""Shared fixtures for the listen tests."""

from __future__ import annotations

import os

import pytest

import listen


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep config files, env vars and the log file of the tests away from the user ones."""
    environ = {key: value for key, value in os.environ.items() if not key.startswith("LISTEN_") and key != "DEEPGRAM_API_KEY"}
    environ["XDG_CONFIG_HOME"] = str(tmp_path / "config")
    monkeypatch.setattr(os, "environ", environ)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def fake_recognizer(monkeypatch):
    """Register a scriptable recognizer in place of the deepgram one."""

    class FakeRecognizer(listen.BaseRecognizer):
        locales = ["en-US", "fr-FR"]
        status = listen.BaseRecognizer.AuthorizationStatus.AUTHORIZED
        results: list[listen.RecognitionResult] = []
        error: str | None = None
        available = True
        authorization_requests = 0
        requests: list[listen.RecognitionRequest] = []

        @classmethod
        def supported_locales(cls):
            return list(cls.locales)

        @classmethod
        async def request_authorization(cls, config):
            cls.authorization_requests += 1
            return cls.status

        @property
        def is_available(self):
            return self.available

        async def recognition_task(self, request, cancel):
            self.requests.append(request)
            for result in self.results:
                yield result
            if self.error is not None:
                raise listen.RecognitionError(self.error)

    FakeRecognizer.requests = []
    monkeypatch.setitem(listen.RECOGNIZERS, listen.BaseRecognizer.Provider.DEEPGRAM, FakeRecognizer)
    return FakeRecognizer


@pytest.fixture
def fake_audio_engine(monkeypatch):
    """Replace the microphone capture by an engine recording what is done with it."""

    class FakeAudioEngine:
        instances: list[FakeAudioEngine] = []

        def __init__(self):
            self.calls: list[str] = []
            FakeAudioEngine.instances.append(self)

        def install_tap(self, request):
            request.bind_format(16000)
            self.calls.append("install_tap")

        def start(self):
            self.calls.append("start")

        def stop(self):
            self.calls.append("stop")

    FakeAudioEngine.instances = []
    monkeypatch.setattr(listen, "AudioEngine", FakeAudioEngine)
    return FakeAudioEngine
