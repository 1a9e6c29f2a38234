"""
Pytest configuration and shared fakes.

The fakes stand in for the external collaborators of the pipeline core:
the inference engine, the microphone, the frontmost-app source and the
idle timer.
"""

import asyncio
import os
import threading
import time

import numpy as np
import pytest

# Use litellm's bundled model cost map instead of fetching it at import time
# (the fetch hangs/deadlocks in offline test environments).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from voicepipe.core.pipeline.session import AppContext


class FakeEngine:
    """Records load/run/unload calls. Can block or fail on demand."""

    def __init__(self, text="hello world", load_error=None, run_error=None):
        self.text = text
        self.load_error = load_error
        self.run_error = run_error
        self.loaded = []
        self.unloaded = []
        self.runs = 0

        self.block_load = False
        self.block_run = False
        self.load_started = threading.Event()
        self.run_started = threading.Event()
        self.proceed = threading.Event()

    def load(self, model_path):
        self.load_started.set()
        if self.block_load:
            self.proceed.wait(timeout=5)
        if self.load_error is not None:
            raise self.load_error
        self.loaded.append(model_path)
        return f"native:{model_path}"

    def run(self, native, audio, sample_rate):
        self.run_started.set()
        if self.block_run:
            self.proceed.wait(timeout=5)
        self.runs += 1
        if self.run_error is not None:
            raise self.run_error
        return self.text

    def unload(self, native):
        self.unloaded.append(native)


class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class FakeCapture:
    def __init__(self, audio=None, start_error=None, stop_error=None):
        self.audio = np.ones(1600, dtype=np.float32) if audio is None else audio
        self.start_error = start_error
        self.stop_error = stop_error
        self.started = 0
        self.stopped = 0
        self.cancelled = 0

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started += 1

    def stop(self):
        self.stopped += 1
        if self.stop_error is not None:
            raise self.stop_error
        return self.audio

    def cancel(self):
        self.cancelled += 1


class FakeContextSource:
    def __init__(self, app_id=None, url=None):
        self.app_id = app_id
        self.url = url

    def current(self):
        return AppContext(app_id=self.app_id, url=self.url)


class FakeTime:
    """Monotonic clock whose sleep advances the clock instead of waiting."""

    def __init__(self, start=100.0):
        self.now = start
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def timers():
    return []


@pytest.fixture
def timer_factory(timers):
    def factory(interval, function, args=()):
        timer = FakeTimer(interval, function, args)
        timers.append(timer)
        return timer

    return factory


@pytest.fixture
def fake_time():
    return FakeTime()
