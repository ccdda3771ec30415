"""Pytest configuration and fixtures for flowstudio tests."""

import threading
import time
from collections.abc import Callable

import pytest
from flowstudio import ModelConfig, ModelResponse
from flowstudio.core.instrumentation import _current_flow_instrument


class ScriptedInvoker:
    """Model invoker that echoes prompts and raises on request.

    ``failures`` maps a substring of the prompt text to the exception raised
    when a prompt contains it. Calls are recorded in order and are safe to
    make from batch worker threads.
    """

    def __init__(
        self,
        reply: Callable[[str], str] | None = None,
        failures: dict[str, BaseException] | None = None,
        tokens: int = 10,
        cost: float = 0.001,
        delay: float | Callable[[str], float] = 0.0,
    ):
        self.reply = reply or (lambda text: f"echo: {text}")
        self.failures = dict(failures or {})
        self.tokens = tokens
        self.cost = cost
        self.delay = delay
        self.calls: list[tuple[str, ModelConfig, float | None]] = []
        self.started: list[float] = []
        self._lock = threading.Lock()

    def invoke(self, prompt_text: str, model_config: ModelConfig, timeout: float | None) -> ModelResponse:
        with self._lock:
            self.calls.append((prompt_text, model_config, timeout))
            self.started.append(time.monotonic())
        delay = self.delay(prompt_text) if callable(self.delay) else self.delay
        if delay:
            time.sleep(delay)
        for needle, error in self.failures.items():
            if needle in prompt_text:
                raise error
        return ModelResponse(
            self.reply(prompt_text),
            tokens_used=self.tokens,
            cost_estimate=self.cost,
            latency_ms=5.0,
        )

    @property
    def prompts(self) -> list[str]:
        return [text for text, _, _ in self.calls]


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def make_invoker() -> Callable[..., ScriptedInvoker]:
    return ScriptedInvoker


@pytest.fixture(autouse=True)
def clear_flow_instrument():
    """Reset the active flow instrument before and after each test.

    A test that fails inside an instrument's ``with`` block would otherwise
    leave it installed for the tests that follow.
    """
    token = _current_flow_instrument.set(None)

    yield

    _current_flow_instrument.reset(token)
