"""
Engine configuration.

:class:`EngineConfig` is an immutable value passed to the engine and batch
runner. It can be built directly or loaded from ``FLOWSTUDIO_*`` environment
variables with :meth:`EngineConfig.from_env`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from typing_extensions import Self

from flowstudio.core.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLOWSTUDIO_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"expected one of {sorted(_TRUE | _FALSE)}")


def _parse_optional_float(raw: str) -> float | None:
    if raw.strip().lower() in {"", "none"}:
        return None
    return float(raw)


_PARSERS: dict[str, Callable[[str], Any]] = {
    "model_timeout": _parse_optional_float,
    "batch_workers": int,
    "row_delay": float,
    "run_timeout": _parse_optional_float,
    "strict_references": _parse_bool,
    "continue_on_error": _parse_bool,
    "capture_inputs": _parse_bool,
}


@dataclass(frozen=True)
class EngineConfig:
    """
    Settings shared by every run of an engine.

    Attributes:
        model_timeout: Seconds allowed for one model call (None for no limit).
            A Prompt node's own ``timeout`` takes precedence.
        batch_workers: Size of the batch runner's thread pool
        row_delay: Minimum seconds between the starts of two batch rows
        run_timeout: Seconds allowed for a whole run; nodes not started in
            time are skipped and the run fails
        strict_references: Whether Output templates fail on unresolved
            placeholders (Prompt templates are always strict)
        continue_on_error: Report ``partially_failed`` instead of ``failed``
            when some Output node still completed
        capture_inputs: Record the values each node read on its NodeExecution
    """

    model_timeout: float | None = 60.0
    batch_workers: int = 5
    row_delay: float = 0.0
    run_timeout: float | None = None
    strict_references: bool = True
    continue_on_error: bool = False
    capture_inputs: bool = True

    def __post_init__(self):
        if self.batch_workers < 1:
            raise ConfigError(f"batch_workers must be at least 1, got {self.batch_workers}")
        if self.row_delay < 0:
            raise ConfigError(f"row_delay cannot be negative, got {self.row_delay}")
        for name in ("model_timeout", "run_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive or None, got {value}")

    def with_overrides(self, **overrides: Any) -> Self:
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX) -> Self:
        """
        Build a config from environment variables.

        Unset variables keep their defaults; ``FLOWSTUDIO_BATCH_WORKERS=8``
        sets ``batch_workers`` and so on.

        Raises:
            ConfigError: If a variable cannot be parsed or is out of range.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            key = f"{prefix}{f.name.upper()}"
            raw = environ.get(key)
            if raw is None:
                continue
            try:
                values[f.name] = _PARSERS[f.name](raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {key}: {raw!r} ({e})") from e
        if values:
            logger.debug(f"Engine config overrides from environment: {values}")
        return cls(**values)


__all__ = ["EngineConfig", "ENV_PREFIX"]
