"""Environment-driven configuration loader.

Every setting is read from a ``KUBESIM_*`` environment variable. Numeric
values are clamped to their documented bounds instead of rejected, so a
lesson never fails to start because of an out-of-range knob. Values that
cannot be interpreted at all raise ValueError.
"""

from __future__ import annotations

import os

from kubesim.models.config import EngineConfig, HPAConfig, JobConfig, KubesimConfig, LogConfig

_VALID_LOG_LEVELS = frozenset({"debug", "info", "warning", "error"})


def _env(name: str, default: str) -> str:
    return os.environ.get(f"KUBESIM_{name}", default).strip()


def _clamped_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = _env(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for KUBESIM_{name}: {raw!r}") from None
    return max(minimum, min(maximum, value))


def _log_level() -> str:
    level = _env("LOG_LEVEL", "info").lower()
    if level not in _VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r} (expected one of {sorted(_VALID_LOG_LEVELS)})")
    return level


def load_config() -> KubesimConfig:
    """Build a KubesimConfig from the process environment."""
    backoff_base = _clamped_int("JOB_BACKOFF_BASE_TICKS", 1, 1, 10)
    backoff_max = _clamped_int("JOB_BACKOFF_MAX_TICKS", 6, 1, 60)

    return KubesimConfig(
        log=LogConfig(level=_log_level()),
        hpa=HPAConfig(
            downscale_window=_clamped_int("HPA_DOWNSCALE_WINDOW", 5, 0, 60),
            upscale_window=_clamped_int("HPA_UPSCALE_WINDOW", 0, 0, 60),
        ),
        job=JobConfig(
            backoff_base_ticks=backoff_base,
            backoff_max_ticks=max(backoff_base, backoff_max),
            cronjob_default_interval=_clamped_int("CRONJOB_DEFAULT_INTERVAL", 5, 1, 100),
        ),
        engine=EngineConfig(
            termination_grace_ticks=_clamped_int("TERMINATION_GRACE_TICKS", 0, 0, 10),
            max_ticks=_clamped_int("MAX_TICKS", 50, 1, 10000),
        ),
    )
