"""Configuration dataclasses populated by kubesim.config.load_config()."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class LogConfig:
    level: str = "info"


@dataclass(frozen=True)
class HPAConfig:
    """Autoscaler stabilization windows, measured in evaluation ticks."""

    downscale_window: int = 5
    upscale_window: int = 0


@dataclass(frozen=True)
class JobConfig:
    """Retry backoff for Job pods: min(base * 2**(failures - 1), max) ticks."""

    backoff_base_ticks: int = 1
    backoff_max_ticks: int = 6
    cronjob_default_interval: int = 5


@dataclass(frozen=True)
class EngineConfig:
    termination_grace_ticks: int = 0
    max_ticks: int = 50


@dataclass(frozen=True)
class KubesimConfig:
    log: LogConfig = field(default_factory=LogConfig)
    hpa: HPAConfig = field(default_factory=HPAConfig)
    job: JobConfig = field(default_factory=JobConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
