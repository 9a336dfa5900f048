"""Metric matrix: per task type metrics, weights, scales and quality thresholds."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SCALES = ("0-1", "0-100")
DEFAULT_NEEDS_FIX_THRESHOLD = 0.6


@dataclass(slots=True, frozen=True)
class MetricSpec:
    name: str
    weight: float
    description: str
    scale: str = "0-1"

    @property
    def upper(self) -> float:
        return 100.0 if self.scale == "0-100" else 1.0

    @property
    def midpoint(self) -> float:
        return self.upper / 2

    def clamp(self, value: float) -> float:
        return min(self.upper, max(0.0, value))

    def normalize(self, value: float) -> float:
        return self.clamp(value) / self.upper


@dataclass(slots=True, frozen=True)
class TaskTypeMetrics:
    description: str
    metrics: tuple[MetricSpec, ...]


@dataclass(slots=True)
class EvalMatrix:
    """Loaded matrix; unknown task types fall back to ``default_metrics``."""

    version: str
    description: str
    task_types: dict[str, TaskTypeMetrics]
    default_metrics: tuple[MetricSpec, ...]
    quality_thresholds: dict[str, float] = field(default_factory=dict)

    def metrics_for(self, task_type: str) -> tuple[MetricSpec, ...]:
        entry = self.task_types.get(task_type)
        if entry is None or not entry.metrics:
            return self.default_metrics
        return entry.metrics

    @property
    def needs_fix_threshold(self) -> float:
        return self.quality_thresholds.get("needs_fix", DEFAULT_NEEDS_FIX_THRESHOLD)


def load_eval_matrix(path: Path) -> EvalMatrix:
    """Read and validate a metric matrix JSON file."""

    raw = json.loads(path.read_text("utf-8"))
    if not isinstance(raw, dict):
        raise TypeError("eval_matrix must be a JSON object")
    return parse_eval_matrix(raw)


def parse_eval_matrix(raw: dict[str, Any]) -> EvalMatrix:
    raw_task_types = raw.get("taskTypes", {})
    if not isinstance(raw_task_types, dict):
        raise TypeError("eval_matrix.taskTypes must be an object")

    task_types: dict[str, TaskTypeMetrics] = {}
    for name, entry in raw_task_types.items():
        if not isinstance(entry, dict):
            raise TypeError(f"eval_matrix.taskTypes.{name} must be an object")
        task_types[name] = TaskTypeMetrics(
            description=str(entry.get("description", "")),
            metrics=_parse_metrics(entry.get("metrics", {}), where=f"taskTypes.{name}.metrics"),
        )

    default_metrics = _parse_metrics(raw.get("defaultMetrics"), where="defaultMetrics")
    if not default_metrics:
        raise ValueError("eval_matrix.defaultMetrics must declare at least one metric")

    raw_thresholds = raw.get("qualityThresholds", {})
    if not isinstance(raw_thresholds, dict):
        raise TypeError("eval_matrix.qualityThresholds must be an object")
    thresholds: dict[str, float] = {}
    for name, value in raw_thresholds.items():
        if not isinstance(value, int | float) or isinstance(value, bool):
            raise TypeError(f"eval_matrix.qualityThresholds.{name} must be a number")
        thresholds[name] = float(value)

    return EvalMatrix(
        version=str(raw.get("version", "")),
        description=str(raw.get("description", "")),
        task_types=task_types,
        default_metrics=default_metrics,
        quality_thresholds=thresholds,
    )


def _parse_metrics(raw: Any, *, where: str) -> tuple[MetricSpec, ...]:
    if not isinstance(raw, dict):
        raise TypeError(f"eval_matrix.{where} must be an object")
    metrics: list[MetricSpec] = []
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise TypeError(f"eval_matrix.{where}.{name} must be an object")
        weight = entry.get("weight")
        scale = entry.get("scale", "0-1")
        if not isinstance(weight, int | float) or isinstance(weight, bool) or weight < 0:
            raise ValueError(f"eval_matrix.{where}.{name}.weight must be a non-negative number")
        if scale not in SCALES:
            raise ValueError(f"eval_matrix.{where}.{name}.scale must be one of {SCALES}")
        metrics.append(
            MetricSpec(
                name=name,
                weight=float(weight),
                description=str(entry.get("description", "")),
                scale=scale,
            ),
        )
    return tuple(metrics)
