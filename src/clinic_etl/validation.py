"""clinic_etl.validation

Post-run count validation against a YAML baseline.

The baseline records the counts a known-good full import produced.  A
mismatch is reported and stored on the run; it never changes run status.

Usage:
    baseline = load_baseline(Path("config/validation_baseline.yml"))
    report = validate_counts(baseline, {"total_records": 20077, "bookings": 3122,
                                        "leads": 13908, "engaged": 7910})
    log.info(report.format_report())
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_BASELINE_PATH = Path("config/validation_baseline.yml")

METRICS: tuple[str, ...] = ("total_records", "bookings", "leads", "engaged")


class BaselineValidationError(ValueError):
    """Raised when a baseline YAML file is missing keys or has bad values."""


@dataclass(frozen=True)
class ValidationBaseline:
    total_records: int
    bookings: int
    leads: int
    engaged: int

    def expected(self, metric: str) -> int:
        return getattr(self, metric)


@dataclass(frozen=True)
class MetricCheck:
    metric: str
    expected: int
    actual: int

    @property
    def match(self) -> bool:
        return self.expected == self.actual

    @property
    def difference(self) -> int:
        return self.actual - self.expected


@dataclass(frozen=True)
class ValidationReport:
    checks: tuple[MetricCheck, ...]

    @property
    def all_match(self) -> bool:
        return all(c.match for c in self.checks)

    def check(self, metric: str) -> MetricCheck:
        for c in self.checks:
            if c.metric == metric:
                return c
        raise KeyError(metric)

    def to_dict(self) -> dict[str, Any]:
        return {
            "all_match": self.all_match,
            "metrics": {
                c.metric: {"expected": c.expected, "actual": c.actual, "match": c.match}
                for c in self.checks
            },
        }

    def format_report(self) -> str:
        lines = [
            "=" * 60,
            "Import Validation Report",
            "=" * 60,
        ]
        for c in self.checks:
            mark = "OK" if c.match else f"MISMATCH ({c.difference:+d})"
            lines.append(
                f"  {c.metric:<15} expected={c.expected:<8} actual={c.actual:<8} {mark}"
            )
        lines.append(f"  all_match: {self.all_match}")
        lines.append("=" * 60)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def parse_baseline(data: Any) -> ValidationBaseline:
    if not isinstance(data, dict):
        raise BaselineValidationError("baseline must be a mapping")
    missing = [m for m in METRICS if m not in data]
    if missing:
        raise BaselineValidationError(f"baseline missing keys: {', '.join(missing)}")
    values: dict[str, int] = {}
    for m in METRICS:
        raw = data[m]
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            raise BaselineValidationError(f"{m} must be a non-negative integer, got {raw!r}")
        values[m] = raw
    return ValidationBaseline(**values)


def load_baseline(yaml_path: Path = DEFAULT_BASELINE_PATH) -> ValidationBaseline:
    """Load and validate a baseline file.

    Raises:
        BaselineValidationError: If a metric is missing or not a count.
        FileNotFoundError: If the YAML file does not exist.
    """
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    return parse_baseline(data)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

def validate_counts(
    baseline: ValidationBaseline,
    stats: Mapping[str, int],
) -> ValidationReport:
    """Compare observed counts with the baseline.  Missing metrics count as 0."""
    return ValidationReport(
        checks=tuple(
            MetricCheck(metric=m, expected=baseline.expected(m), actual=int(stats.get(m, 0)))
            for m in METRICS
        )
    )
