from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List

from .logs import get_logger
from .models import Provider, ProviderUsageData

logger = get_logger("alerts")


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CostAlert:
    provider: Provider
    level: AlertLevel
    used_percentage: float
    threshold: float

    @property
    def message(self) -> str:
        return (
            f"{self.provider.display_name} usage at {self.used_percentage:.0f}% "
            f"(threshold {self.threshold:.0f}%)"
        )


class CostAlertTracker:
    """Emits each threshold crossing once; dropping back below a threshold re-arms it."""

    def __init__(self, warning_threshold: float = 70.0, critical_threshold: float = 90.0):
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._fired: Dict[Provider, set] = {}

    def evaluate(self, usages: Iterable[ProviderUsageData]) -> List[CostAlert]:
        alerts: List[CostAlert] = []
        for usage in usages:
            if not usage.is_available:
                continue
            fired = self._fired.setdefault(usage.provider, set())
            for level, threshold in (
                (AlertLevel.WARNING, self.warning_threshold),
                (AlertLevel.CRITICAL, self.critical_threshold),
            ):
                if usage.used_percentage >= threshold:
                    if level not in fired:
                        fired.add(level)
                        alert = CostAlert(usage.provider, level, usage.used_percentage, threshold)
                        logger.warning("%s", alert.message)
                        alerts.append(alert)
                else:
                    fired.discard(level)
        return alerts

    def reset(self, provider: Provider) -> None:
        self._fired.pop(provider, None)


__all__ = ["AlertLevel", "CostAlert", "CostAlertTracker"]
