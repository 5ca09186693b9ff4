from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Dict


@dataclass
class ProviderUsageStat:
    provider: str
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_used_at: datetime | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "requests": self.request_count,
            "successes": self.success_count,
            "failures": self.failure_count,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class ProviderUsage:
    """Per-provider counters of upstream imagery requests, kept for diagnostics."""

    def __init__(self) -> None:
        self._stats: Dict[str, ProviderUsageStat] = {}
        self._lock = threading.Lock()

    def record(self, provider: str, *, success: bool, increment: int = 1) -> None:
        if increment <= 0:
            return

        with self._lock:
            usage = self._stats.get(provider)
            if usage is None:
                usage = ProviderUsageStat(provider=provider)
                self._stats[provider] = usage
            usage.request_count += increment
            if success:
                usage.success_count += increment
            else:
                usage.failure_count += increment
            usage.last_used_at = datetime.now(UTC)

    def snapshot(self) -> list[Dict[str, object]]:
        with self._lock:
            return [self._stats[name].as_dict() for name in sorted(self._stats)]
