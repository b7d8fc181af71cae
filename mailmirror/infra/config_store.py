import json
import os
from dataclasses import dataclass

from mailmirror.constants import (
    CATEGORY_FETCH_LIMITS,
    ENRICHMENT_DELAY_SEC,
    MANUAL_REFRESH_HOURS,
    MIN_REFRESH_SPACING_SEC,
    QUICK_REFRESH_COUNT,
    QUICK_REFRESH_INTERVAL_SEC,
    RECENT_FETCH_HOURS,
    STATUS_MESSAGE_TTL_SEC,
    STEADY_REFRESH_INTERVAL_SEC,
)
from mailmirror.paths import CONFIG_DIR, CONFIG_FILE


class Config:
    """Persistent configuration manager."""

    def __init__(self):
        self.load_error = None
        self.data = {
            "client_id": "",
            "quick_refresh_interval_sec": QUICK_REFRESH_INTERVAL_SEC,
            "quick_refresh_count": QUICK_REFRESH_COUNT,
            "steady_refresh_interval_sec": STEADY_REFRESH_INTERVAL_SEC,
            "min_refresh_spacing_sec": MIN_REFRESH_SPACING_SEC,
            "recent_fetch_hours": RECENT_FETCH_HOURS,
            "manual_refresh_hours": MANUAL_REFRESH_HOURS,
            "category_fetch_limits": dict(CATEGORY_FETCH_LIMITS),
            "enrichment_delay_sec": ENRICHMENT_DELAY_SEC,
            "status_message_ttl_sec": STATUS_MESSAGE_TTL_SEC,
            "sort_order": "priority",
            "saved_filters": [],
        }
        self.load()

    def load(self):
        self.load_error = None
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, "r", encoding="utf-8") as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("Config payload must be a JSON object.")
                self.data.update(saved)
            except (OSError, json.JSONDecodeError, TypeError, ValueError) as exc:
                self.load_error = str(exc)

    def save(self):
        os.makedirs(CONFIG_DIR, exist_ok=True)
        with open(CONFIG_FILE, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value
        self.save()


def _positive_float(value, fallback):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


@dataclass(frozen=True)
class RefreshSettings:
    quick_interval: float = QUICK_REFRESH_INTERVAL_SEC
    quick_ticks: int = QUICK_REFRESH_COUNT
    steady_interval: float = STEADY_REFRESH_INTERVAL_SEC
    min_spacing: float = MIN_REFRESH_SPACING_SEC

    @classmethod
    def from_config(cls, config):
        try:
            quick_ticks = max(0, int(config.get("quick_refresh_count", QUICK_REFRESH_COUNT)))
        except (TypeError, ValueError):
            quick_ticks = QUICK_REFRESH_COUNT
        return cls(
            quick_interval=_positive_float(config.get("quick_refresh_interval_sec"), QUICK_REFRESH_INTERVAL_SEC),
            quick_ticks=quick_ticks,
            steady_interval=_positive_float(config.get("steady_refresh_interval_sec"), STEADY_REFRESH_INTERVAL_SEC),
            min_spacing=_positive_float(config.get("min_refresh_spacing_sec"), MIN_REFRESH_SPACING_SEC),
        )


__all__ = ["Config", "RefreshSettings"]
