from datetime import date, datetime, time, timedelta
import structlog

from cvewatch.config import settings, load_yaml_config
from cvewatch.exceptions import UnknownDatePresetError

logger = structlog.get_logger()

DAY_END = time(23, 59, 59, 999000)


class DatePresetRegistry:
    """Named relative date windows such as ``last_7_days``.

    Each preset is a mapping with optional keys:
      days         number of days back from today (default 0)
      anchor       "today", "month_start" or "year_start"
      until_today  close the window at the end of today (default True)
    """

    def __init__(self, presets: dict[str, dict]):
        self.presets = {name: dict(preset or {}) for name, preset in presets.items()}

    @classmethod
    def from_settings(cls) -> "DatePresetRegistry":
        presets = dict(settings.date_presets)
        overrides = load_yaml_config("date_presets.yaml").get("presets") or {}
        presets.update(overrides)
        if overrides:
            logger.info("Loaded date presets", names=sorted(overrides))
        return cls(presets)

    def names(self) -> list[str]:
        return list(self.presets)

    def __contains__(self, name: str) -> bool:
        return name in self.presets

    def resolve(self, name: str, today: date) -> tuple[date, date | None]:
        preset = self.presets.get(name)
        if preset is None:
            raise UnknownDatePresetError(name)
        anchor = preset.get("anchor", "today")
        if anchor == "year_start":
            start = date(today.year, 1, 1)
        elif anchor == "month_start":
            start = today.replace(day=1)
        else:
            start = today
        start -= timedelta(days=int(preset.get("days", 0)))
        end = today if preset.get("until_today", True) else None
        return start, end

    def validate(self, query) -> None:
        for name in query.relative_presets():
            if name not in self:
                raise UnknownDatePresetError(name)

    def window(self, query, prefix: str, today: date | None = None) -> tuple[datetime | None, datetime | None]:
        """Resolve the published/modified bounds of a query as datetimes.

        A relative preset replaces the absolute bounds entirely. An unknown
        preset leaves the window open.
        """
        relative = getattr(query, f"{prefix}_relative")
        if relative:
            if relative not in self:
                return None, None
            start, end = self.resolve(relative, today or datetime.utcnow().date())
        else:
            start, end = getattr(query, f"{prefix}_from"), getattr(query, f"{prefix}_to")
        return (
            datetime.combine(start, time.min) if start else None,
            datetime.combine(end, DAY_END) if end else None,
        )
