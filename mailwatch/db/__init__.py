from .engine import Database
from .models import Base, DailyStatsRecord, ProcessedEmailRecord, UserSettingsRecord

__all__ = [
    "Base",
    "DailyStatsRecord",
    "Database",
    "ProcessedEmailRecord",
    "UserSettingsRecord",
]
