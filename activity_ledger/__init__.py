"""
Activity Ledger - activity accounting and behavioural analytics
"""

__version__ = "0.1.0"

from .services.database import DatabaseManager
from .services.recorder import ActivityRecorder
from .services.rollups import RollupAggregator
from .services.summary import SummaryProjector
from .services.analytics import AnalyticsEngine
from .models.activity import ActivityEvent, BehaviorEvent, Category

__all__ = [
    'DatabaseManager',
    'ActivityRecorder',
    'RollupAggregator',
    'SummaryProjector',
    'AnalyticsEngine',
    'ActivityEvent',
    'BehaviorEvent',
    'Category',
]
