"""
CTF Arena - flag submission, scoring and event control for Capture The Flag competitions.

This package provides:
- Event lifecycle (not started, started, ended, restarts) shared through a cache
- Flag submission pipeline with per user and challenge throttling
- Static and dynamically decaying challenge values
- Team and player scoreboards frozen at the end of the event
- JSON API, public scoreboard page and a live admin feed
"""

from .config import CTFConfig
from .database import DatabaseManager
from .event_state import EventStateStore
from .rate_limiter import SubmissionRateLimiter
from .standings import ScoreboardAggregator
from .submissions import SubmissionProcessor
from .system import CTFPlatform

__version__ = "1.0.0"
__author__ = "CTF Arena Contributors"

__all__ = [
    "CTFConfig",
    "DatabaseManager",
    "EventStateStore",
    "SubmissionRateLimiter",
    "ScoreboardAggregator",
    "SubmissionProcessor",
    "CTFPlatform",
]
