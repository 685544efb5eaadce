"""
# utils/time_manager.py

Module Contract
- Purpose: Track request/first-token/response timing for streamed analyses and provide formatted timestamps.
- Inputs/Outputs:
  - current(), current_iso(), mark_query_time(), mark_first_token()
  - measure_response(start, end), last_response(), time_to_first_token(), elapsed_since_last()
- Side effects:
  - In-memory timestamps only; nothing is persisted.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

logger = logging.getLogger(__name__)


class TimeManager:
    def __init__(self):
        self.last_query_time: Optional[datetime] = None
        self.previous_query_time: Optional[datetime] = None
        self.first_token_time: Optional[datetime] = None
        self.last_response_time: Optional[timedelta] = None

    # ---------- public helpers ----------
    def current(self) -> datetime:
        return datetime.now()

    def current_iso(self) -> str:
        return self.current().isoformat(sep=" ", timespec="seconds")

    @staticmethod
    def format_delta(delta: timedelta) -> str:
        if delta.days:
            return f"{delta.days} d {delta.seconds//3600} h"
        if delta.seconds >= 3600:
            return f"{delta.seconds//3600} h {(delta.seconds%3600)//60} m"
        if delta.seconds >= 60:
            return f"{delta.seconds//60} m"
        return f"{delta.seconds} s"

    def elapsed_since_last(self) -> str:
        """Formatted time between the previous request and the current one."""
        if not self.previous_query_time or not self.last_query_time:
            return "N/A (first request)"
        return self.format_delta(self.last_query_time - self.previous_query_time)

    def mark_query_time(self) -> datetime:
        """Call at the *start* of request handling."""
        self.previous_query_time = self.last_query_time
        self.last_query_time = self.current()
        self.first_token_time = None
        return self.last_query_time

    def mark_first_token(self) -> Optional[float]:
        """Record the first visible chunk; returns seconds since the request, once."""
        if self.first_token_time is not None or self.last_query_time is None:
            return None
        self.first_token_time = self.current()
        return (self.first_token_time - self.last_query_time).total_seconds()

    def time_to_first_token(self) -> Optional[float]:
        if self.first_token_time is None or self.last_query_time is None:
            return None
        return (self.first_token_time - self.last_query_time).total_seconds()

    def measure_response(self, start_time, end_time):
        elapsed = end_time - start_time
        self.last_response_time = elapsed
        return f"{elapsed.total_seconds():.2f} s"

    def last_response(self) -> str:
        return f"{self.last_response_time.total_seconds():.2f} s" if self.last_response_time else "N/A"
