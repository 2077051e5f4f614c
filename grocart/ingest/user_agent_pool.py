"""Fixed user agent pool with round-robin rotation.

Bot-sensitive sources get a different user agent on each request, cycling
through the pool in order so consecutive requests never share one.
"""

import itertools
import logging
from typing import Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
)

# Sent to sources that don't rotate
SERVICE_USER_AGENT = "MyGroCart/1.0"


class UserAgentPool:
    """Round-robin rotation over a fixed list of user agent strings."""

    def __init__(self, user_agents: Optional[Sequence[str]] = None):
        """
        Initialize the pool.

        Args:
            user_agents: Pool contents (defaults to DEFAULT_USER_AGENTS)
        """
        self._user_agents = tuple(user_agents or DEFAULT_USER_AGENTS)
        if not self._user_agents:
            raise ValueError("User agent pool cannot be empty")
        self._cycle: Iterator[str] = itertools.cycle(self._user_agents)

    def __len__(self) -> int:
        return len(self._user_agents)

    def next(self) -> str:
        """Return the next user agent in rotation."""
        return next(self._cycle)

    def get_headers(self) -> dict[str, str]:
        """Browser-like headers built around the next user agent."""
        return {
            "User-Agent": self.next(),
            "Accept-Language": "en-US,en;q=0.9",
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
        }
