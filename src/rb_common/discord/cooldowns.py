"""Per-(guild, user) cooldowns for commands that hit the Roblox API on demand."""

import time
from typing import Callable

from rb_common.errors import OnCooldownError


class CooldownTracker:
    """In-process cooldown map. Keys expire ``seconds`` after their last hit."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._last_hit: dict[tuple[str, str], float] = {}

    def __len__(self) -> int:
        return len(self._last_hit)

    def check(self, guild_id: str, user_id: str) -> float:
        """Seconds left before the user may go again; 0 when allowed."""
        last = self._last_hit.get((str(guild_id), str(user_id)))
        if last is None:
            return 0.0
        return max(0.0, self.seconds - (self._clock() - last))

    def hit(self, guild_id: str, user_id: str) -> None:
        self._last_hit[(str(guild_id), str(user_id))] = self._clock()

    def try_acquire(self, guild_id: str, user_id: str) -> None:
        """Record a hit, or raise OnCooldownError if still cooling down."""
        remaining = self.check(guild_id, user_id)
        if remaining > 0:
            raise OnCooldownError(remaining)
        self.hit(guild_id, user_id)

    def reset(self, guild_id: str, user_id: str) -> None:
        self._last_hit.pop((str(guild_id), str(user_id)), None)

    def sweep(self) -> int:
        """Drop expired keys. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, t in self._last_hit.items() if now - t >= self.seconds]
        for key in expired:
            del self._last_hit[key]
        return len(expired)
