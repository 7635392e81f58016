from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_SKEW = timedelta(minutes=5)


def is_expired(expires_at: datetime, now: datetime, skew: timedelta) -> bool:
    """
    Return True when a token expiring at ``expires_at`` should be treated as expired at ``now``.

    The skew compensates for clock drift and in-flight request latency, so a token is never presented to ESI
    when it could expire before the request lands.
    """
    return now + skew >= expires_at


@dataclass(frozen=True)
class ClockSkewPolicy:
    skew: timedelta = DEFAULT_SKEW

    def is_expired(self, expires_at: datetime, now: datetime) -> bool:
        return is_expired(expires_at, now, self.skew)
