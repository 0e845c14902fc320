from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from thunderhead import config
from thunderhead.cache import GeoCache
from thunderhead.jobs import ActiveUser, ActiveUserSource, QuietHours, is_quiet
from thunderhead.models import DirectionalResult, utcnow

logger = logging.getLogger(__name__)


class Notifier:
    """Delivers a thunderhead alert to one user. Push delivery lives elsewhere."""

    async def send_thunder_alert(self, user: ActiveUser, threats: Sequence[DirectionalResult]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    async def send_thunder_alert(self, user: ActiveUser, threats: Sequence[DirectionalResult]) -> None:
        summary = ", ".join(f"{r.direction.value} {r.distance_km:g}km" for r in threats)
        logger.info("thunder alert for %s: %s", user.user_id, summary)


@dataclass(frozen=True)
class MonitorReport:
    checked: int = 0
    alerted: int = 0
    failed: int = 0
    skipped_quiet_hours: bool = False


class ThunderMonitor:
    """Checks every recently active user's cell and alerts on likely thunderheads.

    Only known, likely directions count as threats; Unknown directions are
    never reported as either threat or all-clear.
    """

    def __init__(
        self,
        cache: GeoCache,
        users: ActiveUserSource,
        notifier: Optional[Notifier] = None,
        quiet_hours: Optional[QuietHours] = None,
        active_window_seconds: int = config.ACTIVE_USER_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.users = users
        self.notifier = notifier or LoggingNotifier()
        self.quiet_hours = quiet_hours
        self.active_window = timedelta(seconds=active_window_seconds)
        self.clock = clock

    @staticmethod
    def threats_in(results) -> List[DirectionalResult]:
        return [r for r in results.values() if not r.is_unknown and r.assessment.is_likely]

    async def run_once(self, now: Optional[datetime] = None) -> MonitorReport:
        now = now or self.clock()
        if is_quiet(self.quiet_hours, now):
            logger.info("monitor skipped: quiet hours %r", self.quiet_hours)
            return MonitorReport(skipped_quiet_hours=True)

        checked = alerted = failed = 0
        for user in await self.users.active_users(now - self.active_window):
            checked += 1
            try:
                results = await self.cache.get_or_compute(user.coordinate)
                threats = self.threats_in(results)
                if threats:
                    await self.notifier.send_thunder_alert(user, threats)
                    alerted += 1
            except Exception as e:
                logger.warning("monitor check for %s failed: %s", user.user_id, e)
                failed += 1

        report = MonitorReport(checked=checked, alerted=alerted, failed=failed)
        logger.info("monitor done: %s", report)
        return report
