"""
App rotation for Graph API rate limits.

Tracks calls per app in the current hour and picks the highest priority
app that still has capacity. Counters live in process memory and reset
every hour (or on demand through the admin API).
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging

from core.exceptions import AllAppsExhaustedError, AppRotationError
from facebook.backup_apps import (
    BackupApp,
    MAIN_APP_ID,
    load_backup_apps,
    validate_config,
    get_total_capacity,
    get_app_by_id,
)

logger = logging.getLogger(__name__)

RESET_INTERVAL = timedelta(hours=1)
# Two or more apps exhausted inside this window means the ad account itself
# is limited; rotating apps cannot help.
AD_ACCOUNT_LIMIT_WINDOW = timedelta(seconds=10)


class AppRotationService:
    """
    Priority based selection over the configured apps.

    Attributes:
        apps: Configured apps, main app first
        usage: Calls made per app id in the current window
        exhausted_apps: App ids that hit a rate limit in the current window
    """

    def __init__(
        self,
        apps: Optional[List[BackupApp]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        apps = apps if apps is not None else load_backup_apps()

        valid, errors = validate_config(apps)
        if not valid:
            for error in errors:
                logger.error(f"Backup app configuration: {error}")
            raise AppRotationError(
                "Invalid backup apps configuration",
                context={"errors": errors}
            )

        self.apps = sorted(apps, key=lambda app: app.priority)
        self._clock = clock
        self.usage: Dict[str, int] = {app.app_id: 0 for app in self.apps}
        self.exhausted_apps = set()
        self.exhaustion_timestamps: Dict[str, Optional[datetime]] = {
            app.app_id: None for app in self.apps
        }
        self.last_reset_at = self._clock()
        self.reset_at = self.last_reset_at + RESET_INTERVAL
        self.ad_account_limited = False

        logger.info(
            f"App rotation initialized with {len(self.apps)} apps "
            f"({get_total_capacity(self.apps)} calls/hour)"
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def get_next_available_app(self, user_access_token: Optional[str] = None) -> BackupApp:
        """
        Highest priority app with remaining capacity.

        The main app is returned with the user's token injected.

        Raises:
            AllAppsExhaustedError: If every app is exhausted or at its limit
        """
        self.check_and_reset()

        for app in self.apps:
            if not self.is_app_available(app.app_id):
                continue
            if app.app_id == MAIN_APP_ID:
                if not user_access_token:
                    continue
                return app.model_copy(update={"access_token": user_access_token})
            return app

        logger.warning("All apps exhausted - no available apps")
        raise AllAppsExhaustedError(
            context={
                "exhausted_apps": sorted(self.exhausted_apps),
                "minutes_until_reset": self.minutes_until_reset(),
            },
            retry_after=max(60, int((self.reset_at - self._clock()).total_seconds()))
        )

    def is_app_available(self, app_id: str) -> bool:
        app = get_app_by_id(self.apps, app_id)
        if app is None:
            return False
        return app_id not in self.exhausted_apps and self.usage.get(app_id, 0) < app.rate_limit

    def get_remaining_capacity(self, app_id: str) -> int:
        app = get_app_by_id(self.apps, app_id)
        if app is None:
            return 0
        return max(0, app.rate_limit - self.usage.get(app_id, 0))

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def record_call(self, app_id: str):
        self.usage[app_id] = self.usage.get(app_id, 0) + 1

        app = get_app_by_id(self.apps, app_id)
        if app and self.usage[app_id] >= app.rate_limit:
            logger.warning(f"App {app.name} reached its hourly limit ({app.rate_limit})")
            self.exhausted_apps.add(app_id)
            self.exhaustion_timestamps[app_id] = self._clock()

    def mark_exhausted(self, app_id: str):
        """Mark an app as rate limited until the next reset."""
        now = self._clock()
        self.exhausted_apps.add(app_id)
        self.exhaustion_timestamps[app_id] = now

        app = get_app_by_id(self.apps, app_id)
        if app:
            self.usage[app_id] = app.rate_limit
            logger.warning(f"App marked as exhausted: {app.name} ({app_id})")

        self._detect_ad_account_limit(now)

    def _detect_ad_account_limit(self, now: datetime):
        recent = [
            app_id for app_id, timestamp in self.exhaustion_timestamps.items()
            if timestamp and now - timestamp < AD_ACCOUNT_LIMIT_WINDOW
        ]
        if len(recent) >= 2:
            self.ad_account_limited = True
            logger.error(
                f"Ad account rate limit detected: {len(recent)} apps exhausted within "
                f"{AD_ACCOUNT_LIMIT_WINDOW.seconds}s. Rotation cannot help; "
                f"requests should be queued until the hourly reset."
            )

    def is_ad_account_limited(self) -> bool:
        self.check_and_reset()
        return self.ad_account_limited

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def check_and_reset(self) -> bool:
        """Reset counters when the hourly window has elapsed. Returns True on reset."""
        if self._clock() >= self.reset_at:
            self._reset()
            logger.info("App usage counters reset (hourly window elapsed)")
            return True
        return False

    def force_reset(self):
        self._reset()
        logger.info("App usage counters force reset")

    def _reset(self):
        now = self._clock()
        for app in self.apps:
            self.usage[app.app_id] = 0
            self.exhaustion_timestamps[app.app_id] = None
        self.exhausted_apps.clear()
        self.ad_account_limited = False
        self.last_reset_at = now
        self.reset_at = now + RESET_INTERVAL

    def minutes_until_reset(self) -> int:
        remaining = (self.reset_at - self._clock()).total_seconds()
        return max(0, int(remaining // 60))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_app_status(self, app: BackupApp) -> dict:
        usage = self.usage.get(app.app_id, 0)
        is_exhausted = app.app_id in self.exhausted_apps
        percentage = round(usage / app.rate_limit * 100)

        if is_exhausted:
            status = "exhausted"
        elif percentage >= 90:
            status = "warning"
        elif usage > 0:
            status = "active"
        else:
            status = "available"

        return {
            "appId": app.app_id,
            "name": app.name,
            "type": app.type,
            "priority": app.priority,
            "isBackup": app.is_backup,
            "usage": usage,
            "rateLimit": app.rate_limit,
            "percentage": percentage,
            "remaining": app.rate_limit - usage,
            "status": status,
            "isExhausted": is_exhausted,
        }

    def get_status(self) -> List[dict]:
        self.check_and_reset()
        return [self.get_app_status(app) for app in self.apps]

    def get_summary(self) -> dict:
        status = self.get_status()
        total_usage = sum(app["usage"] for app in status)
        total_capacity = get_total_capacity(self.apps)
        available = sum(1 for app in status if app["status"] != "exhausted")

        return {
            "totalApps": len(self.apps),
            "availableApps": available,
            "exhaustedApps": len(self.exhausted_apps),
            "totalUsage": total_usage,
            "totalCapacity": total_capacity,
            "usagePercentage": round(total_usage / total_capacity * 100) if total_capacity else 0,
            "remaining": total_capacity - total_usage,
            "minutesUntilReset": self.minutes_until_reset(),
            "lastResetDate": self.last_reset_at.isoformat(),
            "nextResetDate": self.reset_at.isoformat(),
            "adAccountLimited": self.ad_account_limited,
        }


_rotation_service: Optional[AppRotationService] = None


def get_rotation_service() -> AppRotationService:
    """Process wide rotation service (usage counters are shared by all requests)"""
    global _rotation_service
    if _rotation_service is None:
        _rotation_service = AppRotationService()
    return _rotation_service
