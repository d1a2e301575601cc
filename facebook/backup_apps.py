"""
Facebook app registry used for rate limit rotation.

The main app always uses the calling user's OAuth token. Backup apps carry
their own long-lived tokens, read from the environment
(``BACKUP_APP_{n}_ID`` / ``_NAME`` / ``_TOKEN``). Order of use is
priority ascending: main -> backup 1 -> backup 2 -> request queue.
"""

from typing import List, Optional, Tuple
from pydantic import BaseModel, Field
from core.config import Settings, settings as default_settings

MAIN_APP_ID = "main_app"


class BackupApp(BaseModel):
    """A Facebook app whose token can serve Graph API calls"""
    app_id: str
    name: str
    access_token: Optional[str] = Field(None, repr=False)
    rate_limit: int = 200
    priority: int
    is_backup: bool = True

    @property
    def type(self) -> str:
        return "backup" if self.is_backup else "oauth"

    def public_dict(self) -> dict:
        """Configuration without the token (admin endpoints)."""
        return {
            "appId": self.app_id,
            "name": self.name,
            "type": self.type,
            "priority": self.priority,
            "rateLimit": self.rate_limit,
            "isBackup": self.is_backup,
            "hasToken": bool(self.access_token),
        }


def load_backup_apps(settings: Settings = None) -> List[BackupApp]:
    """Build the app list from settings; backups without an app id are skipped."""
    settings = settings or default_settings

    apps = [
        BackupApp(
            app_id=MAIN_APP_ID,
            name=settings.MAIN_APP_NAME,
            access_token=None,  # replaced by the user's token per request
            rate_limit=settings.APP_RATE_LIMIT,
            priority=1,
            is_backup=False,
        )
    ]

    backups = [
        (settings.BACKUP_APP_1_ID, settings.BACKUP_APP_1_NAME, settings.BACKUP_APP_1_TOKEN),
        (settings.BACKUP_APP_2_ID, settings.BACKUP_APP_2_NAME, settings.BACKUP_APP_2_TOKEN),
    ]
    for index, (app_id, name, token) in enumerate(backups, start=2):
        if not app_id:
            continue
        apps.append(
            BackupApp(
                app_id=app_id,
                name=name,
                access_token=token,
                rate_limit=settings.APP_RATE_LIMIT,
                priority=index,
            )
        )

    return apps


def validate_config(apps: List[BackupApp]) -> Tuple[bool, List[str]]:
    errors = []

    for index, app in enumerate(apps):
        if not app.app_id:
            errors.append(f"App at index {index} missing appId")
        if not app.name:
            errors.append(f"App at index {index} missing name")
        if app.is_backup and not app.access_token:
            errors.append(f'Backup app "{app.name}" missing accessToken')
        if app.rate_limit <= 0:
            errors.append(f'App "{app.name}" has invalid rateLimit')
        if app.priority <= 0:
            errors.append(f'App "{app.name}" has invalid priority')

    return len(errors) == 0, errors


def get_total_capacity(apps: List[BackupApp]) -> int:
    """Calls per hour across all apps"""
    return sum(app.rate_limit for app in apps)


def get_app_by_id(apps: List[BackupApp], app_id: str) -> Optional[BackupApp]:
    return next((app for app in apps if app.app_id == app_id), None)
