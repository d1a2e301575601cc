"""
Unit tests for backup app configuration and app rotation
"""

import pytest
from datetime import datetime, timedelta
from core.config import Settings
from core.exceptions import AllAppsExhaustedError, AppRotationError
from facebook.app_rotation import AppRotationService
from facebook.backup_apps import (
    BackupApp,
    MAIN_APP_ID,
    load_backup_apps,
    validate_config,
    get_total_capacity,
    get_app_by_id,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 15, 10, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_apps(rate_limit=200):
    return [
        BackupApp(app_id=MAIN_APP_ID, name="Main", rate_limit=rate_limit, priority=1, is_backup=False),
        BackupApp(app_id="backup_1", name="Backup 1", access_token="backup-token-1-abcdef", rate_limit=rate_limit, priority=2),
        BackupApp(app_id="backup_2", name="Backup 2", access_token="backup-token-2-abcdef", rate_limit=rate_limit, priority=3),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rotation(clock):
    return AppRotationService(apps=make_apps(), clock=clock)


class TestBackupApps:
    """Test app configuration loading and validation"""

    def test_load_from_settings(self):
        settings = Settings(
            BACKUP_APP_1_ID="111",
            BACKUP_APP_1_TOKEN="token-111-abcdef",
            BACKUP_APP_2_ID=None,
        )

        apps = load_backup_apps(settings)

        assert [app.app_id for app in apps] == [MAIN_APP_ID, "111"]
        assert apps[0].access_token is None
        assert apps[1].priority == 2
        assert apps[1].type == "backup"

    def test_backup_without_token_is_invalid(self):
        apps = make_apps()
        apps[1].access_token = None

        valid, errors = validate_config(apps)

        assert valid is False
        assert 'Backup app "Backup 1" missing accessToken' in errors

    def test_public_dict_hides_token(self):
        public = make_apps()[1].public_dict()

        assert "accessToken" not in public
        assert public["hasToken"] is True

    def test_capacity_and_lookup(self):
        apps = make_apps()

        assert get_total_capacity(apps) == 600
        assert get_app_by_id(apps, "backup_2").name == "Backup 2"
        assert get_app_by_id(apps, "missing") is None

    def test_invalid_config_raises(self):
        apps = make_apps()
        apps[2].access_token = None

        with pytest.raises(AppRotationError):
            AppRotationService(apps=apps)


class TestAppRotation:
    """Test priority selection, exhaustion and reset"""

    def test_main_app_uses_user_token(self, rotation):
        app = rotation.get_next_available_app("user-token-abcdef")

        assert app.app_id == MAIN_APP_ID
        assert app.access_token == "user-token-abcdef"
        # The configured app is not modified
        assert rotation.apps[0].access_token is None

    def test_without_user_token_backup_is_used(self, rotation):
        assert rotation.get_next_available_app(None).app_id == "backup_1"

    def test_rotates_after_exhaustion(self, rotation):
        rotation.mark_exhausted(MAIN_APP_ID)

        app = rotation.get_next_available_app("user-token-abcdef")

        assert app.app_id == "backup_1"
        assert app.access_token == "backup-token-1-abcdef"

    def test_record_call_exhausts_at_limit(self, clock):
        rotation = AppRotationService(apps=make_apps(rate_limit=2), clock=clock)

        rotation.record_call(MAIN_APP_ID)
        assert rotation.is_app_available(MAIN_APP_ID) is True
        rotation.record_call(MAIN_APP_ID)

        assert rotation.is_app_available(MAIN_APP_ID) is False
        assert rotation.get_remaining_capacity(MAIN_APP_ID) == 0

    def test_all_exhausted_raises(self, rotation):
        for app_id in (MAIN_APP_ID, "backup_1", "backup_2"):
            rotation.mark_exhausted(app_id)

        with pytest.raises(AllAppsExhaustedError):
            rotation.get_next_available_app("user-token-abcdef")

    def test_ad_account_limit_detected(self, rotation, clock):
        rotation.mark_exhausted(MAIN_APP_ID)
        clock.advance(seconds=3)
        rotation.mark_exhausted("backup_1")

        assert rotation.is_ad_account_limited() is True

    def test_spread_out_exhaustion_is_not_ad_account_limit(self, rotation, clock):
        rotation.mark_exhausted(MAIN_APP_ID)
        clock.advance(seconds=30)
        rotation.mark_exhausted("backup_1")

        assert rotation.is_ad_account_limited() is False

    def test_hourly_reset(self, rotation, clock):
        rotation.mark_exhausted(MAIN_APP_ID)
        clock.advance(minutes=61)

        app = rotation.get_next_available_app("user-token-abcdef")

        assert app.app_id == MAIN_APP_ID
        assert rotation.usage[MAIN_APP_ID] == 0

    def test_force_reset(self, rotation):
        rotation.mark_exhausted("backup_1")

        rotation.force_reset()

        assert rotation.exhausted_apps == set()
        assert rotation.get_summary()["availableApps"] == 3

    def test_summary_and_status(self, rotation, clock):
        rotation.record_call(MAIN_APP_ID)
        rotation.mark_exhausted("backup_2")
        clock.advance(minutes=20)

        summary = rotation.get_summary()
        status = {app["appId"]: app["status"] for app in rotation.get_status()}

        assert summary["totalApps"] == 3
        assert summary["exhaustedApps"] == 1
        assert summary["availableApps"] == 2
        assert summary["totalCapacity"] == 600
        assert summary["minutesUntilReset"] == 40
        assert status == {MAIN_APP_ID: "active", "backup_1": "available", "backup_2": "exhausted"}
