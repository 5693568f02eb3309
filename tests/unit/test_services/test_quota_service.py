"""
Unit tests for services.quota_service module.
"""
from datetime import datetime, timezone

import pytest

from core.models import ExplanationMode
from data.repositories import UserRepository
from services.quota_service import QuotaService, UserQuota, get_limit, month_key, today_key


class Clock:
    """Adjustable clock."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_user(db_manager, user_id, tier='basic', is_admin=False):
    with db_manager.session() as session:
        user = UserRepository(session).get_or_create(user_id, tier=tier)
        user.is_admin = is_admin


class TestKeys:
    """Tests for usage keys and limits."""

    def test_keys(self):
        now = datetime(2024, 3, 9, 23, 0, tzinfo=timezone.utc)

        assert today_key(now) == '2024-03-09'
        assert month_key(now) == '2024-03'

    def test_unknown_tier_uses_basic(self):
        assert get_limit('mystery', 'fast') == 5


class TestUserQuota:
    """Tests for charging and refunding explanation quota."""

    def test_new_user_remaining(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')

        assert quota.remaining(ExplanationMode.FAST) == 5
        assert quota.remaining(ExplanationMode.STANDARD) == 3
        assert quota.remaining(ExplanationMode.QUALITY) == 1

    def test_charge_within_limit(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')

        result = quota.charge(ExplanationMode.FAST, 3)

        assert result.ok
        assert result.remaining == 2
        assert quota.remaining(ExplanationMode.FAST) == 2

    def test_charge_over_limit_changes_nothing(self, db_manager):
        """Test a rejected charge leaves the counter untouched."""
        quota = UserQuota(db_manager.session, 'u1')
        quota.charge(ExplanationMode.FAST, 3)

        result = quota.charge(ExplanationMode.FAST, 3)

        assert not result.ok
        assert result.remaining == 2
        assert quota.get_usage()['explanations']['fast']['used'] == 3

    def test_charge_exactly_remaining(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')

        assert quota.charge(ExplanationMode.STANDARD, 3).ok
        assert quota.remaining(ExplanationMode.STANDARD) == 0

    def test_refund(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')
        quota.charge(ExplanationMode.FAST, 4)

        quota.refund(ExplanationMode.FAST, 1)

        assert quota.remaining(ExplanationMode.FAST) == 2

    def test_refund_floors_at_zero(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')
        quota.charge(ExplanationMode.FAST, 1)

        quota.refund(ExplanationMode.FAST, 10)

        assert quota.get_usage()['explanations']['fast']['used'] == 0

    def test_modes_are_independent(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')
        quota.charge(ExplanationMode.QUALITY, 1)

        assert quota.remaining(ExplanationMode.FAST) == 5
        assert not quota.charge(ExplanationMode.QUALITY, 1).ok

    def test_unlimited_tier(self, db_manager):
        make_user(db_manager, 'pro-user', tier='pro')
        quota = UserQuota(db_manager.session, 'pro-user')

        assert quota.remaining(ExplanationMode.QUALITY) is None
        result = quota.charge(ExplanationMode.QUALITY, 50)
        assert result.ok
        assert result.remaining is None
        assert quota.get_usage()['explanations']['quality']['used'] == 50

    def test_admin_bypasses_charging(self, db_manager):
        make_user(db_manager, 'admin', is_admin=True)
        quota = UserQuota(db_manager.session, 'admin')

        assert quota.charge(ExplanationMode.QUALITY, 10).ok
        quota.refund(ExplanationMode.QUALITY, 10)
        assert quota.get_usage()['explanations']['quality']['used'] == 0

    def test_counters_reset_daily(self, db_manager):
        clock = Clock(datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))
        quota = UserQuota(db_manager.session, 'u1', clock=clock)
        quota.charge(ExplanationMode.FAST, 5)
        assert quota.remaining(ExplanationMode.FAST) == 0

        clock.now = datetime(2024, 5, 2, 0, 1, tzinfo=timezone.utc)

        assert quota.remaining(ExplanationMode.FAST) == 5

    def test_users_are_independent(self, db_manager):
        service = QuotaService(db_manager.session)
        service.for_user('a').charge(ExplanationMode.FAST, 5)

        assert service.for_user('b').remaining(ExplanationMode.FAST) == 5


class TestExports:
    """Tests for monthly export counters."""

    def test_basic_cannot_export_hwp(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')

        result = quota.charge_export('hwp')

        assert not result.ok
        assert result.remaining == 0

    def test_pdf_limit(self, db_manager):
        quota = UserQuota(db_manager.session, 'u1')

        assert [quota.charge_export('pdf').ok for _ in range(4)] == [True, True, True, False]
        assert quota.get_usage()['exports']['pdf'] == {'used': 3, 'limit': 3}

    def test_unknown_kind(self, db_manager):
        with pytest.raises(ValueError):
            UserQuota(db_manager.session, 'u1').charge_export('docx')

    def test_usage_snapshot(self, db_manager):
        clock = Clock(datetime(2024, 5, 1, tzinfo=timezone.utc))
        quota = UserQuota(db_manager.session, 'u1', clock=clock)
        quota.charge(ExplanationMode.STANDARD, 2)

        usage = quota.get_usage()

        assert usage['tier'] == 'basic'
        assert usage['day'] == '2024-05-01'
        assert usage['month'] == '2024-05'
        assert usage['explanations']['standard'] == {'used': 2, 'limit': 3}
