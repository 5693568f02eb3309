"""
Usage quota accounting.

Explanation counters are kept per user per day (one per mode); export
counters per user per month. Charges and refunds go through single
conditional UPDATE statements so concurrent sessions never lose updates.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, ContextManager, Dict, Optional

from sqlalchemy.orm import Session

from core.constants import DEFAULT_TIER, EXPORT_KINDS, EXPORT_LIMITS, TIER_LIMITS
from core.models import ChargeResult, ExplanationMode
from data.repositories import UsageRepository, UserRepository

logger = logging.getLogger(__name__)


def today_key(now: Optional[datetime] = None) -> str:
    """Daily usage key (YYYY-MM-DD, UTC)."""
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%d')


def month_key(now: Optional[datetime] = None) -> str:
    """Monthly usage key (YYYY-MM, UTC)."""
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m')


def get_limit(tier: str, mode: str) -> Optional[int]:
    """Daily limit for a tier and mode. None means unlimited."""
    limits = TIER_LIMITS.get(tier, TIER_LIMITS[DEFAULT_TIER])
    return limits[mode]


def get_export_limit(tier: str, kind: str) -> Optional[int]:
    """Monthly export limit for a tier. None means unlimited."""
    limits = EXPORT_LIMITS.get(tier, EXPORT_LIMITS[DEFAULT_TIER])
    return limits[kind]


class UserQuota:
    """
    Quota ledger for one user.

    Implements the orchestrator's ledger interface: `remaining`, `charge`, `refund`.
    """

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]],
        user_id: str,
        clock: Callable[[], datetime] = None
    ):
        """
        Args:
            session_factory: Callable returning a session context manager
            user_id: User whose counters are charged
            clock: Optional clock returning the current UTC datetime
        """
        self._session_factory = session_factory
        self.user_id = user_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _profile(self, session: Session):
        user = UserRepository(session).get_or_create(self.user_id)
        return user.tier, bool(user.is_admin)

    def remaining(self, mode: ExplanationMode) -> Optional[int]:
        """Remaining explanations for today. None means unlimited."""
        mode = ExplanationMode(mode)
        with self._session_factory() as session:
            tier, is_admin = self._profile(session)
            limit = get_limit(tier, mode.value)
            if is_admin or limit is None:
                return None
            used = UsageRepository(session).get_daily(self.user_id, today_key(self._clock()))
            return max(0, limit - used[mode.value])

    def charge(self, mode: ExplanationMode, count: int) -> ChargeResult:
        """
        Atomically charge `count` explanations against today's counter.

        The increment only applies if the new total stays within the tier
        limit; otherwise nothing changes and `ok` is False.
        """
        mode = ExplanationMode(mode)
        if count <= 0:
            return ChargeResult(ok=True, remaining=self.remaining(mode))

        with self._session_factory() as session:
            tier, is_admin = self._profile(session)
            if is_admin:
                logger.info(f"Admin user {self.user_id}: skipping charge of {count} {mode.value}")
                return ChargeResult(ok=True, remaining=None)

            limit = get_limit(tier, mode.value)
            usage = UsageRepository(session)
            day = today_key(self._clock())
            ok = usage.increment_daily(self.user_id, day, mode.value, count, limit)
            remaining = None
            if limit is not None:
                remaining = max(0, limit - usage.get_daily(self.user_id, day)[mode.value])

        if ok:
            logger.info(f"Charged {count} {mode.value} explanations for user {self.user_id}")
        else:
            logger.info(
                f"Charge of {count} {mode.value} explanations rejected for user "
                f"{self.user_id} ({remaining} remaining)"
            )
        return ChargeResult(ok=ok, remaining=remaining)

    def refund(self, mode: ExplanationMode, count: int) -> None:
        """Atomically give back `count` explanations, flooring the counter at zero."""
        mode = ExplanationMode(mode)
        if count <= 0:
            return

        with self._session_factory() as session:
            _, is_admin = self._profile(session)
            if is_admin:
                return
            UsageRepository(session).decrement_daily(
                self.user_id, today_key(self._clock()), mode.value, count
            )
        logger.info(f"Refunded {count} {mode.value} explanations for user {self.user_id}")

    def charge_export(self, kind: str, count: int = 1) -> ChargeResult:
        """
        Charge an export against this month's counter.

        Raises:
            ValueError: If the export kind is unknown
        """
        if kind not in EXPORT_KINDS:
            raise ValueError(f"Unknown export kind: '{kind}'")

        with self._session_factory() as session:
            tier, is_admin = self._profile(session)
            if is_admin:
                return ChargeResult(ok=True, remaining=None)

            limit = get_export_limit(tier, kind)
            usage = UsageRepository(session)
            month = month_key(self._clock())
            ok = usage.increment_monthly(self.user_id, month, kind, count, limit)
            remaining = None
            if limit is not None:
                remaining = max(0, limit - usage.get_monthly(self.user_id, month)[kind])

        return ChargeResult(ok=ok, remaining=remaining)

    def get_usage(self) -> Dict:
        """Usage snapshot: tier, today's counters and this month's exports with limits."""
        now = self._clock()
        with self._session_factory() as session:
            tier, is_admin = self._profile(session)
            usage = UsageRepository(session)
            daily = usage.get_daily(self.user_id, today_key(now))
            monthly = usage.get_monthly(self.user_id, month_key(now))

        return {
            'user_id': self.user_id,
            'tier': tier,
            'is_admin': is_admin,
            'day': today_key(now),
            'month': month_key(now),
            'explanations': {
                mode.value: {'used': daily[mode.value], 'limit': get_limit(tier, mode.value)}
                for mode in ExplanationMode
            },
            'exports': {
                kind: {'used': monthly[kind], 'limit': get_export_limit(tier, kind)}
                for kind in EXPORT_KINDS
            }
        }


class QuotaService:
    """Creates per-user quota ledgers from a shared session factory."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]]):
        self._session_factory = session_factory

    def for_user(self, user_id: str) -> UserQuota:
        return UserQuota(self._session_factory, user_id)
