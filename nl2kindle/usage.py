"""Monthly conversion quotas and usage alerts."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .logger import get_logger
from .models import utcnow
from .store import ConversionStore

logger = get_logger("usage")

TIER_STARTER = "starter"
TIER_PRO = "pro"

WARNING_THRESHOLD = 0.8
LIMIT_REACHED_THRESHOLD = 0.95

ALERT_APPROACHING = "approaching_limit"
ALERT_LIMIT_REACHED = "limit_reached"


@dataclass
class UsageInfo:
    articles_used: int
    articles_limit: int
    subscription_tier: str
    subscription_status: str
    can_convert: bool
    days_until_reset: int

    @property
    def usage_ratio(self) -> float:
        return self.articles_used / self.articles_limit if self.articles_limit else 1.0


@dataclass
class QuotaDecision:
    can_convert: bool
    reason: Optional[str] = None


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(now: datetime) -> datetime:
    start = month_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def days_until_reset(now: datetime) -> int:
    return max(0, math.ceil((next_month_start(now) - now).total_seconds() / 86400))


class UsageTracker:
    """Counts conversions created this calendar month (naive UTC) per user."""

    def __init__(
        self,
        store: ConversionStore,
        notifier=None,
        *,
        starter_limit: int = 100,
        pro_limit: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.starter_limit = starter_limit
        self.pro_limit = pro_limit
        self._clock = clock

    def get_user_usage(self, user_id: str) -> UsageInfo:
        now = self._clock()
        subscription = self.store.get_active_subscription(user_id)
        tier = TIER_PRO if subscription is not None else TIER_STARTER
        limit = self.pro_limit if tier == TIER_PRO else self.starter_limit
        used = self.store.count_created_since(user_id, month_start(now))
        return UsageInfo(
            articles_used=used,
            articles_limit=limit,
            subscription_tier=tier,
            subscription_status=subscription.status if subscription is not None else "none",
            can_convert=used < limit,
            days_until_reset=days_until_reset(now),
        )

    def can_user_convert(self, user_id: str) -> QuotaDecision:
        usage = self.get_user_usage(user_id)
        if usage.can_convert:
            return QuotaDecision(True)
        return QuotaDecision(
            False,
            f"Monthly limit reached ({usage.articles_used}/{usage.articles_limit}). "
            f"Upgrade your plan or wait {usage.days_until_reset} days for reset.",
        )

    def check_and_send_usage_alerts(self, user_id: str) -> Optional[str]:
        """Send at most one alert for the user's current usage; never raises.

        Returns the alert type that was triggered, if any.
        """
        try:
            usage = self.get_user_usage(user_id)
            if usage.usage_ratio >= LIMIT_REACHED_THRESHOLD and not usage.can_convert:
                alert = ALERT_LIMIT_REACHED
            elif usage.usage_ratio >= WARNING_THRESHOLD:
                alert = ALERT_APPROACHING
            else:
                return None

            logger.info(f"Usage alert {alert} for user {user_id} ({usage.articles_used}/{usage.articles_limit})")
            if self.notifier is None:
                return alert

            settings = self.store.get_user_settings(user_id)
            if settings is None or not settings.notifications_enabled:
                return alert
            recipient = settings.account_email
            if alert == ALERT_LIMIT_REACHED:
                self.notifier.send_limit_reached(recipient, usage)
            else:
                self.notifier.send_usage_warning(recipient, usage)
            return alert
        except Exception as e:  # noqa: BLE001
            logger.error(f"Usage alert check failed for user {user_id}: {e}")
            return None


__all__ = ["UsageTracker", "UsageInfo", "QuotaDecision", "days_until_reset"]
