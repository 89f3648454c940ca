"""
Holding-period timer.

Some platforms require a mandatory wait between the seller granting the agent
custodial access and the agent being promoted to primary owner. Everything here
is derived from stored timestamps and the caller's notion of "now"; nothing
runs in the background.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from config import Config
from models import Deal, PlatformType
from utils.datetime_helpers import ensure_aware_utc, format_duration, isoformat_or_none

logger = logging.getLogger(__name__)

# Used only when the listing catalog did not supply a platform for the deal.
# Order matters: the first matching hint wins.
PLATFORM_HINTS: Tuple[Tuple[PlatformType, Tuple[str, ...]], ...] = (
    (PlatformType.YOUTUBE, ("youtube.com", "youtu.be", "youtube")),
    (PlatformType.FACEBOOK, ("facebook.com", "fb.com", "facebook")),
    (PlatformType.INSTAGRAM, ("instagram.com", "instagram")),
    (PlatformType.TWITTER, ("twitter.com", "x.com", "twitter")),
    (PlatformType.TIKTOK, ("tiktok.com", "tiktok")),
    (PlatformType.TELEGRAM, ("t.me", "telegram")),
    (PlatformType.TWITCH, ("twitch.tv", "twitch")),
)


def normalize_platform(value: Optional[str]) -> Optional[PlatformType]:
    """Map a catalog-provided platform string onto PlatformType, or None if unknown"""
    if not value:
        return None
    try:
        return PlatformType(value.strip().lower())
    except ValueError:
        return None


def classify_platform(listing_platform: Optional[str], channel_title: Optional[str] = None) -> PlatformType:
    """
    Decide the platform type of a deal's asset.

    The platform snapshotted from the listing catalog is authoritative. The
    title is only inspected for the hints above when no usable platform was
    supplied, and anything unrecognised is PlatformType.OTHER.
    """
    platform = normalize_platform(listing_platform)
    if platform is not None:
        return platform

    title = (channel_title or "").lower()
    for candidate, hints in PLATFORM_HINTS:
        if any(hint in title for hint in hints):
            logger.info(f"🔎 PLATFORM_FALLBACK: classified '{channel_title}' as {candidate.value} from title")
            return candidate
    return PlatformType.OTHER


def requires_holding_period(platform: PlatformType) -> bool:
    return platform.value in Config.HOLD_REQUIRED_PLATFORMS


def holding_period_length() -> timedelta:
    return timedelta(days=Config.HOLDING_PERIOD_DAYS)


def compute_expiry(started_at: datetime, length: Optional[timedelta] = None) -> datetime:
    return ensure_aware_utc(started_at) + (length if length is not None else holding_period_length())


def remaining_duration(expires_at: Optional[datetime], now: datetime) -> timedelta:
    """Time left until expiry, never negative. No expiry means nothing to wait for."""
    if expires_at is None:
        return timedelta(0)
    remaining = ensure_aware_utc(expires_at) - ensure_aware_utc(now)
    return remaining if remaining > timedelta(0) else timedelta(0)


def has_elapsed(expires_at: Optional[datetime], now: datetime) -> bool:
    """True at or after the expiry instant"""
    if expires_at is None:
        return True
    return ensure_aware_utc(now) >= ensure_aware_utc(expires_at)


@dataclass
class HoldingPeriodState:
    """Read-only view of a deal's hold, used by status projections"""
    required: bool
    started_at: Optional[datetime]
    expires_at: Optional[datetime]
    elapsed: bool
    remaining: timedelta

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "started_at": isoformat_or_none(self.started_at),
            "expires_at": isoformat_or_none(self.expires_at),
            "elapsed": self.elapsed,
            "remaining_seconds": int(self.remaining.total_seconds()),
            "remaining_display": format_duration(self.remaining) if self.required and not self.elapsed else None,
        }


def holding_period_state(deal: Deal, now: datetime) -> HoldingPeriodState:
    """Hold state of a deal at `now`. Elapsed is computed from the clock, not just the stored flag."""
    started_at = ensure_aware_utc(deal.holding_period_started_at)
    expires_at = ensure_aware_utc(deal.holding_period_expires_at)
    required = started_at is not None
    elapsed = bool(deal.holding_period_elapsed) or (required and has_elapsed(expires_at, now))
    return HoldingPeriodState(
        required=required,
        started_at=started_at,
        expires_at=expires_at,
        elapsed=elapsed,
        remaining=timedelta(0) if elapsed else remaining_duration(expires_at, now),
    )
