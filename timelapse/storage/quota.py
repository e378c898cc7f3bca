"""
Storage admission control.

Checked once when a session starts (or resumes), never per tick: running
sessions are not throttled mid-run.
"""

from dataclasses import dataclass
from typing import Optional

from ..state.database import Database
from ..utils.config import Config
from ..utils.logger import get_logger


logger = get_logger(__name__)

MB = 1024 * 1024

SETTING_TOTAL_MB = 'max_total_storage_mb'
SETTING_SESSION_MB = 'max_session_storage_mb'

TOTAL_QUOTA_EXCEEDED = 'total_quota_exceeded'
SESSION_QUOTA_EXCEEDED = 'session_quota_exceeded'


@dataclass
class QuotaDecision:
    """Result of a quota check. current and limit are in bytes."""

    allowed: bool
    current: int
    limit: int
    reason: Optional[str] = None
    message: str = 'Storage quota OK'

    def to_dict(self) -> dict:
        return {
            'allowed': self.allowed,
            'reason': self.reason,
            'current': self.current,
            'limit': self.limit,
            'message': self.message,
        }


@dataclass
class Quotas:
    max_total_mb: int
    max_session_mb: int

    def to_dict(self) -> dict:
        return {'max_total_mb': self.max_total_mb, 'max_session_mb': self.max_session_mb}


class QuotaGuard:
    """Compares catalog usage against the configured ceilings."""

    def __init__(self, database: Database, default_total_mb: int = 1024, default_session_mb: int = 100):
        """
        Args:
            database: Catalog to read usage and settings from
            default_total_mb: Aggregate ceiling when no setting is stored
            default_session_mb: Per-session ceiling when no setting is stored
        """
        self.database = database
        self.default_total_mb = default_total_mb
        self.default_session_mb = default_session_mb

    @classmethod
    def from_config(cls, config: Config, database: Database) -> 'QuotaGuard':
        return cls(
            database,
            default_total_mb=int(config.policy('storage.max_total_storage_mb')),
            default_session_mb=int(config.policy('storage.max_session_storage_mb')),
        )

    def get_quotas(self) -> Quotas:
        return Quotas(
            max_total_mb=self._read_mb(SETTING_TOTAL_MB, self.default_total_mb),
            max_session_mb=self._read_mb(SETTING_SESSION_MB, self.default_session_mb),
        )

    def set_quotas(self, max_total_mb: int, max_session_mb: int) -> Quotas:
        """Persist new ceilings (megabytes)."""
        for name, value in (('max_total_mb', max_total_mb), ('max_session_mb', max_session_mb)):
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        self.database.set_setting(SETTING_TOTAL_MB, max_total_mb)
        self.database.set_setting(SETTING_SESSION_MB, max_session_mb)
        logger.info(f"Storage quotas set: total={max_total_mb}MB, per-session={max_session_mb}MB")
        return Quotas(max_total_mb, max_session_mb)

    def check_quota(self, session_id: Optional[str] = None) -> QuotaDecision:
        """
        Decide whether a capture may be admitted.

        Args:
            session_id: Also check this session's own usage when given

        Returns:
            QuotaDecision (denied when usage strictly exceeds a ceiling)
        """
        quotas = self.get_quotas()
        total_limit = quotas.max_total_mb * MB
        total = self.database.get_storage_stats().total_bytes

        if total > total_limit:
            decision = QuotaDecision(
                allowed=False,
                current=total,
                limit=total_limit,
                reason=TOTAL_QUOTA_EXCEEDED,
                message=(
                    f"Total storage quota exceeded "
                    f"({round(total / MB)}MB / {quotas.max_total_mb}MB)"
                ),
            )
            logger.warning(decision.message)
            return decision

        if session_id is not None:
            session_limit = quotas.max_session_mb * MB
            used = self.database.get_session_usage(session_id)
            if used > session_limit:
                decision = QuotaDecision(
                    allowed=False,
                    current=used,
                    limit=session_limit,
                    reason=SESSION_QUOTA_EXCEEDED,
                    message=(
                        f"Session storage quota exceeded "
                        f"({round(used / MB)}MB / {quotas.max_session_mb}MB)"
                    ),
                )
                logger.warning(f"[{session_id}] {decision.message}")
                return decision

        return QuotaDecision(allowed=True, current=total, limit=total_limit)

    def _read_mb(self, key: str, default: int) -> int:
        raw = self.database.get_setting(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid setting {key}={raw!r}")
            return default
