"""
OAuth token freshness for installed locations.
We never issue tokens here; we only decide when a refresh is due and store the result.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from ghl_ingest.utils.timestamps import utcnow, parse_timestamp

logger = logging.getLogger(__name__)

REFRESH_BUFFER_HOURS = 4


def token_needs_refresh(
    oauth: Optional[dict],
    buffer_hours: int = REFRESH_BUFFER_HOURS,
    now: Optional[datetime] = None,
) -> bool:
    """
    True when tokens exist, reauth isn't already required, and the access token
    expires within the buffer (or has no recorded expiry).
    """
    if not oauth or not oauth.get("accessToken") or not oauth.get("refreshToken"):
        return False
    if oauth.get("needsReauth"):
        return False

    expires_at = parse_timestamp(oauth.get("expiresAt"))
    if expires_at is None:
        return True

    now = now or utcnow()
    return expires_at - now <= timedelta(hours=buffer_hours)


def apply_token_response(location, data: dict, now: Optional[datetime] = None) -> None:
    """Write a GHL token response onto location.oauth."""
    now = now or utcnow()
    oauth = dict(location.oauth or {})
    oauth["accessToken"] = data.get("access_token", oauth.get("accessToken"))
    oauth["refreshToken"] = data.get("refresh_token", oauth.get("refreshToken"))
    expires_in = data.get("expires_in")
    if expires_in:
        oauth["expiresAt"] = (now + timedelta(seconds=int(expires_in))).isoformat()
    oauth["lastRefreshed"] = now.isoformat()
    oauth.pop("lastRefreshError", None)
    oauth["needsReauth"] = False
    # Reassign so the JSON column is flagged dirty
    location.oauth = oauth


def record_refresh_failure(location, error: Exception, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    oauth = dict(location.oauth or {})
    oauth["lastRefreshError"] = str(error)[:500]
    oauth["lastRefreshAttempt"] = now.isoformat()
    status_code = getattr(error, "status_code", None)
    if status_code in (400, 401):
        # Refresh token rejected; only a new install will fix it
        oauth["needsReauth"] = True
        location.needs_reauth = True
        location.reauth_reason = "refresh_token_rejected"
    location.oauth = oauth
