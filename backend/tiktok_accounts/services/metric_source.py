"""
External metric source.

Fetches the current public profile and counters of a TikTok account.
The core only depends on the MetricSource contract; HttpMetricSource is
the production implementation over a TikTok user-info HTTP API.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from tiktok_accounts.config import get_settings
from tiktok_accounts.utils.errors import (
    NotFoundError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)


logger = logging.getLogger(__name__)


@dataclass
class MetricSample:
    """
    One freshly fetched sample for one account.

    daily_uploads may be None when the source cannot report it; ingestion
    then derives it from the previous day's video count.
    """
    account_name: str
    follower_count: int
    following_count: int
    total_likes: int
    video_count: int
    nickname: Optional[str] = None
    uid: Optional[str] = None
    region: Optional[str] = None
    daily_uploads: Optional[int] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_name": self.account_name,
            "nickname": self.nickname,
            "uid": self.uid,
            "region": self.region,
            "follower_count": self.follower_count,
            "following_count": self.following_count,
            "total_likes": self.total_likes,
            "video_count": self.video_count,
            "daily_uploads": self.daily_uploads,
            "captured_at": self.captured_at.isoformat(),
        }


class MetricSource(ABC):
    """Contract of the external metric source."""

    @abstractmethod
    def fetch_sample(self, account_name: str, timeout: Optional[float] = None) -> MetricSample:
        """
        Fetch the current sample for an account.

        Args:
            account_name: TikTok handle (without @)
            timeout: Upper bound in seconds for the whole fetch

        Returns:
            MetricSample

        Raises:
            NotFoundError: If the account does not exist upstream
            UpstreamTimeoutError: If the source did not answer in time
            UpstreamUnavailableError: On any other upstream failure
        """

    def validate_account(self, account_name: str, timeout: Optional[float] = None) -> bool:
        """Return True if the account exists upstream."""
        try:
            self.fetch_sample(account_name, timeout)
        except NotFoundError:
            return False
        return True


class HttpMetricSource(MetricSource):
    """TikTok user-info API client (RapidAPI style)."""

    STATUS_OPERATIONAL = "operational"
    STATUS_TIMEOUT = "timeout"
    STATUS_UNAVAILABLE = "unavailable"

    # Known public account used to check availability
    PROBE_ACCOUNT = "tiktok"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.metric_source_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.metric_source_api_key
        self.timeout = timeout or settings.metric_source_timeout_seconds
        self.session = session or requests.Session()

        host = self.base_url.split("://", 1)[-1].split("/", 1)[0]
        self.headers = {"x-rapidapi-host": host}
        if self.api_key:
            self.headers["x-rapidapi-key"] = self.api_key

    def fetch_sample(self, account_name: str, timeout: Optional[float] = None) -> MetricSample:
        username = account_name.strip().lstrip("@")
        if not username:
            raise ValueError("account_name cannot be empty")

        url = f"{self.base_url}/user/info"
        try:
            response = self.session.get(
                url,
                headers=self.headers,
                params={"uniqueId": username},
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as e:
            logger.warning("Metric source timed out for %s", username)
            raise UpstreamTimeoutError("Metric source timed out", username) from e
        except requests.RequestException as e:
            logger.error("Metric source request failed for %s: %s", username, e)
            raise UpstreamUnavailableError("Metric source request failed", username) from e

        if response.status_code == 404:
            raise NotFoundError("tiktok_user", username)
        if response.status_code != 200:
            raise UpstreamUnavailableError(
                "Metric source returned an error status",
                username,
                {"status_code": response.status_code}
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError("Metric source returned invalid JSON", username) from e

        try:
            return self._parse_user_info(username, data)
        except (TypeError, ValueError, AttributeError) as e:
            logger.error("Metric source returned a malformed payload for %s: %s", username, e)
            raise UpstreamUnavailableError(
                "Metric source returned a malformed payload",
                username,
                {"reason": "bad_payload"}
            ) from e

    def status(self) -> str:
        """Probe the upstream with a known account."""
        try:
            self.fetch_sample(self.PROBE_ACCOUNT)
        except UpstreamTimeoutError:
            return self.STATUS_TIMEOUT
        except (UpstreamUnavailableError, NotFoundError):
            return self.STATUS_UNAVAILABLE
        return self.STATUS_OPERATIONAL

    def _parse_user_info(self, username: str, data: Dict[str, Any]) -> MetricSample:
        status_code = data.get("statusCode", 0)
        user_info = data.get("userInfo") or {}
        user = user_info.get("user") or {}
        stats = user_info.get("stats") or {}

        # 10221/10222: user banned or does not exist
        if status_code in (10221, 10222) or (status_code == 0 and not user):
            raise NotFoundError("tiktok_user", username, {"status_code": status_code})
        if status_code != 0:
            raise UpstreamUnavailableError(
                "Metric source reported an error",
                username,
                {"status_code": status_code, "status_msg": data.get("status_msg")}
            )

        return MetricSample(
            account_name=user.get("uniqueId") or username,
            nickname=user.get("nickname"),
            uid=str(user["id"]) if user.get("id") is not None else None,
            region=user.get("region"),
            follower_count=int(stats.get("followerCount", 0)),
            following_count=int(stats.get("followingCount", 0)),
            total_likes=int(stats.get("heartCount", stats.get("heart", 0))),
            video_count=int(stats.get("videoCount", 0)),
        )
