"""
Live Status Prober - Is a channel broadcasting right now?

The cast subsystem only depends on the LiveStatusProber interface.
YouTubeLiveProber answers it with the YouTube Data API v3 over HTTPS.

Usage:
    prober = YouTubeLiveProber(api_key)
    status = prober.check_live("UCxxxxxxxx")
    if status.is_live:
        sessions.start_cast(status.item_id, device_id)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import logging

import requests

from .errors import UpstreamServiceError
from .types import LiveState, LiveStatus

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"
REQUEST_TIMEOUT_S = 10.0


class LiveStatusProber(ABC):
    """Capability: report the live status of a channel."""

    @abstractmethod
    def check_live(self, channel_id: str) -> LiveStatus:
        """
        Query the live status of one channel.

        Raises:
            UpstreamServiceError: If the upstream service cannot answer
        """
        pass


class YouTubeLiveProber(LiveStatusProber):
    """
    YouTube Data API v3 implementation.

    A live search hit is confirmed against the video resource
    (liveBroadcastContent). Without a live hit, an upcoming broadcast is
    reported as UPCOMING so the caller can tell it apart from nothing.
    """

    def __init__(self, api_key: str, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT_S):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise UpstreamServiceError("YouTube API key is not configured", status_code=401)
        query = dict(params)
        query["key"] = self.api_key
        try:
            resp = self.session.get(f"{API_BASE}/{path}", params=query, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamServiceError(f"YouTube API request failed: {e}") from e

        if resp.status_code == 403:
            raise UpstreamServiceError("YouTube API quota exceeded or access denied", status_code=403)
        if resp.status_code == 401:
            raise UpstreamServiceError("YouTube API authentication failed", status_code=401)
        if resp.status_code >= 400:
            raise UpstreamServiceError(f"YouTube API error: HTTP {resp.status_code}",
                                       status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamServiceError(f"Invalid YouTube API response: {e}") from e

    def _search(self, channel_id: str, event_type: str) -> Optional[Dict[str, Any]]:
        data = self._get("search", {
            "part": "snippet",
            "channelId": channel_id,
            "eventType": event_type,
            "type": "video",
            "maxResults": 1,
        })
        items = data.get("items") or []
        return items[0] if items else None

    def _video(self, video_id: str) -> Optional[Dict[str, Any]]:
        data = self._get("videos", {"part": "snippet,liveStreamingDetails", "id": video_id})
        items = data.get("items") or []
        return items[0] if items else None

    def check_live(self, channel_id: str) -> LiveStatus:
        hit = self._search(channel_id, "live")
        if hit:
            video_id = (hit.get("id") or {}).get("videoId")
            video = self._video(video_id) if video_id else None
            snippet = (video or hit).get("snippet") or {}
            if video and snippet.get("liveBroadcastContent") == "live":
                logger.info(f"Live stream found for {channel_id}: {video_id}")
                return LiveStatus(
                    state=LiveState.LIVE,
                    item_id=video_id,
                    title=snippet.get("title"),
                    channel_title=snippet.get("channelTitle"),
                    thumbnail=_thumbnail(snippet),
                )

        upcoming = self._search(channel_id, "upcoming")
        if upcoming:
            video_id = (upcoming.get("id") or {}).get("videoId")
            snippet = upcoming.get("snippet") or {}
            scheduled = None
            video = self._video(video_id) if video_id else None
            if video:
                start = (video.get("liveStreamingDetails") or {}).get("scheduledStartTime")
                if start:
                    scheduled = _parse_rfc3339(start)
            logger.info(f"Upcoming stream for {channel_id}: {video_id}")
            return LiveStatus(
                state=LiveState.UPCOMING,
                item_id=video_id,
                title=snippet.get("title"),
                channel_title=snippet.get("channelTitle"),
                thumbnail=_thumbnail(snippet),
                scheduled_at=scheduled,
            )

        logger.info(f"No live stream for {channel_id}")
        return LiveStatus.not_live()


def _thumbnail(snippet: Dict[str, Any]) -> Optional[str]:
    thumbs = snippet.get("thumbnails") or {}
    for size in ("high", "medium", "default"):
        if size in thumbs:
            return thumbs[size].get("url")
    return None


def _parse_rfc3339(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
