"""
User directory client: resolves recipient contact details from the user service.

Lookups are cached per user id for a short TTL so that a burst of email
notifications (or a digest run) does not hammer the user service. Failed
lookups are never cached.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from cachetools import TTLCache

from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


SERVICE_NAME = "communication-service"
DEFAULT_TTL_SECONDS = 300
DEFAULT_CACHE_SIZE = 10_000


@dataclass(frozen=True)
class UserInfo:
    """Contact details of a notification recipient."""
    id: str
    email: Optional[str]
    first_name: str = ""
    last_name: str = ""
    preferred_language: Optional[str] = None
    timezone: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UserInfo":
        """Build from the user service response (camelCase or snake_case keys)."""
        if isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if "id" not in payload:
            raise ValueError("User payload has no id")
        return cls(
            id=str(payload["id"]),
            email=payload.get("email") or None,
            first_name=payload.get("firstName") or payload.get("first_name") or "",
            last_name=payload.get("lastName") or payload.get("last_name") or "",
            preferred_language=payload.get("preferredLanguage") or payload.get("preferred_language"),
            timezone=payload.get("timezone"),
        )


class UserDirectory:
    """
    Cached HTTP client for ``GET {base_url}/api/users/{id}``.

    Args:
        base_url: User service base URL
        service_api_key: Value for the X-Service-Key header
        ttl_seconds: Cache lifetime per user id
        timer: Monotonic time source for the cache (injectable for tests)
        client: Optional preconfigured httpx.Client
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        service_api_key: str = "",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timer: Callable[[], float] = time.monotonic,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        maxsize: int = DEFAULT_CACHE_SIZE,
    ):
        self._base_url = base_url.rstrip("/")
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {
            "X-Service-Name": SERVICE_NAME,
            "X-Service-Key": service_api_key,
            "Accept": "application/json",
        }

    def get_user_info(self, user_id: str) -> Optional[UserInfo]:
        """
        Resolve a user's contact details.

        Returns:
            UserInfo, or None if the lookup failed or the user does not exist
        """
        with self._lock:
            cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        url = f"{self._base_url}/api/users/{user_id}"
        try:
            response = self._client.get(url, headers=self._headers)
            response.raise_for_status()
            info = UserInfo.from_payload(response.json())
        except httpx.HTTPError as e:
            logger.error(
                f"Failed to get user info: {e}",
                extra={"user_id": user_id},
            )
            return None
        except ValueError as e:
            logger.error(
                f"Invalid user info payload: {e}",
                extra={"user_id": user_id},
            )
            return None

        with self._lock:
            self._cache[user_id] = info
        return info

    def invalidate(self, user_id: Optional[str] = None) -> None:
        """Drop one cached user, or the whole cache when user_id is None."""
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    def close(self) -> None:
        self._client.close()
