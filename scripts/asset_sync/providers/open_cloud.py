"""
Open Cloud asset host.

Uploads images as Decal assets through the Open Cloud assets API, then polls
the returned long-running operation until it reports the new asset id.
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .base import AssetHost, ConfigurationError, HostError, NetworkError, RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://apis.roblox.com/assets/v1"
API_KEY_HEADER = "x-api-key"
API_KEY_ENV = "ASSET_SYNC_API_KEY"
ASSET_TYPE = "Decal"
MODERATED_FALLBACK_NAME = "image"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


class OpenCloudAssetHost(AssetHost):
    """Asset host backed by the Open Cloud assets API."""

    name = "open-cloud"

    def __init__(self, config: Dict[str, Any], sleep: Callable[[float], None] = time.sleep):
        super().__init__(config)
        self.base_url = DEFAULT_BASE_URL
        self.api_key: Optional[str] = None
        self.user_id: Optional[int] = None
        self.group_id: Optional[int] = None
        self.timeout = 30.0
        self.poll_attempts = 6
        self.poll_delay = 2.0
        self.poll_step = 0.05
        self._sleep = sleep

        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'asset-sync/0.1.0'
        })

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        errors = []
        if not (config.get("api_key") or os.getenv(API_KEY_ENV)):
            errors.append(f"api_key is required (or set {API_KEY_ENV})")

        user_id = config.get("user_id")
        group_id = config.get("group_id")
        if (user_id is None) == (group_id is None):
            errors.append("exactly one of user_id or group_id must be set")

        if int(config.get("poll_attempts", 6)) < 1:
            errors.append("poll_attempts must be at least 1")
        return errors

    def configure(self, config: Dict[str, Any]) -> None:
        errors = self.validate_config(config)
        if errors:
            raise ConfigurationError("; ".join(errors), self.name)

        self.api_key = config.get("api_key") or os.getenv(API_KEY_ENV)
        self.base_url = config.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self.user_id = config.get("user_id")
        self.group_id = config.get("group_id")
        self.timeout = float(config.get("timeout", 30.0))
        self.poll_attempts = int(config.get("poll_attempts", 6))
        self.poll_delay = float(config.get("poll_delay", 2.0))
        self.poll_step = float(config.get("poll_step", 0.05))

        self.session.headers[API_KEY_HEADER] = self.api_key
        self._configured = True

    def upload(self, data: bytes, display_name: str) -> int:
        if not self._configured:
            raise HostError("Host is not configured", self.name)

        response = self._upload_raw(data, display_name)
        if "operationId" not in response and "moderated" in response.get("message", ""):
            logger.warning(
                f"Image name '{display_name}' was moderated, retrying with a generic name"
            )
            response = self._upload_raw(data, MODERATED_FALLBACK_NAME)

        operation_id = response.get("operationId")
        if not operation_id:
            raise HostError(
                f"Upload of '{display_name}' failed: {response.get('message', response)}", self.name
            )

        return self._poll_operation(operation_id)

    def _creation_context(self) -> Dict[str, Any]:
        if self.user_id is not None:
            return {"creator": {"userId": str(self.user_id)}}
        return {"creator": {"groupId": str(self.group_id)}}

    def _upload_raw(self, data: bytes, display_name: str) -> Dict[str, Any]:
        metadata = {
            "assetType": ASSET_TYPE,
            "displayName": display_name,
            "description": "Uploaded by asset-sync",
            "creationContext": self._creation_context(),
        }
        files = {
            "request": (None, json.dumps(metadata), "application/json"),
            "fileContent": ("image", data, "image/png"),
        }

        try:
            response = self.session.post(f"{self.base_url}/assets", files=files, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Failed to upload '{display_name}': {e}", self.name) from e

        return self._json_or_raise(response)

    def _poll_operation(self, operation_id: str) -> int:
        url = f"{self.base_url}/operations/{operation_id}"
        logger.debug(f"Polling operation until complete: {operation_id}")

        for attempt in range(self.poll_attempts):
            try:
                response = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as e:
                raise NetworkError(f"Failed to poll operation {operation_id}: {e}", self.name) from e

            # The asset already exists here; a 429 only delays the next poll
            try:
                body = self._json_or_raise(response)
            except RateLimitedError as e:
                delay = e.retry_after if e.retry_after is not None else self.poll_delay
                logger.warning(f"Rate limited while polling {operation_id}, waiting {delay:.1f}s")
                self._sleep(delay)
                continue

            result = body.get("response")
            if result:
                if "assetId" in result:
                    return int(result["assetId"])
                raise HostError(
                    f"Operation failed: {result.get('code')}: {result.get('message')}", self.name
                )

            self._sleep(self.poll_delay + self.poll_step * attempt ** 2)

        raise HostError(f"Operation {operation_id} did not complete in time", self.name)

    def _json_or_raise(self, response: requests.Response) -> Dict[str, Any]:
        if response.status_code == 429:
            raise RateLimitedError(self.name, parse_retry_after(response.headers.get("Retry-After")))

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            # Moderation rejections come back as 4xx with a JSON message
            if isinstance(body, dict) and "moderated" in str(body.get("message", "")):
                return body
            raise HostError(f"HTTP {response.status_code}: {response.text}", self.name)

        if not isinstance(body, dict):
            raise HostError(f"Malformed response: {response.text}", self.name)
        return body
