"""
Client-server API calls needed by the encryption layer.

Thin wrapper over httpx.AsyncClient: key upload, key query, one-time key
claiming and to-device messaging. Errors are left to propagate: transport
failures as httpx.HTTPError, non-2xx responses as httpx.HTTPStatusError.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote
import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/_matrix/client/r0"
DEFAULT_TIMEOUT = 30.0


class BaseApis:
    """
    Homeserver API handle.

    Args:
        base_url: Base URL of the homeserver
        access_token: Token sent as a bearer Authorization header
        http_client: Client to use; one is created if not given
    """

    def __init__(self, base_url: str, access_token: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._txn_counter = 0

    def _new_txn_id(self) -> str:
        self._txn_counter += 1
        return f"m{int(time.time() * 1000)}.{self._txn_counter}"

    async def _request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        response = await self.http_client.request(
            method, f"{self.base_url}{API_PREFIX}{path}", json=body, headers=headers
        )
        response.raise_for_status()
        return response.json()

    async def upload_keys(self, device_keys: Optional[Dict] = None,
                          one_time_keys: Optional[Dict] = None) -> Dict:
        """Publish device keys and/or one-time keys"""
        body = {}
        if device_keys is not None:
            body["device_keys"] = device_keys
        if one_time_keys:
            body["one_time_keys"] = one_time_keys
        return await self._request("POST", "/keys/upload", body)

    async def query_keys(self, user_ids: List[str]) -> Dict:
        """Download the device keys of the given users"""
        logger.debug("Querying keys for %d users", len(user_ids))
        return await self._request(
            "POST", "/keys/query", {"device_keys": {user_id: [] for user_id in user_ids}}
        )

    async def claim_one_time_keys(self, devices: List[Tuple[str, str]],
                                  key_algorithm: str = "signed_curve25519") -> Dict:
        """
        Claim one one-time key for each (user id, device id) pair.

        Returns:
            The response, whose "one_time_keys" maps user -> device -> key
        """
        query: Dict[str, Dict[str, str]] = {}
        for user_id, device_id in devices:
            query.setdefault(user_id, {})[device_id] = key_algorithm
        return await self._request("POST", "/keys/claim", {"one_time_keys": query})

    async def send_to_device(self, event_type: str, messages: Dict[str, Dict[str, Dict]]) -> Dict:
        """
        Send a to-device event.

        Args:
            event_type: Type of the event
            messages: user id -> device id -> content
        """
        path = f"/sendToDevice/{quote(event_type, safe='')}/{quote(self._new_txn_id(), safe='')}"
        return await self._request("PUT", path, {"messages": messages})

    async def aclose(self):
        await self.http_client.aclose()
