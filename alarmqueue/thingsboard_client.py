"""Key-value store over ThingsBoard customer SERVER_SCOPE attributes."""
import json
import threading
from typing import Optional, Dict, Any, Iterable
import requests

from alarmqueue import settings
from alarmqueue.errors import StoreError
from alarmqueue.kv_store import KeyValueStore
from alarmqueue.logging_conf import logger


class ThingsboardAttributeStore(KeyValueStore):
    """
    Stores blobs as attributes of a ThingsBoard customer.

    The scope is the customer id. ThingsBoard has no compare-and-swap on
    attributes, so `update` relies on the in-process per-key lock.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ):
        super().__init__()
        self.base_url = (base_url or settings.THINGSBOARD_BASE_URL).rstrip("/")
        self.username = username or settings.THINGSBOARD_USERNAME
        self.password = password or settings.THINGSBOARD_PASSWORD
        self.timeout = timeout or settings.THINGSBOARD_TIMEOUT
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        self._token: Optional[str] = None
        self._auth_lock = threading.Lock()

    def get_many(self, scope: str, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        data = self._request(
            "GET",
            f"/api/plugins/telemetry/CUSTOMER/{scope}/values/attributes/SERVER_SCOPE",
            params={"keys": ",".join(keys)},
        )
        return self._attributes_to_dict(data)

    def set_many(self, scope: str, values: Dict[str, str]) -> None:
        if not values:
            return
        self._request(
            "POST",
            f"/api/plugins/telemetry/CUSTOMER/{scope}/SERVER_SCOPE",
            json=values,
        )

    def scan(self, scope: str, prefix: str) -> Dict[str, str]:
        data = self._request(
            "GET",
            f"/api/plugins/telemetry/CUSTOMER/{scope}/values/attributes/SERVER_SCOPE",
        )
        return {k: v for k, v in self._attributes_to_dict(data).items() if k.startswith(prefix)}

    def close(self):
        self.session.close()

    def login(self) -> str:
        """Authenticate the service account and keep the JWT."""
        with self._auth_lock:
            try:
                response = self.session.post(
                    f"{self.base_url}/api/auth/login",
                    json={"username": self.username, "password": self.password},
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                raise StoreError(f"ThingsBoard login failed: {e}") from e

            if response.status_code != 200:
                raise StoreError(f"ThingsBoard login failed: HTTP {response.status_code}")

            try:
                token = (response.json() or {}).get("token")
            except (ValueError, AttributeError) as e:
                raise StoreError(f"Invalid ThingsBoard auth response: {e}") from e
            if not token:
                raise StoreError("No token in ThingsBoard auth response")

            self._token = token
            logger.info("ThingsBoard service account authenticated")
            return token

    def _request(self, method: str, endpoint: str, retried_auth: bool = False, **kwargs) -> Any:
        """Make an authenticated API request, logging in again once on 401."""
        if not self._token:
            self.login()

        url = f"{self.base_url}{endpoint}"
        headers = {"X-Authorization": f"Bearer {self._token}"}

        try:
            response = self.session.request(method=method, url=url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise StoreError(f"ThingsBoard request failed: {method} {endpoint}: {e}") from e

        if response.status_code == 401 and not retried_auth:
            logger.warning("ThingsBoard token rejected, logging in again")
            self._token = None
            return self._request(method, endpoint, retried_auth=True, **kwargs)

        if response.status_code == 404:
            return None

        if response.status_code >= 400:
            raise StoreError(f"ThingsBoard request failed: {method} {endpoint}: HTTP {response.status_code}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"ThingsBoard returned invalid JSON: {method} {endpoint}: {e}") from e

    def _attributes_to_dict(self, data: Any) -> Dict[str, str]:
        """Normalise the attribute listing (list of {key, value} or a plain mapping)."""
        if not data:
            return {}
        if isinstance(data, dict):
            items = data.items()
        else:
            items = ((item.get("key"), item.get("value")) for item in data)

        result = {}
        for key, value in items:
            if key is None or value is None:
                continue
            # Attributes written as JSON objects come back decoded
            result[key] = value if isinstance(value, str) else json.dumps(value)
        return result
