"""Hetzner Cloud REST API client."""

import httpx

from .exceptions import ProviderAPIError
from .types import ServerData, SSHKeyData

API_URL = "https://api.hetzner.cloud/v1"
API_TIMEOUT = 30
PER_PAGE = 50


class HetznerClient:
    """Thin typed wrapper over the Hetzner Cloud API.

    Every call is made once with a per-call timeout; retry policy belongs to
    the caller. Failures raise ProviderAPIError carrying the HTTP status and
    the API error code when the response includes one.
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = API_URL,
        timeout: float = API_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self._http = httpx.Client(
            base_url=api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HetznerClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"{method} {path} failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        err = data.get("error") if isinstance(data, dict) else None
        if response.is_error or err:
            code = err.get("code") if err else None
            message = err.get("message") if err else response.text.strip()
            raise ProviderAPIError(
                f"{method} {path} returned {response.status_code}: {message or 'no details'}",
                status=response.status_code,
                code=code,
            )
        return data

    def _list(self, path: str, key: str) -> list[dict]:
        items = []
        page = 1
        while page:
            data = self._request("GET", path, params={"page": page, "per_page": PER_PAGE})
            items.extend(data.get(key) or [])
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    def create_ssh_key(self, name: str, public_key: str) -> SSHKeyData:
        data = self._request(
            "POST", "/ssh_keys", json={"name": name, "public_key": public_key}
        )
        return data["ssh_key"]

    def list_ssh_keys(self) -> list[SSHKeyData]:
        return self._list("/ssh_keys", "ssh_keys")

    def create_server(
        self,
        name: str,
        server_type: str,
        image: str,
        location: str,
        ssh_key_ids: list[int],
    ) -> ServerData:
        """Create and start a server.

        :return: The ``server`` object of the response
        """
        data = self._request(
            "POST",
            "/servers",
            json={
                "name": name,
                "server_type": server_type,
                "image": image,
                "location": location,
                "ssh_keys": ssh_key_ids,
                "start_after_create": True,
            },
        )
        server = data.get("server")
        if not server:
            raise ProviderAPIError("Server create response did not include a server")
        return server

    def list_servers(self) -> list[ServerData]:
        return self._list("/servers", "servers")
