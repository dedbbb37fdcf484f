"""
Async HTTP client for the Enphase Envoy / IQ Gateway local API.

The gateway serves telemetry over HTTPS with a self-signed certificate and
requires a JWT issued by Enphase. When no token is configured, one is
obtained from the Enlighten cloud with the owner's credentials:

1. ``POST https://enlighten.enphaseenergy.com/login/login.json`` -> session_id
2. ``POST https://entrez.enphaseenergy.com/tokens`` -> JWT for the serial

The JWT is then exchanged for a local session cookie via
``GET /auth/check_jwt``. All later requests carry both.

Operations:
- connect(...): build a client and authenticate (may raise EnvoyError).
- comm_check(): liveness check, ``/installer/pcu_comm_check``.
- production(): ``/production.json?details=1``.
- inverters(): ``/api/v1/production/inverters``.
- batteries(): Encharge devices from ``/ivp/ensemble/inventory``.
- invalidate_session(): drop cached session state.

The collector only depends on the DeviceClient protocol, so tests can pass
any object with the same coroutine methods.

CHANGELOG:
- 2026-10-18: Initial creation
- 2026-10-18: Retry with cloud credentials when the configured token is rejected

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import TypeAdapter, ValidationError

from exporter.src.models import Battery, Inverter, ProductionResponse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENLIGHTEN_LOGIN_URL = "https://enlighten.enphaseenergy.com/login/login.json"
ENTREZ_TOKEN_URL = "https://entrez.enphaseenergy.com/tokens"

ENVOY_TIMEOUT_S: float = 30.0
"""Per-request timeout; the comm check can take many seconds on large arrays."""

_CHECK_JWT_PATH = "/auth/check_jwt"
_COMM_CHECK_PATH = "/installer/pcu_comm_check"
_PRODUCTION_PATH = "/production.json"
_INVERTERS_PATH = "/api/v1/production/inverters"
_INVENTORY_PATH = "/ivp/ensemble/inventory"

_BATTERY_GROUP = "ENCHARGE"

_INVERTER_LIST = TypeAdapter(list[Inverter])
_BATTERY_LIST = TypeAdapter(list[Battery])


class EnvoyError(Exception):
    """Raised when the gateway or the Enphase cloud cannot be queried."""


class DeviceClient(Protocol):
    """Capabilities the collector needs from a gateway client."""

    async def comm_check(self) -> None: ...

    async def production(self) -> ProductionResponse: ...

    async def inverters(self) -> list[Inverter]: ...

    async def batteries(self) -> list[Battery]: ...

    def invalidate_session(self) -> None: ...

    async def close(self) -> None: ...


def _base_url(address: str) -> str:
    """Return an absolute base URL; bare hosts default to HTTPS."""
    address = address.rstrip("/")
    if "://" in address:
        return address
    return f"https://{address}"


class EnvoyClient:
    """Authenticated session against one Envoy gateway.

    Use :meth:`connect` rather than the constructor: it performs the token
    and session handshake and closes the HTTP client if that fails.

    Args:
        address: Gateway host name, IP or base URL.
        serial: Gateway serial number, used to request a token.
        username: Enlighten account e-mail.
        password: Enlighten account password.
        jwt: Pre-obtained gateway token; skips the cloud login when set.
        transport: Optional httpx transport, shared by the local and the
            cloud clients.
        timeout_s: Per-request timeout in seconds.
    """

    def __init__(
        self,
        *,
        address: str,
        serial: str,
        username: str = "",
        password: str = "",
        jwt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = ENVOY_TIMEOUT_S,
    ) -> None:
        self._serial = serial
        self._username = username
        self._password = password
        self._configured_jwt = jwt
        self._token: str | None = jwt or None
        self._transport = transport
        self._timeout_s = timeout_s
        self._http = httpx.AsyncClient(
            base_url=_base_url(address),
            verify=False,
            timeout=timeout_s,
            transport=transport,
        )

    @classmethod
    async def connect(
        cls,
        *,
        address: str,
        serial: str,
        username: str = "",
        password: str = "",
        jwt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = ENVOY_TIMEOUT_S,
    ) -> EnvoyClient:
        """Create a client and open an authenticated gateway session.

        Raises:
            EnvoyError: If the token cannot be obtained or the gateway
                rejects it.
        """
        client = cls(
            address=address,
            serial=serial,
            username=username,
            password=password,
            jwt=jwt,
            transport=transport,
            timeout_s=timeout_s,
        )
        try:
            await client.authenticate()
        except Exception:
            await client.close()
            raise
        return client

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    async def authenticate(self) -> None:
        """Obtain a token if needed and exchange it for a session cookie.

        A configured token the gateway rejects (typically expired) is
        replaced once by a cloud-issued token when credentials are set.
        """
        if not self._token:
            self._token = await self._fetch_token()

        status = await self._check_jwt()
        if status != 200 and self._token == self._configured_jwt and self._has_credentials():
            logger.warning(
                "Configured token rejected (HTTP %d), requesting a new one from Enphase cloud",
                status,
            )
            self._token = await self._fetch_token()
            status = await self._check_jwt()
        if status != 200:
            raise EnvoyError(f"Gateway rejected token (HTTP {status})")
        logger.info("Gateway session established with %s", self._http.base_url)

    async def _check_jwt(self) -> int:
        try:
            response = await self._http.get(_CHECK_JWT_PATH, headers=self._auth_headers())
        except httpx.HTTPError as exc:
            raise EnvoyError(f"Gateway session request failed: {exc}") from exc
        return response.status_code

    def _has_credentials(self) -> bool:
        return bool(self._username and self._password)

    async def _fetch_token(self) -> str:
        """Log in to Enlighten and request a gateway token for the serial."""
        if not self._has_credentials():
            raise EnvoyError("No token configured and no Enlighten credentials to obtain one")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s, transport=self._transport
            ) as cloud:
                login = await cloud.post(
                    ENLIGHTEN_LOGIN_URL,
                    data={"user[email]": self._username, "user[password]": self._password},
                )
                if login.status_code != 200:
                    raise EnvoyError(f"Enlighten login failed (HTTP {login.status_code})")
                session_id = login.json().get("session_id")
                if not session_id:
                    raise EnvoyError("Enlighten login returned no session_id")

                token = await cloud.post(
                    ENTREZ_TOKEN_URL,
                    json={
                        "session_id": session_id,
                        "serial_num": self._serial,
                        "username": self._username,
                    },
                )
        except httpx.HTTPError as exc:
            raise EnvoyError(f"Enphase cloud request failed: {exc}") from exc
        except ValueError as exc:
            raise EnvoyError("Enlighten login returned a non-JSON body") from exc

        if token.status_code != 200 or not token.text.strip():
            raise EnvoyError(f"Token request failed (HTTP {token.status_code})")
        logger.info("Obtained gateway token from Enphase cloud for serial %s", self._serial)
        return token.text.strip()

    def invalidate_session(self) -> None:
        """Forget the session cookie and any token fetched from the cloud.

        A configured token is kept; it is re-validated on the next connect.
        """
        self._http.cookies.clear()
        self._token = self._configured_jwt or None
        logger.info("Gateway session invalidated")

    async def close(self) -> None:
        await self._http.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        try:
            response = await self._http.get(path, params=params, headers=self._auth_headers())
        except httpx.HTTPError as exc:
            raise EnvoyError(f"GET {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise EnvoyError(f"GET {path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise EnvoyError(f"GET {path} returned a non-JSON body") from exc

    async def comm_check(self) -> None:
        """Ask the gateway to ping its devices; raises EnvoyError on failure."""
        await self._get_json(_COMM_CHECK_PATH)

    async def production(self) -> ProductionResponse:
        data = await self._get_json(_PRODUCTION_PATH, params={"details": "1"})
        try:
            return ProductionResponse.model_validate(data)
        except ValidationError as exc:
            raise EnvoyError(f"Unexpected production payload: {exc}") from exc

    async def inverters(self) -> list[Inverter]:
        data = await self._get_json(_INVERTERS_PATH)
        try:
            return _INVERTER_LIST.validate_python(data)
        except ValidationError as exc:
            raise EnvoyError(f"Unexpected inverter payload: {exc}") from exc

    async def batteries(self) -> list[Battery]:
        """Return the Encharge batteries listed in the ensemble inventory.

        Gateways without storage report an empty inventory, which yields an
        empty list rather than an error.
        """
        data = await self._get_json(_INVENTORY_PATH)
        if not isinstance(data, list):
            raise EnvoyError("Unexpected inventory payload: expected a list")
        devices: list[Any] = []
        for group in data:
            if isinstance(group, dict) and group.get("type") == _BATTERY_GROUP:
                devices.extend(group.get("devices") or [])
        try:
            return _BATTERY_LIST.validate_python(devices)
        except ValidationError as exc:
            raise EnvoyError(f"Unexpected battery payload: {exc}") from exc
