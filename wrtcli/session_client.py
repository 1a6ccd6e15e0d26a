"""
Session Client for OpenWrt Management APIs
==========================================

This module obtains the short-lived session token that authorizes every
subsequent call to a device. Two login flavours are supported, matching the
two backup transports:

- ubus JSON-RPC (``/ubus``, ``session login``) for the RPC transport
- LuCI RPC auth (``/cgi-bin/luci/rpc/auth``, ``login``) for the REST transport

No retries happen here; the orchestrator decides when to authenticate again.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .config import Settings
from .error_handling import AuthError, AuthErrorKind
from .schemas import Device, Session, TransportType

logger = logging.getLogger(__name__)

UBUS_NULL_SESSION = "0" * 32


def jsonrpc_envelope(params: list, request_id: int = 1) -> Dict[str, Any]:
    """Build a ubus JSON-RPC ``call`` request body."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "call",
        "params": params,
    }


class BaseSessionClient:
    """Base class for session clients."""

    transport_type: TransportType

    def __init__(self, settings: Settings, http: Optional[requests.Session] = None):
        self.settings = settings
        self.timeout = settings.request_timeout
        self.http = http or requests.Session()

    def authenticate(self, device: Device) -> Session:
        """Log in to the device and return a fresh session."""
        logger.debug(f"Authenticating to {device.name} ({device.ip}) via {self.transport_type.value}")
        token = self._login(device)
        logger.info(f"Authenticated to {device.name}")
        return Session(token=token, transport=self.transport_type)

    def _login(self, device: Device) -> str:
        raise NotImplementedError

    def _post_json(self, device: Device, url: str, payload: Dict[str, Any]) -> Any:
        try:
            response = self.http.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise AuthError(AuthErrorKind.UNREACHABLE,
                            f"Timed out contacting {device.name} at {device.ip}") from e
        except requests.RequestException as e:
            raise AuthError(AuthErrorKind.UNREACHABLE,
                            f"Cannot reach {device.name} at {device.ip}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise AuthError(AuthErrorKind.REJECTED,
                            f"Login to {device.name} rejected (HTTP {response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE,
                            f"Login response from {device.name} is not valid JSON") from e


class UbusSessionClient(BaseSessionClient):
    """Login through the rpcd ``session`` object exposed at /ubus."""

    transport_type = TransportType.RPC

    def _login(self, device: Device) -> str:
        payload = jsonrpc_envelope([
            UBUS_NULL_SESSION,
            "session",
            "login",
            {"username": device.user, "password": device.password},
        ])
        data = self._post_json(device, device.ubus_url, payload)

        if not isinstance(data, dict):
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE, f"Unexpected login response from {device.name}")

        if "error" in data:
            error = data["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise AuthError(AuthErrorKind.REJECTED, f"Login to {device.name} rejected: {message}")

        result = data.get("result")
        if not isinstance(result, list) or not result:
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE, f"Login response from {device.name} has no result")

        if result[0] != 0:
            raise AuthError(AuthErrorKind.REJECTED,
                            f"Login to {device.name} rejected (ubus status {result[0]})")

        token = result[1].get("ubus_rpc_session") if len(result) > 1 and isinstance(result[1], dict) else None
        if not isinstance(token, str) or not token:
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE,
                            f"Login response from {device.name} lacks ubus_rpc_session")
        return token


class LuciSessionClient(BaseSessionClient):
    """Login through the luci-mod-rpc ``auth`` endpoint."""

    transport_type = TransportType.REST

    def _login(self, device: Device) -> str:
        url = f"{device.base_url}/cgi-bin/luci/rpc/auth"
        payload = {"id": 1, "method": "login", "params": [device.user, device.password]}
        data = self._post_json(device, url, payload)

        if not isinstance(data, dict) or "result" not in data:
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE, f"Login response from {device.name} has no result")

        token = data["result"]
        if token is None or data.get("error"):
            raise AuthError(AuthErrorKind.REJECTED, f"Login to {device.name} rejected: bad credentials")
        if not isinstance(token, str) or not token:
            raise AuthError(AuthErrorKind.MALFORMED_RESPONSE, f"Login response from {device.name} lacks a token")
        return token


SESSION_CLIENTS = {
    TransportType.RPC: UbusSessionClient,
    TransportType.REST: LuciSessionClient,
}


def get_session_client(device: Device, settings: Settings,
                       http: Optional[requests.Session] = None) -> BaseSessionClient:
    """Return the session client matching the device's transport."""
    return SESSION_CLIENTS[device.transport](settings, http=http)
