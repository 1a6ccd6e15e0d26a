"""
Backup Transports
=================

This module implements the remote half of the backup lifecycle. Each
transport speaks one OpenWrt management API and exposes the same capability
set to the orchestrator:

- create / fetch / delete_remote: produce a configuration archive on the
  device and download it as an opaque byte blob
- apply: upload an archive and have the device restore it
- reboot and status: collaborator calls used after a restore and by the CLI

Two variants are provided:

- UbusTransport: JSON-RPC envelopes posted to /ubus (rpcd ``file`` and
  ``system`` objects), payloads base64-encoded inside the envelope
- LuciTransport: LuCI flash-operation pages for the archive itself and the
  luci-mod-rpc ``sys`` endpoint for reboot and status
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import requests

from .config import Settings
from .error_handling import TransportError, TransportErrorKind
from .schemas import Device, DeviceStatus, MemoryStatus, Session, TransportType
from .session_client import jsonrpc_envelope

logger = logging.getLogger(__name__)

REMOTE_BACKUP_PATH = "/tmp/wrtcli-backup.tar.gz"
REMOTE_RESTORE_PATH = "/tmp/wrtcli-restore.tar.gz"
SYSUPGRADE = "/sbin/sysupgrade"

# ubus status codes (libubus UBUS_STATUS_*)
UBUS_STATUS_OK = 0
UBUS_STATUS_PERMISSION_DENIED = 6
UBUS_STATUS_NAMES = {
    1: "invalid command",
    2: "invalid argument",
    3: "method not found",
    4: "not found",
    5: "no data",
    6: "permission denied",
    7: "timeout",
    8: "not supported",
    9: "unknown error",
    10: "connection failed",
}

# rpcd JSON-RPC error code for an expired or unknown session
JSONRPC_ACCESS_DENIED = -32002


class BaseTransport:
    """Base class for backup transports."""

    transport_type: TransportType

    def __init__(self, device: Device, settings: Settings, http: Optional[requests.Session] = None):
        self.device = device
        self.settings = settings
        self.timeout = settings.request_timeout
        self.http = http or requests.Session()

    def create(self, session: Session):
        """Ask the device to produce a configuration archive."""
        raise NotImplementedError

    def fetch(self, session: Session) -> bytes:
        """Download the archive produced by create()."""
        raise NotImplementedError

    def delete_remote(self, session: Session):
        """Remove any device-side copy left behind by create()."""
        raise NotImplementedError

    def apply(self, session: Session, data: bytes) -> bool:
        """Upload an archive and have the device restore it."""
        raise NotImplementedError

    def reboot(self, session: Session) -> bool:
        raise NotImplementedError

    def status(self, session: Session) -> DeviceStatus:
        raise NotImplementedError

    def create_backup(self, session: Session) -> bytes:
        """Run the full remote backup sequence and return the archive bytes."""
        try:
            self.create(session)
            data = self.fetch(session)
        finally:
            try:
                self.delete_remote(session)
            except TransportError as e:
                logger.warning(f"Could not remove remote backup copy on {self.device.name}: {e}")

        if not data:
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Device {self.device.name} returned an empty backup archive")
        logger.info(f"Fetched {len(data)} byte backup from {self.device.name}")
        return data

    def _post(self, url: str, **kwargs) -> requests.Response:
        """POST to the device, mapping connection and HTTP status failures."""
        try:
            response = self.http.post(url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransportError(TransportErrorKind.UNREACHABLE,
                                 f"Timed out contacting {self.device.name} at {self.device.ip}",
                                 timed_out=True) from e
        except requests.RequestException as e:
            raise TransportError(TransportErrorKind.UNREACHABLE,
                                 f"Cannot reach {self.device.name} at {self.device.ip}: {e}") from e

        if response.status_code in (401, 403):
            raise TransportError(TransportErrorKind.UNAUTHORIZED,
                                 f"Session rejected by {self.device.name} (HTTP {response.status_code})")
        if not 200 <= response.status_code < 300:
            raise TransportError(TransportErrorKind.REMOTE_REJECTED,
                                 f"{self.device.name} answered HTTP {response.status_code}")
        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Response from {self.device.name} is not valid JSON") from e


class UbusTransport(BaseTransport):
    """Backup transport over the rpcd ubus JSON-RPC interface."""

    transport_type = TransportType.RPC

    def __init__(self, device: Device, settings: Settings, http: Optional[requests.Session] = None):
        super().__init__(device, settings, http)
        self._request_id = 0

    def _call(self, session: Session, obj: str, method: str,
              params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke ``obj.method`` and return the data part of the reply."""
        self._request_id += 1
        payload = jsonrpc_envelope([session.token, obj, method, params or {}], self._request_id)
        data = self._json(self._post(self.device.ubus_url, json=payload))

        if not isinstance(data, dict):
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Unexpected reply to {obj}.{method} from {self.device.name}")

        if data.get("error"):
            error = data["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            if code == JSONRPC_ACCESS_DENIED:
                raise TransportError(TransportErrorKind.UNAUTHORIZED,
                                     f"{self.device.name} denied {obj}.{method}: {message}")
            raise TransportError(TransportErrorKind.REMOTE_REJECTED,
                                 f"{self.device.name} failed {obj}.{method}: {message}")

        result = data.get("result")
        if not isinstance(result, list) or not result or not isinstance(result[0], int):
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Reply to {obj}.{method} from {self.device.name} has no status")

        status = result[0]
        if status == UBUS_STATUS_PERMISSION_DENIED:
            raise TransportError(TransportErrorKind.UNAUTHORIZED,
                                 f"{self.device.name} denied {obj}.{method}: permission denied")
        if status != UBUS_STATUS_OK:
            raise TransportError(TransportErrorKind.REMOTE_REJECTED,
                                 f"{self.device.name} failed {obj}.{method}: "
                                 f"{UBUS_STATUS_NAMES.get(status, f'status {status}')}")

        body = result[1] if len(result) > 1 else {}
        return body if isinstance(body, dict) else {}

    def _exec(self, session: Session, command: str, args: List[str]) -> Dict[str, Any]:
        reply = self._call(session, "file", "exec", {"command": command, "params": args})
        code = reply.get("code", 0)
        if code != 0:
            stderr = (reply.get("stderr") or "").strip()
            raise TransportError(TransportErrorKind.REMOTE_REJECTED,
                                 f"'{command} {' '.join(args)}' exited with {code} on {self.device.name}"
                                 + (f": {stderr}" if stderr else ""))
        return reply

    def create(self, session: Session):
        self._exec(session, SYSUPGRADE, ["--create-backup", REMOTE_BACKUP_PATH])

    def fetch(self, session: Session) -> bytes:
        reply = self._call(session, "file", "read", {"path": REMOTE_BACKUP_PATH, "base64": True})
        encoded = reply.get("data")
        if not isinstance(encoded, str):
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Backup read from {self.device.name} carries no data field")
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Backup data from {self.device.name} is not valid base64") from e

    def delete_remote(self, session: Session):
        self._call(session, "file", "remove", {"path": REMOTE_BACKUP_PATH})

    def apply(self, session: Session, data: bytes) -> bool:
        self._call(session, "file", "write", {
            "path": REMOTE_RESTORE_PATH,
            "data": base64.b64encode(data).decode("ascii"),
            "base64": True,
        })
        self._exec(session, SYSUPGRADE, ["--restore-backup", REMOTE_RESTORE_PATH])
        logger.info(f"Restored {len(data)} byte backup on {self.device.name}")
        return True

    def reboot(self, session: Session) -> bool:
        self._call(session, "system", "reboot")
        return True

    def status(self, session: Session) -> DeviceStatus:
        board = self._call(session, "system", "board")
        info = self._call(session, "system", "info")
        memory = info.get("memory") or {}
        load = info.get("load") or []
        try:
            return DeviceStatus(
                hostname=board.get("hostname") or "Unknown",
                model=board.get("model") or "Unknown",
                uptime=int(info.get("uptime") or 0),
                # rpcd reports load averages scaled by 65536
                load=[round(value / 65536.0, 2) for value in load[:3]] or [0.0, 0.0, 0.0],
                memory=MemoryStatus(
                    total=int(memory.get("total") or 0),
                    free=int(memory.get("free") or 0),
                    buffered=int(memory.get("buffered") or 0),
                    cached=int(memory.get("cached") or 0),
                ),
            )
        except (TypeError, ValueError) as e:
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Status reply from {self.device.name} is malformed: {e}") from e


def parse_meminfo(text: str) -> MemoryStatus:
    """Parse /proc/meminfo (kB values) into byte counts."""
    fields = {}
    for line in text.splitlines():
        name, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            fields[name.strip()] = int(parts[0]) * 1024

    return MemoryStatus(
        total=fields.get("MemTotal", 0),
        free=fields.get("MemFree", 0),
        buffered=fields.get("Buffers", 0),
        cached=fields.get("Cached", 0),
    )


class LuciTransport(BaseTransport):
    """Backup transport over the LuCI web interface."""

    transport_type = TransportType.REST

    BACKUP_PATH = "/cgi-bin/luci/admin/system/flashops/backup"
    RESTORE_PATH = "/cgi-bin/luci/admin/system/flashops/restore"
    RPC_SYS_PATH = "/cgi-bin/luci/rpc/sys"

    def _cookies(self, session: Session) -> Dict[str, str]:
        return {"sysauth": session.token, "sysauth_http": session.token}

    def _sys(self, session: Session, method: str, *params) -> Any:
        url = f"{self.device.base_url}{self.RPC_SYS_PATH}"
        payload = {"id": 1, "method": method, "params": list(params)}
        data = self._json(self._post(url, params={"auth": session.token}, json=payload))
        if not isinstance(data, dict):
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Unexpected reply to sys.{method} from {self.device.name}")
        if data.get("error"):
            raise TransportError(TransportErrorKind.REMOTE_REJECTED,
                                 f"{self.device.name} failed sys.{method}: {data['error']}")
        return data.get("result")

    def create(self, session: Session):
        # LuCI builds the archive on demand inside the download request.
        pass

    def fetch(self, session: Session) -> bytes:
        url = f"{self.device.base_url}{self.BACKUP_PATH}"
        response = self._post(url, cookies=self._cookies(session), data={"sessionid": session.token})

        content_type = response.headers.get("Content-Type", "")
        if content_type.startswith("text/html"):
            # LuCI answers an expired session with its login page.
            raise TransportError(TransportErrorKind.UNAUTHORIZED,
                                 f"{self.device.name} served a login page instead of the backup archive")
        return response.content

    def delete_remote(self, session: Session):
        pass

    def apply(self, session: Session, data: bytes) -> bool:
        url = f"{self.device.base_url}{self.RESTORE_PATH}"
        self._post(
            url,
            cookies=self._cookies(session),
            data={"sessionid": session.token},
            files={"archive": ("backup.tar.gz", data, "application/x-targz")},
        )
        logger.info(f"Uploaded {len(data)} byte backup to {self.device.name}")
        return True

    def reboot(self, session: Session) -> bool:
        self._sys(session, "reboot")
        return True

    def status(self, session: Session) -> DeviceStatus:
        hostname = self._sys(session, "hostname")
        model = self._sys(session, "exec", "cat /tmp/sysinfo/model")
        uptime = self._sys(session, "uptime")
        load = self._sys(session, "loadavg") or []
        meminfo = self._sys(session, "exec", "cat /proc/meminfo") or ""

        try:
            return DeviceStatus(
                hostname=hostname or "Unknown",
                model=(model or "").strip() or "Unknown",
                uptime=int(uptime or 0),
                load=[round(float(value), 2) for value in load[:3]] or [0.0, 0.0, 0.0],
                memory=parse_meminfo(meminfo),
            )
        except (TypeError, ValueError) as e:
            raise TransportError(TransportErrorKind.BAD_PAYLOAD,
                                 f"Status reply from {self.device.name} is malformed: {e}") from e


TRANSPORTS = {
    TransportType.RPC: UbusTransport,
    TransportType.REST: LuciTransport,
}


def get_transport(device: Device, settings: Settings,
                  http: Optional[requests.Session] = None) -> BaseTransport:
    """Return the transport selected by the device's configuration."""
    return TRANSPORTS[device.transport](device, settings, http=http)
