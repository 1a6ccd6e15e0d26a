from typing import List, Optional
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.fernet import Fernet

from wrtcli.artifact_store import ArtifactStore
from wrtcli.backup_executor import BackupOrchestrator
from wrtcli.config import Settings
from wrtcli.device_registry import DeviceRegistry
from wrtcli.error_handling import TransportError, TransportErrorKind
from wrtcli.schemas import Device, DeviceStatus, Session, TransportType


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        config_dir=tmp_path / "wrtcli",
        encryption_key=Fernet.generate_key().decode(),
        request_timeout=2.0,
    )


@pytest.fixture
def device() -> Device:
    return Device(name="router", ip="192.168.1.1", user="root", password="secret")


@pytest.fixture
def registry(settings, device) -> DeviceRegistry:
    registry = DeviceRegistry(settings)
    registry.add(device)
    registry.add(Device(name="ap", ip="192.168.1.2", user="root", password="other",
                        transport=TransportType.REST))
    return registry


@pytest.fixture
def store(settings) -> ArtifactStore:
    return ArtifactStore(settings)


class FakeSessionClient:
    """Hands out numbered tokens and remembers every login."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.logins: List[str] = []

    def authenticate(self, device: Device) -> Session:
        if self.error is not None:
            raise self.error
        self.logins.append(device.name)
        return Session(token=f"token-{len(self.logins)}", transport=device.transport)


class FakeTransport:
    """Scripted transport; each ``failures`` entry is raised by the next call, None lets it pass."""

    def __init__(self, payload: bytes = b"\x1f\x8b fake archive bytes"):
        self.payload = payload
        self.failures: List[Optional[Exception]] = []
        self.calls: List[tuple] = []
        self.applied: List[bytes] = []

    def _maybe_fail(self):
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

    def create_backup(self, session: Session) -> bytes:
        self.calls.append(("create_backup", session.token))
        self._maybe_fail()
        return self.payload

    def apply(self, session: Session, data: bytes) -> bool:
        self.calls.append(("apply", session.token))
        self._maybe_fail()
        self.applied.append(data)
        return True

    def reboot(self, session: Session) -> bool:
        self.calls.append(("reboot", session.token))
        self._maybe_fail()
        return True

    def status(self, session: Session) -> DeviceStatus:
        self.calls.append(("status", session.token))
        self._maybe_fail()
        return DeviceStatus(hostname="OpenWrt", model="TP-Link Archer C7", uptime=3661)


def unauthorized() -> TransportError:
    return TransportError(TransportErrorKind.UNAUTHORIZED, "session expired")


@pytest.fixture
def session_client() -> FakeSessionClient:
    return FakeSessionClient()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def orchestrator(settings, registry, store, session_client, transport) -> BackupOrchestrator:
    return BackupOrchestrator(
        settings,
        registry=registry,
        store=store,
        session_client_factory=lambda device, settings: session_client,
        transport_factory=lambda device, settings: transport,
    )


def make_response(status_code: int = 200, json_data=None, content: bytes = b"",
                  headers: Optional[dict] = None) -> MagicMock:
    """Stand-in for requests.Response."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.content = content
    response.headers = headers or {}
    if json_data is None:
        response.json.side_effect = ValueError("no JSON")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def http() -> MagicMock:
    return MagicMock(spec=requests.Session)
