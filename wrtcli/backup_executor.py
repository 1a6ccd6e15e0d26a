"""
Backup Orchestrator
===================

This module composes the session client, the backup transport and the
artifact store into the backup lifecycle operations. Each operation is a
short linear protocol with explicit compensation on failure:

- create: authenticate, fetch the archive, store it, record it; a stored
  archive whose journal entry could not be written is deleted again, and
  archives left unrecorded by an earlier interrupted create are swept first
- list / show: journal reads, no device traffic
- restore: read the archive, upload it, reboot; never touches local state
- remove: delete the archive, then its journal entry

A transport call answered with "unauthorized" triggers one fresh login and a
single retry of that call. A second refusal in the same operation is fatal.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from .artifact_store import ArtifactStore
from .config import Settings
from .device_registry import DeviceRegistry
from .error_handling import TransportError, TransportErrorKind, get_logger
from .schemas import BackupRecord, Device, DeviceStatus, Session
from .session_client import BaseSessionClient, get_session_client
from .transport import BaseTransport, get_transport

T = TypeVar("T")

SessionClientFactory = Callable[[Device, Settings], BaseSessionClient]
TransportFactory = Callable[[Device, Settings], BaseTransport]


@dataclass
class RemoteContext:
    """Per-operation remote state: one device, its clients and the live session."""
    device: Device
    session_client: BaseSessionClient
    transport: BaseTransport
    session: Optional[Session] = None
    reauthenticated: bool = False


class BackupOrchestrator:
    """Runs backup lifecycle operations against registered devices."""

    def __init__(self, settings: Settings,
                 registry: Optional[DeviceRegistry] = None,
                 store: Optional[ArtifactStore] = None,
                 session_client_factory: SessionClientFactory = get_session_client,
                 transport_factory: TransportFactory = get_transport):
        self.settings = settings
        self.registry = registry or DeviceRegistry(settings)
        self.store = store or ArtifactStore(settings)
        self.session_client_factory = session_client_factory
        self.transport_factory = transport_factory
        self.log = get_logger(__name__)

    # Remote plumbing

    def _connect(self, device: Device) -> RemoteContext:
        ctx = RemoteContext(
            device=device,
            session_client=self.session_client_factory(device, self.settings),
            transport=self.transport_factory(device, self.settings),
        )
        ctx.session = ctx.session_client.authenticate(device)
        return ctx

    def _call(self, ctx: RemoteContext, func: Callable[[Session], T]) -> T:
        """Run a transport call, logging in again once if the session is refused."""
        try:
            return func(ctx.session)
        except TransportError as e:
            if e.kind != TransportErrorKind.UNAUTHORIZED or ctx.reauthenticated:
                raise
            self.log.warning("Session refused, authenticating again", error=str(e))

        ctx.reauthenticated = True
        ctx.session = ctx.session_client.authenticate(ctx.device)
        return func(ctx.session)

    # Backup lifecycle

    def create(self, device_name: str, description: Optional[str] = None) -> BackupRecord:
        """Take a new backup of a device and record it."""
        device = self.registry.lookup(device_name)

        with self.log.context(operation="create", device=device_name):
            ctx = self._connect(device)
            data = self._call(ctx, ctx.transport.create_backup)

            with self.store.device_lock(device_name):
                self.store.sweep(device_name)
                filename, size = self.store.write(device_name, data)
                try:
                    record = self.store.append_record(device_name, filename, size, description=description)
                except Exception as e:
                    self.log.error("Recording backup failed, removing stored archive", exception=e,
                                   filename=filename)
                    self._discard_orphan(device_name, filename)
                    raise

            self.log.info("Backup created", backup_id=record.id, filename=filename, size=size)
            return record

    def _discard_orphan(self, device_name: str, filename: str):
        try:
            self.store.delete_artifact(device_name, filename)
        except Exception as cleanup_error:
            self.log.error("Could not remove orphaned backup file", exception=cleanup_error,
                           filename=filename)

    def list(self, device_name: str) -> List[BackupRecord]:
        self.registry.lookup(device_name)
        return self.store.list_records(device_name)

    def show(self, device_name: str, backup_id: int) -> BackupRecord:
        self.registry.lookup(device_name)
        return self.store.get_record(device_name, backup_id)

    def restore(self, device_name: str, backup_id: int) -> BackupRecord:
        """Push a stored backup to the device and reboot it."""
        device = self.registry.lookup(device_name)

        with self.log.context(operation="restore", device=device_name, backup_id=backup_id):
            record = self.store.get_record(device_name, backup_id)
            data = self.store.read(device_name, record.filename)

            ctx = self._connect(device)
            self._call(ctx, lambda session: ctx.transport.apply(session, data))
            self.log.info("Backup applied, rebooting device", size=len(data))
            self._call(ctx, ctx.transport.reboot)
            return record

    def remove(self, device_name: str, backup_id: int) -> BackupRecord:
        """Delete a stored backup file and then its journal entry."""
        self.registry.lookup(device_name)

        with self.log.context(operation="remove", device=device_name, backup_id=backup_id):
            with self.store.device_lock(device_name):
                record = self.store.get_record(device_name, backup_id)
                self.store.delete_artifact(device_name, record.filename)
                removed = self.store.remove_record(device_name, backup_id)

            self.log.info("Backup removed", filename=removed.filename)
            return removed

    # Device collaborators

    def status(self, device_name: str) -> DeviceStatus:
        device = self.registry.lookup(device_name)
        ctx = self._connect(device)
        return self._call(ctx, ctx.transport.status)

    def reboot(self, device_name: str):
        device = self.registry.lookup(device_name)
        with self.log.context(operation="reboot", device=device_name):
            ctx = self._connect(device)
            self._call(ctx, ctx.transport.reboot)
            self.log.info("Reboot requested")
