"""Text and JSON rendering of devices, backup records and device status."""

import json
from typing import Iterable, List

from .schemas import BackupRecord, Device, DeviceStatus


def human_size(num_bytes: int) -> str:
    """Render a byte count with a binary unit, e.g. ``1.5 MB``."""
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{num_bytes} B"


def human_uptime(seconds: int) -> str:
    days, rest = divmod(int(seconds), 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if days or hours:
        parts.append(f"{hours}h")
    if days or hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def format_devices(devices: Iterable[Device]) -> str:
    devices = list(devices)
    if not devices:
        return "No devices registered. Use 'wrtcli add' to add a device."

    lines = ["Registered OpenWrt devices:", "---------------------------"]
    for device in devices:
        lines.append(f"{device.name} ({device.ip}) [{device.transport.value}]")
    return "\n".join(lines)


def format_record(record: BackupRecord, as_json: bool = False) -> str:
    if as_json:
        return record.model_dump_json(indent=2, exclude_none=True)

    lines = [
        f"Backup ID:   {record.id}",
        f"Filename:    {record.filename}",
        f"Created:     {record.created.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        f"Size:        {human_size(record.size)} ({record.size} bytes)",
    ]
    if record.description:
        lines.append(f"Description: {record.description}")
    return "\n".join(lines)


def format_records(device_name: str, records: List[BackupRecord], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([record.model_dump(mode="json", exclude_none=True) for record in records], indent=2)

    if not records:
        return f"No backups found for device '{device_name}'."

    lines = [f"Backups for {device_name}:", f"{'ID':>4}  {'Created':<19}  {'Size':>10}  Description"]
    for record in records:
        lines.append(
            f"{record.id:>4}  {record.created.strftime('%Y-%m-%d %H:%M:%S'):<19}  "
            f"{human_size(record.size):>10}  {record.description or ''}".rstrip()
        )
    return "\n".join(lines)


def format_status(device_name: str, status: DeviceStatus, raw: bool = False, as_json: bool = False) -> str:
    if as_json:
        return status.model_dump_json(indent=2)

    load = status.load[0] if status.load else 0.0
    memory = status.memory
    if raw:
        uptime = f"{status.uptime} seconds"
        total, free = f"{memory.total // 1024} KB", f"{memory.free // 1024} KB"
    else:
        uptime = human_uptime(status.uptime)
        total, free = human_size(memory.total), human_size(memory.free)

    return "\n".join([
        f"Device Status: {device_name}",
        "----------------",
        f"Model:    {status.model}",
        f"Hostname: {status.hostname}",
        f"Uptime:   {uptime}",
        f"Load:     {load:.2f}",
        "Memory:",
        f"   Total: {total}",
        f"   Free:  {free}",
    ])
