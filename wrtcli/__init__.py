"""
OpenWrt Device Backup CLI
=========================

This package contains the building blocks of the wrtcli tool:
- Session authentication against the device management API
- Backup transports for the LuCI REST and ubus JSON-RPC interfaces
- Local artifact storage with a per-device metadata journal
- Backup orchestration (create, list, show, restore, remove)
- Device registry, status formatting and the command line interface
"""

__version__ = "1.0.0"
__author__ = "wrtcli Team"
