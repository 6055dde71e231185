"""Power and system control for managed devices."""

from .system import DeviceController, SystemInfo, parse_power_mode, parse_system_info

__all__ = ["DeviceController", "SystemInfo", "parse_power_mode", "parse_system_info"]
