"""Serial transport layer for FlashLink."""

from .serial import DeviceHandle, PortInfo, PortSelector, select_serial_port

__all__ = ["DeviceHandle", "PortInfo", "PortSelector", "select_serial_port"]
