"""
Node-local DRA driver for CPU devices.

Tracks which CPUs have been prepared for which resource claim, persists that
table in a checkpoint that survives restarts, and computes the CDI container
edits that expose each CPU to its workload.

Usage:
    from dracpu import DeviceState, load_config

    state = DeviceState.from_config(load_config("/etc/dra-cpu/config.yaml"))
    devices = state.prepare(claim)
    state.unprepare(claim.uid)
"""

__version__ = "0.1.0"

from dracpu.api import CpuConfig, Decoder, default_cpu_config
from dracpu.checkpoint import CheckpointStore, FileStore
from dracpu.config import DriverConfig, load_config
from dracpu.discovery import AllocatableDevices, Device, enumerate_all_possible_devices
from dracpu.driver import ClaimRef, Driver
from dracpu.resource import ResourceClaim
from dracpu.state import DeviceState

__all__ = [
    "__version__",
    # State
    "DeviceState",
    "CheckpointStore",
    "FileStore",
    # Devices
    "AllocatableDevices",
    "Device",
    "enumerate_all_possible_devices",
    # Configuration
    "CpuConfig",
    "Decoder",
    "default_cpu_config",
    "DriverConfig",
    "load_config",
    # Protocol
    "ClaimRef",
    "Driver",
    "ResourceClaim",
]
