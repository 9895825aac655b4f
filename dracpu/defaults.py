"""Driver-wide constants."""

DRIVER_NAME = "manager.cpu.com"

DRIVER_PLUGIN_PATH = f"/var/lib/kubelet/plugins/{DRIVER_NAME}"
DRIVER_PLUGIN_CHECKPOINT_FILE = "checkpoint.yaml"

DEFAULT_CDI_ROOT = "/etc/cdi"
CDI_VENDOR = DRIVER_NAME
CDI_CLASS = "cpu"
CDI_VERSION = "0.6.0"
CDI_COMMON_DEVICE_NAME = "common"

CONFIG_API_VERSION = "resource.cpu.com/v1alpha1"
CONFIG_KIND = "CpuConfig"

ENV_PREFIX = "CPU_DEVICE"

CPU_CLASSES = ("reserved", "shared", "allocatable")
