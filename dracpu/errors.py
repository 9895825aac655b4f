"""
Exception hierarchy for the DRA CPU driver.

Validation errors are scoped to a single claim and are reported back to the
caller. Storage and edit errors abort the current transaction but leave the
previously committed checkpoint untouched.
"""

from __future__ import annotations


class DraCpuError(Exception):
    """Base class for all driver errors."""


# ============================================================================
# VALIDATION
# ============================================================================


class ValidationError(DraCpuError, ValueError):
    """A claim, configuration or CPU set was rejected."""


class ClaimNotAllocatedError(ValidationError):
    def __init__(self, claim_uid: str) -> None:
        super().__init__(f"claim {claim_uid} not yet allocated")
        self.claim_uid = claim_uid


class DeviceNotAllocatableError(ValidationError):
    def __init__(self, device: str) -> None:
        super().__init__(f"requested CPU is not allocatable: {device}")
        self.device = device


class UnsupportedConfigSourceError(ValidationError):
    def __init__(self, source: str) -> None:
        super().__init__(f"invalid config source: {source}")
        self.source = source


class UnsupportedConfigKindError(ValidationError):
    """The opaque payload is missing or does not decode to a known config."""


class InvalidConfigError(ValidationError):
    """A decoded configuration violates one of its constraints."""


class InvalidCPUSetError(ValidationError):
    """A CPU list could not be parsed or the CPU classes overlap."""


class SharingStrategyMismatchError(DraCpuError, TypeError):
    """A strategy-specific accessor was used for a different strategy."""


# ============================================================================
# STORAGE
# ============================================================================


class StorageError(DraCpuError):
    """Base class for checkpoint persistence failures."""


class StorageUnavailableError(StorageError, OSError):
    """The durable store could not be read or written."""


class StorageCorruptError(StorageError):
    """The persisted checkpoint does not match the expected schema."""


class CheckpointWriteError(StorageError):
    """Saving the checkpoint failed; the transaction was not committed."""


# ============================================================================
# RUNTIME EDITS
# ============================================================================


class EditError(DraCpuError):
    """Base class for CDI spec file failures."""


class EditPersistError(EditError):
    pass


class EditDeleteError(EditError):
    pass
