#!/usr/bin/env python3
"""
errors.py - Failure kinds for the VM provisioning workflow

Every stage raises one of these on its first failure. The top-level runner
catches ProvisionError, reports it and always goes through cleanup.
"""

from typing import Optional


class ProvisionError(Exception):
    """Base class for fatal workflow errors."""
    kind = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PreconditionError(ProvisionError):
    """Missing admin rights, archiver, Hyper-V module or bad config."""
    kind = "precondition"


class AuthError(ProvisionError):
    """Credential acquisition failed or was cancelled."""
    kind = "auth"


class SelectionError(ProvisionError):
    """No folders, cancelled picker or unusable VM name."""
    kind = "selection"


class ListingError(ProvisionError):
    """Nothing to download in the chosen folder."""
    kind = "listing"


class TransferError(ProvisionError):
    """A single file download failed."""
    kind = "transfer"

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message)


class ExtractionError(ProvisionError):
    """Missing first segment, archiver failure or no disk image."""
    kind = "extraction"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class ProvisioningError(ProvisionError):
    """Name collision or a Hyper-V create/configure failure."""
    kind = "provisioning"
