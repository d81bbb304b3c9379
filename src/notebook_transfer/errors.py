"""Exceptions raised by notebook transfer."""


class TransferError(Exception):
    """Base class for import/export failures."""


class BundleFormatError(TransferError):
    """The bundle could not be read or parsed as JSON."""


class StoreError(TransferError):
    """A store rejected a single write. The import records it and moves on."""


class EntityNotFoundError(StoreError):
    """The store has no entity with the requested id."""


class UnrecoverableStoreError(StoreError):
    """The store can no longer accept writes; the import must stop."""


class AuthorizationError(UnrecoverableStoreError):
    """The session lost permission to write."""


class ConnectivityError(UnrecoverableStoreError):
    """The store is unreachable."""


class BackupError(TransferError):
    """A backup snapshot could not be written or read."""
