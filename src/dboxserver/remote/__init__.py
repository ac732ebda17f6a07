"""Remote store clients."""

from .dropbox import (
    ChangeSignal,
    DropboxClient,
    RemoteMetadata,
    RemoteNotFound,
    RemoteObject,
    RemoteStore,
    RemoteStoreError,
)

__all__ = [
    "ChangeSignal",
    "DropboxClient",
    "RemoteMetadata",
    "RemoteNotFound",
    "RemoteObject",
    "RemoteStore",
    "RemoteStoreError",
]
