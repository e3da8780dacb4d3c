"""Capability interface for the remote hosting platform."""

from typing import Protocol, runtime_checkable

from repo_reconciler.domain.models import FieldValue, RemoteMetadata


@runtime_checkable
class MetadataPlatform(Protocol):
    """
    What the reconciler needs from a hosting platform.

    Implementations raise RemoteNotFound, RemoteUnauthorized, RemoteUnavailable
    or RemoteRejected; anything else is treated as a bug.
    """

    async def fetch_metadata(self, identifier: str) -> RemoteMetadata:
        """Return the current metadata of the repository `owner/repo`."""
        ...

    async def update_field(self, identifier: str, field: str, value: FieldValue) -> None:
        """
        Write a single field. For `topics`, `value` is the set of topics to add;
        topics already present remotely must be kept.
        """
        ...
