"""Abstract base class for metadata stores."""

from abc import ABC, abstractmethod
from typing import ContextManager, Iterable, List, Optional, Tuple

from ..models import File, Folder, Replica, ReplicaFragment, Status


class MetadataStore(ABC):
    """Abstract base class for the local metadata index.

    Holds the authoritative view of:
    - Files (logical files, independent of location)
    - Replicas (physical copies on one provider account)
    - Replica fragments (ordered chunks of split replicas)
    - Folders (remote folders, for path resolution)
    - Metadata (schema version, last scan times, etc.)

    Implementations must serialize writes and make ``transaction()``
    re-entrant so that a whole scan pass commits or rolls back as one unit.
    """

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """Group mutations into a single atomic commit.

        Nested use joins the outer transaction.
        """
        pass

    # Files

    @abstractmethod
    def upsert_file(self, file: File) -> File:
        """Insert a file (``id`` is None) or update it by ``id``.

        Returns:
            The same File with ``id`` populated
        """
        pass

    @abstractmethod
    def get_file(self, file_id: int) -> Optional[File]:
        pass

    @abstractmethod
    def get_files(self, status: Optional[Status] = None) -> List[File]:
        """List files ordered by path, optionally filtered by status."""
        pass

    @abstractmethod
    def get_files_by_path(self, path: str, include_deleted: bool = False) -> List[File]:
        """Find files at a logical path (case-insensitive).

        Args:
            path: Logical path
            include_deleted: Also return files in the deleted state
        """
        pass

    def get_file_by_path(self, path: str) -> Optional[File]:
        """Return the first non-deleted file at a path, or None."""
        files = self.get_files_by_path(path)
        return files[0] if files else None

    @abstractmethod
    def delete_file(self, file_id: int) -> None:
        """Remove a file together with its replicas and their fragments."""
        pass

    # Replicas

    @abstractmethod
    def upsert_replica(self, replica: Replica) -> Replica:
        """Insert or update a replica keyed by (provider, account_id, native_id).

        Returns:
            The same Replica with ``id`` populated
        """
        pass

    @abstractmethod
    def get_replica(self, provider: str, account_id: str, native_id: str) -> Optional[Replica]:
        pass

    @abstractmethod
    def get_replica_by_id(self, replica_id: int) -> Optional[Replica]:
        pass

    @abstractmethod
    def get_replicas_by_account(
        self, provider: str, account_id: str, status: Optional[Status] = None
    ) -> List[Replica]:
        pass

    @abstractmethod
    def get_replicas_for_file(self, file_id: int, status: Optional[Status] = None) -> List[Replica]:
        pass

    @abstractmethod
    def get_replicas_by_path(self, provider: str, path: str, status: Optional[Status] = None) -> List[Replica]:
        """Find replicas of a provider at a logical path (case-insensitive)."""
        pass

    @abstractmethod
    def find_by_calculated_id(self, calculated_id: str, provider: Optional[str] = None) -> List[Replica]:
        """Find replicas sharing a calculated ID, optionally within one provider."""
        pass

    @abstractmethod
    def find_duplicate_groups(self, provider: str) -> List[List[Replica]]:
        """Group active, hashed replicas of a provider by (calculated_id, native_hash).

        Only groups with more than one replica are returned. Replicas
        without a hash are never grouped.
        """
        pass

    @abstractmethod
    def get_largest_files_exclusive(self, provider: str, account_id: str) -> List[Tuple[File, Replica]]:
        """List active files whose only copy within the provider is on this account.

        Returns:
            (file, replica) pairs ordered by size, largest first
        """
        pass

    @abstractmethod
    def mark_missing(self, replica: Replica, status: Status) -> None:
        """Set a replica that was not observed to soft-deleted or deleted."""
        pass

    @abstractmethod
    def delete_replica(self, replica_id: int) -> None:
        """Remove a replica row and its fragments."""
        pass

    # Fragments

    @abstractmethod
    def upsert_fragment(self, fragment: ReplicaFragment) -> ReplicaFragment:
        """Insert or update a fragment keyed by (replica_id, fragment_number)."""
        pass

    @abstractmethod
    def get_fragments(self, replica_id: int) -> List[ReplicaFragment]:
        """Return fragments of a replica in fragment-number order."""
        pass

    @abstractmethod
    def delete_fragments(self, replica_id: int) -> None:
        pass

    # Folders

    @abstractmethod
    def upsert_folder(self, folder: Folder) -> None:
        pass

    @abstractmethod
    def get_folder_by_path(self, provider: str, account_id: str, path: str) -> Optional[Folder]:
        pass

    @abstractmethod
    def get_folders(self, provider: str, account_id: str) -> List[Folder]:
        pass

    @abstractmethod
    def delete_folders(self, provider: str, account_id: str, keep_ids: Iterable[str]) -> None:
        """Drop folder rows of an account except the given native IDs."""
        pass

    # Metadata

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[str]:
        """Get metadata value.

        Args:
            key: Metadata key (e.g., 'schema_version')

        Returns:
            Value string, or None if not found
        """
        pass

    @abstractmethod
    def set_metadata(self, key: str, value: str) -> None:
        pass

    # Scan coordination

    @abstractmethod
    def scan_marker(self, account_key: tuple) -> ContextManager[None]:
        """Mark an account as being scanned for the duration of the block."""
        pass

    @abstractmethod
    def wait_for_scans(self, account_keys: Iterable[tuple], timeout: float = 0.0) -> List[tuple]:
        """Wait until the given accounts are not being scanned.

        Returns:
            Account keys still busy when the timeout elapsed
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close store and release resources."""
        pass
