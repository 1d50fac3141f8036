"""Abstract base class for cloud storage clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Tuple

from ..errors import UnsupportedOperationError
from ..models import Folder, OwnershipTransferResult, Quota, Replica


@dataclass(frozen=True)
class Capabilities:
    """What a provider can do natively.

    Attributes:
        ownership_transfer: Files can change owner between accounts of the
            provider without moving data
        max_object_size: Largest single object the provider accepts, in
            bytes (None for no limit)
    """

    ownership_transfer: bool = False
    max_object_size: Optional[int] = None


class CloudClient(ABC):
    """Uniform capability surface of one (provider, account).

    The reconciliation core only ever talks to storage through this
    interface; it never branches on the provider name, only on
    :attr:`capabilities`.
    """

    provider: str = ''

    def __init__(self, account_id: str, capabilities: Optional[Capabilities] = None):
        self.account_id = account_id
        self.capabilities = capabilities or Capabilities()

    @property
    def account_key(self) -> tuple:
        return (self.provider, self.account_id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider}/{self.account_id})"

    @abstractmethod
    def pre_flight_check(self) -> str:
        """Locate the account's sync root folder.

        Returns:
            Native ID of the sync root

        Raises:
            SyncRootNotFoundError: If no sync root exists
            AmbiguousSyncRootError: If more than one sync root exists
        """
        pass

    def get_sync_folder_id(self) -> str:
        """Return the sync root ID (cached by implementations)."""
        return self.pre_flight_check()

    @abstractmethod
    def list_folders(self, parent_id: str) -> List[Folder]:
        """List direct subfolders of a folder.

        Args:
            parent_id: Native folder ID

        Returns:
            Folders with ``id``, ``name`` and ``parent_folder_id`` populated
        """
        pass

    @abstractmethod
    def list_files(self, folder_id: str) -> List[Replica]:
        """List files directly inside a folder.

        Args:
            folder_id: Native folder ID

        Returns:
            One Replica per remote object with ``name``, ``size``,
            ``native_id`` and, when the provider has one, ``native_hash``
        """
        pass

    @abstractmethod
    def upload_file(self, folder_id: str, name: str, reader: BinaryIO, size: int) -> Replica:
        """Upload a stream as a new object.

        Never overwrites: a name collision raises ConflictError.

        Returns:
            Replica describing the created object
        """
        pass

    @abstractmethod
    def download_file(self, native_id: str) -> BinaryIO:
        """Open a binary stream over an object's content."""
        pass

    @abstractmethod
    def delete_file(self, native_id: str) -> None:
        """Delete an object."""
        pass

    def delete_folder(self, folder_id: str) -> None:
        """Delete a folder and everything inside it."""
        self.delete_file(folder_id)

    def list_drive_root(self) -> Tuple[List[Folder], List[Replica]]:
        """List the folders and files at the top level of the drive.

        The sync root is among the returned folders.

        Raises:
            UnsupportedOperationError: If the provider has no browsable drive root
        """
        raise UnsupportedOperationError(
            f"{self.provider} cannot list its drive root"
        )

    @abstractmethod
    def move_file(self, native_id: str, target_folder_id: str) -> None:
        """Move an object into another folder of the same account."""
        pass

    @abstractmethod
    def create_folder(self, parent_id: str, name: str) -> Folder:
        """Create a folder and return it."""
        pass

    @abstractmethod
    def share_folder(self, folder_id: str, account_id: str, role: str = 'writer') -> None:
        """Grant another account access to a folder."""
        pass

    @abstractmethod
    def get_quota(self) -> Quota:
        """Return the account's storage quota."""
        pass

    def transfer_ownership(self, native_id: str, target_account_id: str) -> OwnershipTransferResult:
        """Hand an object over to another account of the same provider.

        Returns:
            TRANSFERRED, or PENDING_CONSENT when the recipient must accept

        Raises:
            UnsupportedOperationError: If the provider cannot transfer ownership
        """
        raise UnsupportedOperationError(
            f"{self.provider} does not support ownership transfer"
        )

    @abstractmethod
    def get_user_identity(self) -> str:
        """Return the identity (email or phone) of the authenticated user."""
        pass
