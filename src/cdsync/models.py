"""Data model for the cdsync metadata index."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


SYNC_ROOT_NAME = "synched-cloud-drives"
AUX_FOLDER_NAME = "sync-cloud-drives-aux"
SOFT_DELETED_FOLDER_NAME = "soft-deleted"
METADATA_FILE_NAME = "metadata.db"


class Status(str, Enum):
    """Lifecycle status shared by files and replicas."""

    ACTIVE = 'active'
    SOFT_DELETED = 'soft-deleted'
    DELETED = 'deleted'


class OwnershipTransferResult(Enum):
    """Outcome of a native ownership transfer.

    PENDING_CONSENT is not an error: the recipient has to accept the
    transfer before ownership actually changes.
    """

    TRANSFERRED = 'transferred'
    PENDING_CONSENT = 'pending-consent'


def calculated_id(name: str, size: int) -> str:
    """Weak identity key for a file, shared by all of its replicas."""
    return f"{name}-{size}"


@dataclass
class Account:
    """One configured account of a provider."""

    provider: str
    account_id: str
    is_main: bool = False
    credentials_handle: str = ''

    @property
    def key(self) -> tuple:
        return (self.provider, self.account_id)

    def __str__(self) -> str:
        return f"{self.provider}/{self.account_id}"


@dataclass
class File:
    """Logical file, independent of where its copies live."""

    path: str
    name: str
    size: int
    calculated_id: str
    mod_time: Optional[datetime] = None
    status: Status = Status.ACTIVE
    id: Optional[int] = None


@dataclass
class ReplicaFragment:
    """One ordered chunk of a fragmented replica."""

    fragment_number: int
    fragments_total: int
    size: int
    native_fragment_id: str
    replica_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Replica:
    """Physical copy of a file on one (provider, account).

    ``native_hash`` is stored as ``"<algorithm>:<hex digest>"`` so that
    hashes produced by different algorithms are never compared.
    """

    name: str
    size: int
    native_id: str
    provider: str = ''
    account_id: str = ''
    path: str = ''
    calculated_id: str = ''
    native_hash: Optional[str] = None
    mod_time: Optional[datetime] = None
    status: Status = Status.ACTIVE
    fragmented: bool = False
    file_id: Optional[int] = None
    id: Optional[int] = None
    parent_folder_id: Optional[str] = field(default=None, compare=False)
    fragments: List[ReplicaFragment] = field(default_factory=list, compare=False)

    @property
    def hash_algorithm(self) -> Optional[str]:
        if not self.native_hash or ':' not in self.native_hash:
            return None
        return self.native_hash.split(':', 1)[0]

    @property
    def account_key(self) -> tuple:
        return (self.provider, self.account_id)


@dataclass
class Folder:
    """Remote folder, used only to resolve logical paths."""

    id: str
    name: str
    path: str = '/'
    provider: str = ''
    owner_account_id: str = ''
    parent_folder_id: Optional[str] = None


@dataclass
class Quota:
    """Storage quota of one account, in bytes."""

    total: int
    used: int
    free: Optional[int] = None

    def __post_init__(self) -> None:
        if self.free is None:
            self.free = max(self.total - self.used, 0)

    @property
    def usage_ratio(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.used / self.total


def hashes_compatible(left: Optional[str], right: Optional[str]) -> bool:
    """Return False only when both hashes use the same algorithm and differ."""
    if not left or not right:
        return True
    left_algo, _, left_digest = left.partition(':')
    right_algo, _, right_digest = right.partition(':')
    if left_algo != right_algo:
        return True
    return left_digest == right_digest
