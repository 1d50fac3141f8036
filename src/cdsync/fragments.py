"""Split oversized content into ordered fragments and reassemble it.

Fragments of ``report.bin`` are stored next to each other as
``report.bin.cdsync-part-001-of-003``, ``...-002-of-003`` and so on. The
replica row of a fragmented file uses the native ID of fragment 1.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple

from .backends.base import MetadataStore
from .clients.base import CloudClient
from .errors import CloudSyncError, CorruptFragmentSetError, NotFoundError
from .hashing import HashingReader
from .logging_config import action_message
from .models import Replica, ReplicaFragment, Status

logger = logging.getLogger(__name__)

FRAGMENT_MARKER = ".cdsync-part-"
_FRAGMENT_RE = re.compile(r'^(?P<name>.+)\.cdsync-part-(?P<number>\d{3,})-of-(?P<total>\d{3,})$')


def fragment_name(name: str, number: int, total: int) -> str:
    """Remote object name of one fragment."""
    return f"{name}{FRAGMENT_MARKER}{number:03d}-of-{total:03d}"


def parse_fragment_name(name: str) -> Optional[Tuple[str, int, int]]:
    """Split a fragment object name into (original name, number, total).

    Returns:
        None if the name is not a fragment name
    """
    match = _FRAGMENT_RE.match(name)
    if not match:
        return None
    return match.group('name'), int(match.group('number')), int(match.group('total'))


def fragment_count(size: int, max_chunk_size: int) -> int:
    if max_chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {max_chunk_size}")
    return max(1, math.ceil(size / max_chunk_size))


class BoundedReader:
    """Reads at most ``limit`` bytes from an underlying stream."""

    def __init__(self, reader: BinaryIO, limit: int):
        self._reader = reader
        self.remaining = limit

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b''
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        chunk = self._reader.read(size)
        self.remaining -= len(chunk)
        return chunk

    def drain(self, chunk_size: int = 1024 * 1024) -> None:
        while self.remaining > 0 and self.read(chunk_size):
            pass


@dataclass
class FragmentDescriptor:
    """One fragment produced by :func:`split`."""

    number: int
    total: int
    size: int
    reader: BoundedReader


def split(reader: BinaryIO, size: int, max_chunk_size: int) -> Iterator[FragmentDescriptor]:
    """Split a stream into ordered fragments without buffering it.

    All fragments share the underlying stream, so each fragment's reader
    must be consumed before the next descriptor is requested; anything
    left unread is skipped.

    Args:
        reader: Source stream
        size: Total number of bytes in the stream
        max_chunk_size: Largest fragment size

    Yields:
        Fragment descriptors numbered from 1
    """
    total = fragment_count(size, max_chunk_size)
    offset = 0
    for number in range(1, total + 1):
        chunk_size = min(max_chunk_size, size - offset)
        bounded = BoundedReader(reader, chunk_size)
        yield FragmentDescriptor(number=number, total=total, size=chunk_size, reader=bounded)
        bounded.drain()
        offset += chunk_size


class ConcatReader:
    """Streams several sources one after another.

    Each source is opened lazily by its opener when the previous one is
    exhausted.
    """

    def __init__(self, openers: List[Callable[[], BinaryIO]]):
        self._openers = list(openers)
        self._current: Optional[BinaryIO] = None

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts = []
            while True:
                chunk = self.read(1024 * 1024)
                if not chunk:
                    return b''.join(parts)
                parts.append(chunk)

        while True:
            if self._current is None:
                if not self._openers:
                    return b''
                self._current = self._openers.pop(0)()
            chunk = self._current.read(size)
            if chunk:
                return chunk
            self._close_current()

    def _close_current(self) -> None:
        close = getattr(self._current, 'close', None)
        if close:
            close()
        self._current = None

    def close(self) -> None:
        if self._current is not None:
            self._close_current()
        self._openers = []


class FragmentManager:
    """Hides providers' maximum object size from the rest of cdsync."""

    def __init__(self, store: Optional[MetadataStore], dry_run: bool = False):
        self.store = store
        self.dry_run = dry_run

    @staticmethod
    def needs_split(size: int, max_object_size: Optional[int]) -> bool:
        return max_object_size is not None and size > max_object_size

    def upload(self, client: CloudClient, folder_id: str, replica: Replica, reader: BinaryIO) -> Replica:
        """Upload content as a replica, fragmenting it for the client's size limit.

        Args:
            client: Destination client
            folder_id: Destination folder native ID
            replica: Template with ``name``, ``size``, ``path``, ``calculated_id``
                and ``file_id`` filled in
            reader: Content stream of exactly ``replica.size`` bytes

        Returns:
            The replica, recorded in the store (not recorded in dry-run)
        """
        replica.provider = client.provider
        replica.account_id = client.account_id
        replica.status = Status.ACTIVE
        replica.parent_folder_id = folder_id
        max_size = client.capabilities.max_object_size
        fragmented = self.needs_split(replica.size, max_size)

        if self.dry_run:
            total = fragment_count(replica.size, max_size) if fragmented else 1
            logger.info(action_message(
                f"Would upload {replica.path} to {client.provider}/{client.account_id}"
                + (f" as {total} fragments" if fragmented else ''),
                True,
            ))
            replica.native_id = f"dry-run:{replica.path}"
            replica.fragmented = fragmented
            return replica

        hashing = HashingReader(reader)
        if not fragmented:
            uploaded = client.upload_file(folder_id, replica.name, hashing, replica.size)
            replica.native_id = uploaded.native_id
            replica.native_hash = uploaded.native_hash or hashing.content_hash
            replica.mod_time = uploaded.mod_time or replica.mod_time
            replica.fragmented = False
            replica.fragments = []
        else:
            replica.fragments = []
            try:
                for descriptor in split(hashing, replica.size, max_size):
                    part_name = fragment_name(replica.name, descriptor.number, descriptor.total)
                    uploaded = client.upload_file(folder_id, part_name, descriptor.reader, descriptor.size)
                    replica.fragments.append(ReplicaFragment(
                        fragment_number=descriptor.number,
                        fragments_total=descriptor.total,
                        size=descriptor.size,
                        native_fragment_id=uploaded.native_id,
                    ))
                    logger.debug(f"Uploaded fragment {descriptor.number}/{descriptor.total} of {replica.name}")
            except Exception:
                self._discard(client, replica)
                raise
            replica.native_id = replica.fragments[0].native_fragment_id
            replica.native_hash = hashing.content_hash
            replica.fragmented = True

        self.record(replica)
        return replica

    def _discard(self, client: CloudClient, replica: Replica) -> None:
        """Delete the fragments of an upload that did not complete."""
        if not replica.fragments:
            return
        for fragment in replica.fragments:
            try:
                client.delete_file(fragment.native_fragment_id)
            except CloudSyncError as e:
                logger.error(
                    f"Could not remove fragment {fragment.fragment_number}/{fragment.fragments_total} "
                    f"of {replica.path} from {client.provider}/{client.account_id}: {e}"
                )
        logger.warning(f"Discarded {len(replica.fragments)} uploaded fragment(s) of {replica.path}")
        replica.fragments = []

    def record(self, replica: Replica) -> Replica:
        """Persist a replica and, if fragmented, its fragment rows."""
        with self.store.transaction():
            self.store.upsert_replica(replica)
            self.store.delete_fragments(replica.id)
            for fragment in replica.fragments:
                fragment.replica_id = replica.id
                self.store.upsert_fragment(fragment)
        return replica

    def native_ids(self, replica: Replica) -> List[str]:
        """Every remote object backing a replica."""
        if not replica.fragmented:
            return [replica.native_id]
        fragments = self.store.get_fragments(replica.id) if replica.id is not None else replica.fragments
        return [fragment.native_fragment_id for fragment in fragments] or [replica.native_id]

    def _checked_fragments(self, replica: Replica) -> List[ReplicaFragment]:
        fragments = self.store.get_fragments(replica.id)
        if not fragments:
            raise CorruptFragmentSetError(f"No fragments recorded for {replica.path}")

        total = fragments[0].fragments_total
        if any(fragment.fragments_total != total for fragment in fragments):
            raise CorruptFragmentSetError(f"Fragments of {replica.path} disagree on the fragment count")
        if total != len(fragments):
            raise CorruptFragmentSetError(
                f"{replica.path} expects {total} fragments, {len(fragments)} recorded"
            )
        numbers = [fragment.fragment_number for fragment in fragments]
        if numbers != list(range(1, total + 1)):
            raise CorruptFragmentSetError(f"Fragment numbering of {replica.path} has gaps: {numbers}")
        if sum(fragment.size for fragment in fragments) != replica.size:
            raise CorruptFragmentSetError(f"Fragment sizes of {replica.path} do not add up to {replica.size}")
        return fragments

    def reconstruct(self, replica: Replica, client: CloudClient) -> ConcatReader:
        """Stream a fragmented replica's content in fragment order.

        Raises:
            CorruptFragmentSetError: If the fragment set is incomplete or a
                fragment cannot be downloaded (raised while reading)
        """
        fragments = self._checked_fragments(replica)

        def opener(fragment: ReplicaFragment) -> Callable[[], BinaryIO]:
            def open_fragment() -> BinaryIO:
                try:
                    return client.download_file(fragment.native_fragment_id)
                except NotFoundError as e:
                    raise CorruptFragmentSetError(
                        f"Fragment {fragment.fragment_number}/{fragment.fragments_total} "
                        f"of {replica.path} is unreachable",
                        cause=e,
                    )
            return open_fragment

        return ConcatReader([opener(fragment) for fragment in fragments])

    def open(self, replica: Replica, client: CloudClient) -> BinaryIO:
        """Open a replica's content, reassembling fragments if needed."""
        if replica.fragmented:
            return self.reconstruct(replica, client)
        return client.download_file(replica.native_id)
