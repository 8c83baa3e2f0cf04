"""State owned by a single merge call."""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from notevault.exceptions import ErrorCode, StorageError
from notevault.models.schema import MAX_RECORD_ID, UNFILED_CATEGORY_ID, MergePolicy
from notevault.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class IdAllocator:
    """Hands out ids that are guaranteed not to collide within one merge.

    Seeded once with the next free id; every mint advances it.
    """

    def __init__(self, next_id: int, kind: str = "record"):
        self._next_id = max(next_id, 1)
        self.kind = kind
        self.minted = 0

    @property
    def next_id(self) -> int:
        return self._next_id

    def mint(self) -> int:
        """Return the next free id.

        Raises:
            StorageError: If the id would not fit in the store.
        """
        new_id = self._next_id
        if new_id > MAX_RECORD_ID:
            raise StorageError(
                f"No {self.kind} ids left to assign",
                operation=f"mint {self.kind} id",
                code=ErrorCode.STORAGE_WRITE_FAILED,
            )
        self._next_id += 1
        self.minted += 1
        logger.debug(f"Minted {self.kind} id {new_id}")
        return new_id

    def __repr__(self) -> str:
        return f"<IdAllocator({self.kind}, next={self._next_id})>"


def _highest(ids: Iterable[Optional[int]]) -> int:
    return max((i for i in ids if i is not None), default=0)


@dataclass
class MergeSession:
    """Category remap and id allocators for one import.

    The category map takes an incoming category id to the live id it was
    stored under (or would have been, for TEST).
    """

    policy: MergePolicy
    note_ids: IdAllocator
    category_ids: IdAllocator
    category_map: Dict[int, int] = field(default_factory=dict)
    # Incoming note ids already written by this merge
    inserted_note_ids: Set[int] = field(default_factory=set)

    @classmethod
    def begin(
        cls,
        policy: MergePolicy,
        repository: NoteRepository,
        incoming_note_ids: Iterable[Optional[int]] = (),
        incoming_category_ids: Iterable[Optional[int]] = (),
    ) -> "MergeSession":
        """Start a session, seeding the allocators above every id in play.

        Seeds also cover the incoming ids so that a minted id can never
        collide with a record inserted verbatim later in the same merge.
        """
        note_seed = max(repository.max_note_id(), _highest(incoming_note_ids)) + 1
        category_seed = (
            max(repository.max_category_id(), _highest(incoming_category_ids)) + 1
        )
        session = cls(
            policy=policy,
            note_ids=IdAllocator(note_seed, "note"),
            category_ids=IdAllocator(category_seed, "category"),
        )
        session.category_map[UNFILED_CATEGORY_ID] = UNFILED_CATEGORY_ID
        logger.debug(
            f"Merge session ({policy.value}): next note id {note_seed}, "
            f"next category id {category_seed}"
        )
        return session

    def remap_category(self, incoming_id: int) -> int:
        """Live id for an incoming category id; unknown categories go to Unfiled."""
        return self.category_map.get(incoming_id, UNFILED_CATEGORY_ID)
