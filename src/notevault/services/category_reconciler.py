"""Merging incoming categories into the live store."""
import logging
from typing import Dict, List, Optional

from notevault.models.schema import UNFILED_CATEGORY_ID, Category, MergePolicy
from notevault.services.merge_session import MergeSession
from notevault.services.worker import ProgressTracker
from notevault.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class CategoryReconciler:
    """Applies a merge policy to a list of incoming categories.

    The result is the category remap recorded in the merge session, which
    the note reconciler uses to file incoming notes.
    """

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def merge_categories(
        self,
        policy: MergePolicy,
        incoming: List[Category],
        session: MergeSession,
        progress: Optional[ProgressTracker] = None,
    ) -> Dict[int, int]:
        """Merge categories and return ``{incoming_id: live_id}``."""
        progress = progress or ProgressTracker()
        logger.debug(f"Merging {len(incoming)} categories ({policy.value})")

        if policy is MergePolicy.CLEAN:
            self.repository.delete_all_categories()

        # Live state, kept current as this merge changes it
        names_by_id: Dict[int, str] = {}
        ids_by_name: Dict[str, int] = {}
        for category in self.repository.get_categories():
            names_by_id[category.id] = category.name
            ids_by_name[category.name] = category.id

        for category in incoming:
            if category.id == UNFILED_CATEGORY_ID:
                progress.advance()
                continue

            if policy is MergePolicy.CLEAN:
                new_id = self._merge_clean(category, names_by_id, ids_by_name)
            elif policy is MergePolicy.REVERT:
                new_id = self._merge_revert(category, names_by_id, ids_by_name)
            else:
                new_id = self._merge_add(
                    category,
                    names_by_id,
                    ids_by_name,
                    session,
                    dry_run=policy is MergePolicy.TEST,
                )

            session.category_map[category.id] = new_id
            progress.advance()

        logger.info(
            f"Merged {len(incoming)} categories ({policy.value}), "
            f"{session.category_ids.minted} new ids"
        )
        return dict(session.category_map)

    def _insert(
        self,
        category_id: int,
        name: str,
        names_by_id: Dict[int, str],
        ids_by_name: Dict[str, int],
    ) -> int:
        self.repository.insert_category(Category(id=category_id, name=name))
        names_by_id[category_id] = name
        ids_by_name[name] = category_id
        return category_id

    def _merge_clean(
        self,
        category: Category,
        names_by_id: Dict[int, str],
        ids_by_name: Dict[str, int],
    ) -> int:
        # Only Unfiled (or an earlier duplicate in the same set) can clash
        if category.name in ids_by_name:
            return ids_by_name[category.name]
        if category.id in names_by_id:
            logger.warning(
                f"Category id {category.id} appears more than once; "
                f"'{category.name}' is filed under Unfiled"
            )
            return UNFILED_CATEGORY_ID
        logger.debug(f"Adding category {category}")
        return self._insert(category.id, category.name, names_by_id, ids_by_name)

    def _merge_revert(
        self,
        category: Category,
        names_by_id: Dict[int, str],
        ids_by_name: Dict[str, int],
    ) -> int:
        old_id = ids_by_name.get(category.name)
        if old_id is not None and old_id != category.id:
            if old_id == UNFILED_CATEGORY_ID:
                # The reserved category keeps its name
                logger.info(
                    f"'{category.name}' is the reserved category; "
                    f"incoming id {category.id} is filed under it"
                )
                return UNFILED_CATEGORY_ID
            logger.debug(
                f"'{category.name}' already exists with id {old_id}; deleting it"
            )
            self.repository.delete_category(old_id)
            del names_by_id[old_id]
            del ids_by_name[category.name]

        if category.id in names_by_id:
            current_name = names_by_id[category.id]
            if current_name != category.name:
                logger.debug(f"Renaming '{current_name}' to '{category.name}'")
                self.repository.update_category(category)
                del ids_by_name[current_name]
                names_by_id[category.id] = category.name
                ids_by_name[category.name] = category.id
            return category.id

        logger.debug(f"Adding category {category}")
        return self._insert(category.id, category.name, names_by_id, ids_by_name)

    def _merge_add(
        self,
        category: Category,
        names_by_id: Dict[int, str],
        ids_by_name: Dict[str, int],
        session: MergeSession,
        dry_run: bool,
    ) -> int:
        if category.name in ids_by_name:
            return ids_by_name[category.name]

        new_id = category.id
        if new_id in names_by_id:
            new_id = session.category_ids.mint()
        if dry_run:
            names_by_id[new_id] = category.name
            ids_by_name[category.name] = new_id
            return new_id
        logger.debug(f"Adding category '{category.name}' as id {new_id}")
        return self._insert(new_id, category.name, names_by_id, ids_by_name)
