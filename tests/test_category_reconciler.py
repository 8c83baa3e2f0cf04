"""Tests for merging categories under each merge policy."""
import pytest

from notevault.exceptions import StorageError
from notevault.models.schema import Category, MergePolicy
from notevault.services.category_reconciler import CategoryReconciler
from notevault.services.merge_session import IdAllocator, MergeSession
from notevault.services.worker import ProgressTracker


def merge(repository, policy, incoming, progress=None):
    session = MergeSession.begin(
        policy, repository, incoming_category_ids=[c.id for c in incoming]
    )
    mapping = CategoryReconciler(repository).merge_categories(
        policy, incoming, session, progress
    )
    return mapping, session


def live_categories(repository):
    return {c.id: c.name for c in repository.get_categories()}


class TestMergeSession:
    """Tests for per-merge id allocation."""

    def test_allocator_counts_up(self):
        allocator = IdAllocator(5, "note")
        assert [allocator.mint(), allocator.mint()] == [5, 6]
        assert allocator.minted == 2
        assert allocator.next_id == 7

    def test_allocator_never_hands_out_zero(self):
        assert IdAllocator(0).mint() == 1

    def test_allocator_stops_at_64_bit_limit(self):
        allocator = IdAllocator(2**63 - 1, "note")
        assert allocator.mint() == 2**63 - 1
        with pytest.raises(StorageError):
            allocator.mint()
        assert allocator.minted == 1

    def test_seeds_above_store_and_incoming_ids(self, populated_store):
        """Minted ids clear both the store and the incoming records."""
        session = MergeSession.begin(
            MergePolicy.ADD,
            populated_store,
            incoming_note_ids=[2, 10, None],
            incoming_category_ids=[1],
        )
        assert session.note_ids.next_id == 11
        assert session.category_ids.next_id == 3

    def test_unknown_category_maps_to_unfiled(self, populated_store):
        session = MergeSession.begin(MergePolicy.ADD, populated_store)
        session.category_map[5] = 9
        assert session.remap_category(5) == 9
        assert session.remap_category(0) == 0
        assert session.remap_category(77) == 0


class TestAddAndUpdate:
    """ADD and UPDATE reuse categories by name and never overwrite."""

    @pytest.mark.parametrize("policy", [MergePolicy.ADD, MergePolicy.UPDATE])
    def test_reuse_by_name_and_mint_on_id_clash(self, populated_store, policy):
        incoming = [Category(id=5, name="Work"), Category(id=1, name="Travel")]
        mapping, _ = merge(populated_store, policy, incoming)

        assert mapping[5] == 1
        # Travel wanted id 1, which Work holds; seed is max(2, 5) + 1
        assert mapping[1] == 6
        assert live_categories(populated_store) == {
            0: "Unfiled", 1: "Work", 2: "Home", 6: "Travel",
        }

    def test_new_category_keeps_free_id(self, populated_store):
        mapping, session = merge(populated_store, MergePolicy.ADD, [Category(id=8, name="Ideas")])
        assert mapping[8] == 8
        assert session.category_ids.minted == 0
        assert populated_store.get_category(8).name == "Ideas"

    def test_duplicate_names_in_input_share_one_category(self, note_repository):
        incoming = [Category(id=3, name="Same"), Category(id=4, name="Same")]
        mapping, _ = merge(note_repository, MergePolicy.ADD, incoming)
        assert mapping[3] == mapping[4] == 3
        assert note_repository.count_categories() == 2


class TestTest:
    """TEST computes the remap but changes nothing."""

    def test_dry_run(self, populated_store):
        before = populated_store.get_state_snapshot()
        incoming = [Category(id=5, name="Work"), Category(id=1, name="Travel")]
        mapping, _ = merge(populated_store, MergePolicy.TEST, incoming)
        assert mapping[5] == 1
        assert mapping[1] == 6
        assert populated_store.get_state_snapshot() == before


class TestRevert:
    """REVERT makes the store's categories match the backup's ids."""

    def test_rename_then_insert(self, populated_store):
        """An id held under another name is renamed to the incoming name."""
        incoming = [Category(id=1, name="Travel"), Category(id=3, name="Work")]
        mapping, _ = merge(populated_store, MergePolicy.REVERT, incoming)
        assert mapping == {0: 0, 1: 1, 3: 3}
        assert live_categories(populated_store) == {
            0: "Unfiled", 1: "Travel", 2: "Home", 3: "Work",
        }
        # Notes follow the id, not the name
        assert populated_store.get_note(1).category_id == 1

    def test_name_under_other_id_is_replaced(self, populated_store):
        """A same-named category under a different id is deleted first."""
        mapping, _ = merge(populated_store, MergePolicy.REVERT, [Category(id=7, name="Work")])
        assert mapping[7] == 7
        assert populated_store.get_category(1) is None
        assert populated_store.get_category(7).name == "Work"
        # Notes of the deleted category were moved to Unfiled
        assert populated_store.get_note(1).category_id == 0

    def test_reserved_name_maps_to_unfiled(self, populated_store):
        mapping, _ = merge(populated_store, MergePolicy.REVERT, [Category(id=4, name="Unfiled")])
        assert mapping[4] == 0
        assert populated_store.get_category(4) is None
        assert populated_store.get_category(0).name == "Unfiled"

    def test_same_category_untouched(self, populated_store):
        before = populated_store.get_state_snapshot()
        merge(populated_store, MergePolicy.REVERT, [Category(id=1, name="Work")])
        assert populated_store.get_state_snapshot() == before


class TestClean:
    """CLEAN replaces every category except Unfiled."""

    def test_replaces_categories(self, populated_store):
        incoming = [Category(id=1, name="Travel"), Category(id=9, name="Work")]
        mapping, _ = merge(populated_store, MergePolicy.CLEAN, incoming)
        assert mapping == {0: 0, 1: 1, 9: 9}
        assert live_categories(populated_store) == {0: "Unfiled", 1: "Travel", 9: "Work"}

    def test_empty_input_leaves_only_unfiled(self, populated_store):
        merge(populated_store, MergePolicy.CLEAN, [])
        assert live_categories(populated_store) == {0: "Unfiled"}

    def test_duplicate_id_goes_to_unfiled(self, note_repository):
        incoming = [Category(id=1, name="A"), Category(id=1, name="B")]
        mapping, _ = merge(note_repository, MergePolicy.CLEAN, incoming)
        assert mapping[1] == 0
        assert live_categories(note_repository) == {0: "Unfiled", 1: "A"}

    def test_unfiled_name_maps_to_unfiled(self, note_repository):
        mapping, _ = merge(note_repository, MergePolicy.CLEAN, [Category(id=5, name="Unfiled")])
        assert mapping[5] == 0
        assert note_repository.count_categories() == 1


class TestReservedCategory:
    """Incoming records for id 0 never touch Unfiled."""

    @pytest.mark.parametrize("policy", list(MergePolicy))
    def test_incoming_id_zero_ignored(self, populated_store, policy):
        merge(populated_store, policy, [Category(id=0, name="Renamed")])
        assert populated_store.get_category(0).name == "Unfiled"
        assert populated_store.get_category_by_name("Renamed") is None

    def test_progress_advanced_per_category(self, note_repository):
        tracker = ProgressTracker()
        incoming = [Category(id=0, name="Unfiled"), Category(id=1, name="A")]
        merge(note_repository, MergePolicy.ADD, incoming, tracker)
        assert tracker.report().done == 2
