# tests/test_persistence.py - Tests for state persistence
"""
Unit tests for saving and restoring the bucket index.
"""

import json

import pytest
from leakscope.collector.call_tree import build_tree
from leakscope.collector.models import Frame, SeriesKey, TimeRange
from leakscope.errors import InvariantViolation
from leakscope.storage.persistence import StatePersistence, index_key
from leakscope.storage.store import TimeIndexedStore


def tree_of(*names, value=1):
    return build_tree([(tuple(Frame(n) for n in names), value)])


@pytest.fixture
def store():
    store = TimeIndexedStore(clock=lambda: 1000)
    store.write('api-1', 'inuse-space', {'region': 'eu'}, 990, tree_of('main', 'alloc', value=4096))
    store.write('api-1', 'cpu-time', {}, 995, tree_of('main', value=0.25))
    store.seal_expired(now=1100)
    store.write('api-1', 'inuse-space', {'region': 'eu'}, 1000, tree_of('main', value=1))
    return store


class TestStatePersistence:
    """Test cases for StatePersistence"""

    def test_save_and_load(self, store, tmp_path):
        """Test that a restored store answers the same queries"""
        path = tmp_path / 'state.json'
        persistence = StatePersistence(str(path))

        assert persistence.save(store) == 3
        assert persistence.exists()

        restored = persistence.load(TimeIndexedStore(clock=lambda: 1000))
        rng = TimeRange(900, 1100)
        for key in store.keys():
            original = store.read(key.target_id, key.profile_type, key.tags, rng).tree
            loaded = restored.read(key.target_id, key.profile_type, key.tags, rng).tree
            assert loaded == original

        key = SeriesKey.of('api-1', 'inuse-space', {'region': 'eu'})
        assert [p.sealed for p in restored.bucket_points(key)] == [True, False]
        assert restored.exists('api-1')

    def test_document_layout(self, store, tmp_path):
        """Test the persisted index keys and entry fields"""
        path = tmp_path / 'state.json'
        StatePersistence(str(path)).save(store)

        document = json.loads(path.read_text())
        key = SeriesKey.of('api-1', 'inuse-space', {'region': 'eu'})
        entry = document['buckets'][index_key(key, 990)]

        assert document['version'] == 1
        assert index_key(key, 990) == f"api-1|inuse-space|{key.tags_hash}|990"
        assert entry['tags'] == {'region': 'eu'}
        assert entry['bucketEnd'] == 1000
        assert entry['tree']['cumulativeValue'] == 4096

    def test_observed_spans_saved(self, store, tmp_path):
        """Test that batch windows survive a save and load"""
        key = SeriesKey.of('api-1', 'inuse-space', {'region': 'eu'})
        store.mark_covered('api-1', 'inuse-space', {'region': 'eu'}, 990, 1030)
        path = tmp_path / 'state.json'
        StatePersistence(str(path)).save(store)

        document = json.loads(path.read_text())
        assert document['coverage'][0]['spans'] == [[990, 1030]]

        restored = StatePersistence(str(path)).load(TimeIndexedStore(clock=lambda: 1000))
        assert restored.covered_spans(key) == ((990, 1030),)
        assert restored.covered_spans(SeriesKey.of('api-1', 'cpu-time', {})) == ()

    def test_load_creates_store(self, store, tmp_path):
        """Test loading without an existing store"""
        path = tmp_path / 'state.json'
        StatePersistence(str(path)).save(store)

        restored = StatePersistence(str(path)).load()
        assert len(restored.keys()) == 2

    def test_corrupt_tree_rejected(self, store, tmp_path):
        """Test that a tree breaking the cumulative invariant is refused"""
        path = tmp_path / 'state.json'
        StatePersistence(str(path)).save(store)

        document = json.loads(path.read_text())
        key = SeriesKey.of('api-1', 'inuse-space', {'region': 'eu'})
        document['buckets'][index_key(key, 990)]['tree']['cumulativeValue'] = 1
        path.write_text(json.dumps(document))

        with pytest.raises(InvariantViolation):
            StatePersistence(str(path)).load()

    def test_overlapping_restore_rejected(self, store, tmp_path):
        """Test that restoring into an overlapping store fails"""
        path = tmp_path / 'state.json'
        StatePersistence(str(path)).save(store)

        with pytest.raises(InvariantViolation):
            StatePersistence(str(path)).load(store)

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / 'state.json'
        path.write_text(json.dumps({'version': 99, 'buckets': {}}))

        with pytest.raises(ValueError):
            StatePersistence(str(path)).load()
