# leakscope/storage/persistence.py - Bucket index persistence
"""
Saves and restores the store's bucket index as a JSON document.

Entries are keyed by (targetId, profileType, tagsHash, bucketStart) and
hold the serialized call tree of one bucket. A separate coverage list
keeps the batch windows each series has observed. Retention and bucket
widths are configuration and are not persisted.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional
import json
import logging
import os
import tempfile

from leakscope.collector.call_tree import CallTree
from leakscope.collector.models import SeriesKey, make_tags
from leakscope.storage.store import Bucket, TimeIndexedStore


FORMAT_VERSION = 1


def index_key(key: SeriesKey, bucket_start: float) -> str:
    """Persisted index key of one bucket"""
    return f"{key.target_id}|{key.profile_type.value}|{key.tags_hash}|{bucket_start:g}"


class StatePersistence:
    """
    Reads and writes a store's buckets to a JSON state file.
    """

    def __init__(self, path: str):
        """
        Initialize persistence for a state file.

        Args:
            path: Path to the JSON state file
        """
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, store: TimeIndexedStore) -> int:
        """
        Write every retained bucket to the state file.

        The file is replaced atomically.

        Args:
            store: Store to snapshot

        Returns:
            Number of buckets written
        """
        index: Dict[str, Dict] = {}
        for key, bucket in store.iter_buckets():
            index[index_key(key, bucket.start)] = {
                'targetId': key.target_id,
                'profileType': key.profile_type.value,
                'tags': key.tags_dict,
                'tagsHash': key.tags_hash,
                'bucketStart': bucket.start,
                'bucketEnd': bucket.end,
                'sealed': bucket.sealed,
                'tree': bucket.tree.to_dict(),
            }

        coverage = []
        for key in store.keys():
            spans = store.covered_spans(key)
            if spans:
                coverage.append({
                    'targetId': key.target_id,
                    'profileType': key.profile_type.value,
                    'tags': key.tags_dict,
                    'spans': [list(span) for span in spans],
                })

        document = {
            'version': FORMAT_VERSION,
            'savedAt': datetime.now().isoformat(),
            'buckets': index,
            'coverage': coverage,
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix='.tmp')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(document, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self.logger.info(f"Saved {len(index)} buckets to {self.path}")
        return len(index)

    def load(self, store: Optional[TimeIndexedStore] = None) -> TimeIndexedStore:
        """
        Restore buckets from the state file into a store.

        Args:
            store: Store to fill (a default store is created if omitted)

        Returns:
            The filled store
        """
        store = store if store is not None else TimeIndexedStore()

        with open(self.path, 'r') as f:
            document = json.load(f)

        version = document.get('version')
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported state file version {version!r} in {self.path}")

        count = 0
        for entry in document.get('buckets', {}).values():
            key = SeriesKey.of(entry['targetId'], entry['profileType'], make_tags(entry.get('tags')))
            tree = CallTree.from_dict(entry['tree'])
            epsilon = 0.0
            if not key.profile_type.is_integral:
                epsilon = store.float_epsilon * max(1.0, abs(tree.total))
            tree.validate(epsilon=epsilon, context=f"(restoring {key})")
            store.restore_bucket(key, Bucket(
                start=entry['bucketStart'],
                end=entry['bucketEnd'],
                tree=tree,
                sealed=entry.get('sealed', True),
            ))
            count += 1

        for entry in document.get('coverage', []):
            key = SeriesKey.of(entry['targetId'], entry['profileType'], make_tags(entry.get('tags')))
            store.restore_coverage(key, [tuple(span) for span in entry['spans']])

        self.logger.info(f"Loaded {count} buckets from {self.path}")
        return store
