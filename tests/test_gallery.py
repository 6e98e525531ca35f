import threading

import numpy as np
import pytest

from fakes import unit, vector_at_cosine

from face_pipeline.gallery import GalleryMaintainer
from face_pipeline.schemas import BoundingBox, FaceRecord, FaceState, GalleryUpdateEvent

KEY = "weighted_concat:v1"


@pytest.fixture
def base():
    return unit(np.random.default_rng(4).normal(size=16))


def _event(vector, tag_id=1, event_id=1, face_id=None, face_event_id=None, source="manual", version=KEY):
    return GalleryUpdateEvent(
        tag_id=tag_id,
        event_id=event_id,
        face_id=face_id,
        face_event_id=face_event_id if face_event_id is not None else event_id,
        embedding=np.asarray(vector).tolist(),
        fusion_version=version,
        source=source,
    )


def test_first_entry_is_always_accepted(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    result = maintainer.apply(_event(base, face_id=1))
    assert result.accepted and result.reason == "added"
    assert result.similarity is None
    assert len(store.list_gallery_entries(1)) == 1
    np.testing.assert_allclose(maintainer.centroid(1), base, atol=1e-6)


def test_cap_evicts_oldest(store, base):
    maintainer = GalleryMaintainer(store, KEY, max_entries=3)
    ids = []
    for i in range(5):
        result = maintainer.apply(_event(vector_at_cosine(base, 0.9, seed=i), face_id=100 + i))
        assert result.accepted
        ids.append(result.entry_id)

    entries = store.list_gallery_entries(1)
    assert len(entries) == 3
    assert [e.id for e in entries] == ids[2:]
    assert [e.source_face_id for e in entries] == [102, 103, 104]


def test_outlier_is_rejected(store, base):
    maintainer = GalleryMaintainer(store, KEY, outlier_threshold=0.3)
    maintainer.apply(_event(base, face_id=1))

    result = maintainer.apply(_event(vector_at_cosine(base, 0.1, seed=3), face_id=2))

    assert not result.accepted
    assert result.reason == "outlier"
    assert result.similarity == pytest.approx(0.1, abs=1e-4)
    assert len(store.list_gallery_entries(1)) == 1


def test_same_face_is_not_added_twice(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    maintainer.apply(_event(base, face_id=7, source="auto"))
    result = maintainer.apply(_event(base, face_id=7, source="manual"))
    assert result.reason == "duplicate"
    assert len(store.list_gallery_entries(1)) == 1


def test_face_from_another_event_is_rejected(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    result = maintainer.apply(_event(base, event_id=1, face_event_id=2))
    assert result.reason == "scope_mismatch"
    assert store.list_gallery_entries(1) == []


def test_tag_with_entries_in_another_event_is_rejected(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    maintainer.apply(_event(base, tag_id=5, event_id=1, face_id=1))
    result = maintainer.apply(_event(base, tag_id=5, event_id=2, face_id=2))
    assert result.reason == "scope_mismatch"


def test_other_fusion_version_is_rejected(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    result = maintainer.apply(_event(base, version="weighted_sum:v1"))
    assert result.reason == "version_mismatch"


def test_concurrent_updates_to_one_tag_respect_cap(store, base):
    maintainer = GalleryMaintainer(store, KEY, max_entries=4)
    errors = []

    def worker(i):
        try:
            maintainer.apply(_event(vector_at_cosine(base, 0.95, seed=i), face_id=i))
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    entries = store.list_gallery_entries(1)
    assert len(entries) == 4
    assert len({e.source_face_id for e in entries}) == 4


def test_manual_label_moves_face_out_of_other_tags(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    auto = maintainer.apply(_event(base, tag_id=1, face_id=9, source="auto"))
    maintainer.apply(_event(vector_at_cosine(base, 0.9, seed=5), tag_id=1, face_id=10, source="auto"))

    result = maintainer.apply(_event(base, tag_id=2, face_id=9, source="manual"))

    assert result.accepted
    assert result.retracted_ids == [auto.entry_id]
    assert [e.source_face_id for e in store.list_gallery_entries(1)] == [10]
    assert [e.source_face_id for e in store.list_gallery_entries(2)] == [9]


def test_late_auto_update_for_relabeled_face_is_dropped(store, base):
    face = store.save_photo_faces([
        FaceRecord(
            photo_id=1,
            event_id=1,
            bbox=BoundingBox(left=0, top=0, width=10, height=10),
            score=0.9,
            recognized_tag_id=2,
            state=FaceState.MANUALLY_RESOLVED,
        )
    ])[0]
    maintainer = GalleryMaintainer(store, KEY)

    result = maintainer.apply(_event(base, tag_id=1, face_id=face.id, source="auto"))

    assert not result.accepted
    assert result.reason == "superseded"
    assert store.list_gallery_entries(1) == []


def test_remove_tag_forgets_its_lock(store, base):
    maintainer = GalleryMaintainer(store, KEY)
    maintainer.apply(_event(base, tag_id=3, face_id=1))
    assert 3 in maintainer._locks

    assert maintainer.remove_tag(3) == 1

    assert 3 not in maintainer._locks
    assert store.list_gallery_entries(3) == []
