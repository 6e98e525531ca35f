import pytest

from face_pipeline.schemas import BoundingBox, FaceRecord, FaceState, GalleryEntry, HeadPose


def _face(photo_id=1, event_id=1, score=0.9):
    return FaceRecord(
        photo_id=photo_id,
        event_id=event_id,
        bbox=BoundingBox(left=10, top=20, width=30, height=40),
        landmarks=[[1.0, 2.0]] * 5,
        pose=HeadPose(yaw=1.5, pitch=-2.0, roll=0.5),
        score=score,
        identity_embedding=[0.1] * 4,
        state=FaceState.UNMATCHED,
        match_reason="below_threshold",
    )


def test_save_photo_faces_assigns_ids_and_round_trips(store):
    saved = store.save_photo_faces([_face(score=0.9), _face(score=0.8)])

    assert all(f.id is not None for f in saved)
    loaded = store.list_faces(photo_id=1)
    assert [f.id for f in loaded] == [f.id for f in saved]
    first = loaded[0]
    assert first.bbox == BoundingBox(left=10, top=20, width=30, height=40)
    assert first.pose == HeadPose(yaw=1.5, pitch=-2.0, roll=0.5)
    assert first.state == FaceState.UNMATCHED
    assert first.identity_embedding == pytest.approx([0.1] * 4)
    assert first.appearance_embedding is None


def test_list_faces_filters(store):
    store.save_photo_faces([_face(photo_id=1, event_id=1)])
    store.save_photo_faces([_face(photo_id=2, event_id=2)])
    assert len(store.list_faces(event_id=2)) == 1
    assert len(store.list_faces()) == 2
    assert store.save_photo_faces([]) == []


def test_update_face(store):
    face = store.save_photo_faces([_face()])[0]
    face.transition(FaceState.MANUALLY_RESOLVED)
    face.recognized_tag_id = 4
    store.update_face(face)

    reloaded = store.get_face(face.id)
    assert reloaded.state == FaceState.MANUALLY_RESOLVED
    assert reloaded.recognized_tag_id == 4
    assert store.get_face(9999) is None


def test_gallery_snapshot_filters_and_remove_tag(store):
    for tag_id, event_id, version in [(1, 1, "a:v1"), (1, 1, "b:v1"), (2, 1, "a:v1"), (3, 2, "a:v1")]:
        store.append_gallery_entry(
            GalleryEntry(tag_id=tag_id, event_id=event_id, embedding=[1.0, 0.0], fusion_version=version)
        )

    assert len(store.gallery_snapshot(1)) == 3
    assert {e.tag_id for e in store.gallery_snapshot(1, "a:v1")} == {1, 2}
    assert [e.tag_id for e in store.gallery_snapshot(1, "a:v1", tag_ids=[2])] == [2]

    assert store.remove_tag(1) == 2
    assert store.list_gallery_entries(1) == []


def test_append_with_eviction_is_one_step(store):
    first = store.append_gallery_entry(GalleryEntry(tag_id=1, event_id=1, embedding=[1.0], fusion_version="k"))
    second = store.append_gallery_entry(
        GalleryEntry(tag_id=1, event_id=1, embedding=[0.5], fusion_version="k"), evict_ids=[first.id]
    )
    entries = store.list_gallery_entries(1)
    assert [e.id for e in entries] == [second.id]
    assert second.created_at is not None


def test_entries_of_one_face_can_be_removed_per_tag(store):
    face = store.save_photo_faces([_face()])[0]
    for tag_id in (4, 5, 5):
        store.append_gallery_entry(
            GalleryEntry(tag_id=tag_id, event_id=1, embedding=[1.0], source_face_id=face.id, fusion_version="k")
        )
    other = store.append_gallery_entry(GalleryEntry(tag_id=5, event_id=1, embedding=[0.5], fusion_version="k"))

    assert store.tags_with_face(face.id) == [4, 5]
    removed = store.remove_face_entries(face.id, tag_id=5)

    assert len(removed) == 2
    assert [e.id for e in store.list_gallery_entries(5)] == [other.id]
    assert store.tags_with_face(face.id) == [4]
