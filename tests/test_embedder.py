import numpy as np
import pytest

from fakes import FakeEmbeddingSession, unit

from face_pipeline.embedder import (
    ARCFACE_TEMPLATE,
    EmbeddingService,
    align_face,
    body_region,
    cosine_similarity,
    crop_region,
    l2_normalize,
)
from face_pipeline.errors import EmbedderUnavailable, EmbeddingExtractionFailed
from face_pipeline.schemas import BoundingBox


def _image(h=240, w=320):
    rng = np.random.default_rng(1)
    return rng.integers(0, 255, size=(h, w, 3), dtype=np.uint8)


def _service(identity=None, appearance=None, **kwargs):
    rng = np.random.default_rng(2)
    identity = identity if identity is not None else rng.normal(size=512)
    return EmbeddingService(
        identity_session=FakeEmbeddingSession(identity),
        appearance_session=FakeEmbeddingSession(appearance) if appearance is not None else None,
        **kwargs,
    )


def test_l2_normalize_and_zero_vector():
    assert np.linalg.norm(l2_normalize(np.array([3.0, 4.0]))) == pytest.approx(1.0)
    assert not l2_normalize(np.zeros(4)).any()


def test_cosine_similarity_properties():
    rng = np.random.default_rng(5)
    for _ in range(20):
        a, b = rng.normal(size=64), rng.normal(size=64)
        s = cosine_similarity(a, b)
        assert -1.0 <= s <= 1.0
        assert s == pytest.approx(cosine_similarity(b, a))
        assert cosine_similarity(a, a) == pytest.approx(1.0, abs=1e-6)
    assert cosine_similarity(np.ones(3), -np.ones(3)) == pytest.approx(-1.0)


def test_crop_region_clamps_and_rejects_small():
    image = _image()
    crop = crop_region(image, (-20, -20, 50, 40), min_size=8)
    assert crop.shape[:2] == (40, 50)
    with pytest.raises(EmbeddingExtractionFailed):
        crop_region(image, (310, 10, 400, 100), min_size=16)  # 10px wide after clamping


def test_align_face_maps_landmarks_onto_template():
    image = _image()
    # Landmarks = template scaled by 2 and shifted
    landmarks = ARCFACE_TEMPLATE * 2 + np.array([40, 10])
    aligned = align_face(image, landmarks, (112, 112))
    assert aligned.shape == (112, 112, 3)


def test_body_region_extends_below_face():
    x1, y1, x2, y2 = body_region(BoundingBox(left=100, top=50, width=20, height=20))
    assert (x1, x2) == pytest.approx((80, 140))
    assert y1 == pytest.approx(40)
    assert y2 == pytest.approx(170)


def test_identity_embedding_is_unit_length_and_uses_aligned_input():
    service = _service()
    bbox = BoundingBox(left=40, top=10, width=230, height=230)
    landmarks = (ARCFACE_TEMPLATE * 2 + np.array([40, 10])).tolist()

    emb = service.identity_embedding(_image(), bbox, landmarks)

    assert emb.shape == (512,)
    assert np.linalg.norm(emb) == pytest.approx(1.0, abs=1e-5)
    feed = service._identity.calls[0]["input.1"]
    assert feed.shape == (1, 3, 112, 112)


def test_appearance_embedding_input_is_body_crop():
    service = _service(appearance=np.ones(256))
    bbox = BoundingBox(left=120, top=40, width=30, height=30)

    emb = service.appearance_embedding(_image(), bbox)

    assert emb.shape == (256,)
    assert service._appearance.calls[0]["input.1"].shape == (1, 3, 256, 128)


def test_extract_skips_degenerate_identity_crop_only():
    service = _service(appearance=np.ones(256))
    tiny = BoundingBox(left=100, top=50, width=4, height=4)

    identity, appearance = service.extract(_image(), tiny)

    assert identity is None
    assert appearance is not None


def test_extract_without_appearance_model():
    service = _service()
    identity, appearance = service.extract(_image(), BoundingBox(left=10, top=10, width=60, height=60))
    assert identity is not None
    assert appearance is None


def test_wrong_output_length_is_an_extraction_failure():
    service = _service(identity=np.ones(128))
    with pytest.raises(EmbeddingExtractionFailed):
        service.identity_embedding(_image(), BoundingBox(left=10, top=10, width=60, height=60))


def test_missing_identity_model_raises_unavailable(tmp_path):
    service = EmbeddingService(
        identity_model_path=tmp_path / "missing.onnx",
        appearance_model_path=tmp_path / "also_missing.onnx",
    )
    with pytest.raises(EmbedderUnavailable):
        service.initialize()
    health = service.health()
    assert health["ok"] is False
    assert "missing.onnx" in health["error"]


def test_fake_identity_vector_is_normalized():
    vector = np.arange(1, 513, dtype=np.float32)
    service = _service(identity=vector)
    emb = service.identity_embedding(_image(), BoundingBox(left=10, top=10, width=60, height=60))
    np.testing.assert_allclose(emb, unit(vector), rtol=1e-5)
