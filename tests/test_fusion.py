import numpy as np
import pytest

from fakes import unit

from face_pipeline.embedder import cosine_similarity
from face_pipeline.fusion import FusionPolicy


def _pair(seed):
    rng = np.random.default_rng(seed)
    return unit(rng.normal(size=512)), unit(rng.normal(size=256))


def test_weighted_concat_cosine_is_weighted_sum_of_cosines():
    policy = FusionPolicy("weighted_concat", "v1", identity_weight=0.8, appearance_weight=0.2)
    id1, app1 = _pair(1)
    id2, app2 = _pair(2)
    id2 = unit(id1 + 0.3 * id2)

    fused1 = policy.fuse(id1, app1)
    fused2 = policy.fuse(id2, app2)

    expected = 0.8 * cosine_similarity(id1, id2) + 0.2 * cosine_similarity(app1, app2)
    assert fused1.shape == (768,)
    assert cosine_similarity(fused1, fused2) == pytest.approx(expected, abs=1e-5)


def test_weights_are_normalized():
    policy = FusionPolicy("weighted_concat", "v1", identity_weight=4, appearance_weight=1)
    assert policy.identity_weight == pytest.approx(0.8)
    assert policy.appearance_weight == pytest.approx(0.2)


def test_missing_appearance_contributes_zeros():
    policy = FusionPolicy("weighted_concat", "v1", identity_weight=0.8, appearance_weight=0.2)
    identity, _ = _pair(3)
    fused = policy.fuse(identity, None)
    assert np.linalg.norm(fused) == pytest.approx(1.0, abs=1e-5)
    assert not fused[512:].any()
    np.testing.assert_allclose(fused[:512], identity, atol=1e-6)


def test_no_identity_means_no_fused_vector():
    assert FusionPolicy().fuse(None, np.ones(256)) is None


def test_weighted_sum_pads_shorter_vector():
    policy = FusionPolicy("weighted_sum", "v1")
    identity, appearance = _pair(4)
    fused = policy.fuse(identity, appearance)
    assert fused.shape == (512,)
    assert policy.dimension == 512
    assert np.linalg.norm(fused) == pytest.approx(1.0, abs=1e-5)


def test_identity_only_ignores_appearance():
    policy = FusionPolicy("identity_only", "v2")
    identity, appearance = _pair(5)
    np.testing.assert_allclose(policy.fuse(identity, appearance), identity, atol=1e-6)
    assert policy.key == "identity_only:v2"


def test_describe_and_validation():
    described = FusionPolicy("weighted_concat", "v1").describe()
    assert described["key"] == "weighted_concat:v1"
    assert described["dimension"] == 768
    with pytest.raises(ValueError):
        FusionPolicy("learned_scaler", "v1")
    with pytest.raises(ValueError):
        FusionPolicy("weighted_sum", "v1", identity_weight=0, appearance_weight=0)
    with pytest.raises(ValueError):
        FusionPolicy().fuse(np.ones(128))
