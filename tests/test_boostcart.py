import io

import numpy as np
import pytest
from sklearn.tree import DecisionTreeRegressor

from BoostCart import BoostCart, ExtractFeatures, GenerateFeatures, GetLeaves, LeafScores, RecallThreshold
from conftest import MakePositives, MakeNegatives


@pytest.fixture
def pools(cfg):
    pos=MakePositives(12, cfg)
    pos.current_shapes=np.repeat(pos.gt_shapes.mean(0)[None], pos.size, 0)
    neg=MakeNegatives(cfg)
    neg.MoreNegSamples(12, lambda img, img_h, img_q: (True, 0., pos.gt_shapes.mean(0), 0))
    return pos, neg


def test_recall_threshold():
    assert RecallThreshold(np.array([3., 1., 4., 2.]), 0.75)==2.
    assert RecallThreshold(np.array([3., 1., 4., 2.]), 1.0)==1.


def test_leaf_scores_follow_class_weights():
    scores=LeafScores(3, np.array([1, 1, 2]), np.array([0.5, 0.25, 0.25]), np.array([2, 2]), np.array([0.5, 0.5]))
    assert scores[0]==0.
    assert scores[1]==pytest.approx(1.)
    assert scores[2]==pytest.approx((0.25-1.)/1.25)


def test_get_leaves_indexes_only_leaf_nodes():
    rng=np.random.RandomState(0)
    cart=DecisionTreeRegressor(max_depth=2, random_state=0).fit(rng.rand(40, 3), rng.rand(40))
    leaves, num=GetLeaves(cart)
    is_leaf=cart.tree_.children_left==-1
    assert num==is_leaf.sum()
    assert sorted(leaves[is_leaf])==list(range(num))
    assert np.all(leaves[~is_leaf]==-1)


def test_features_stay_in_bounds(cfg):
    rng=np.random.RandomState(0)
    features=GenerateFeatures(rng, 200, 3, 0.3)
    assert set(features[:, 0])<={0., 1., 2.}
    assert np.all(np.hypot(features[:, 3], features[:, 4])<=0.3+1e-12)
    img=rng.uniform(0, 255, (16, 16))
    # shape far outside the window only clips pixel lookups
    values=ExtractFeatures(img, img[::2, ::2], img[::4, ::4], np.full((3, 2), 5.), features)
    assert values.shape==(200,)
    assert np.all(np.abs(values)<=255)


def test_train_keeps_recall_and_matches_scoring(cfg, pools):
    pos, neg=pools
    btcart=BoostCart(0, cfg)
    shapes=pos.current_shapes.copy()
    for _ in range(cfg.K):
        th=btcart.Train(pos, neg)
        assert pos.Remove(th)==0
        neg.Remove(th)
    assert len(btcart.carts)==cfg.K
    for i in range(pos.size):
        score, shape_delta, rejected, n=btcart.Score(*pos.Sample(i), shapes[i], 0., cfg.K, True)
        assert not rejected
        assert n==cfg.K
        assert score==pos.scores[i]
        # no regression fitted yet
        assert np.all(shape_delta==0)


def test_global_regression_matches_scoring(cfg, pools):
    pos, neg=pools
    btcart=BoostCart(0, cfg)
    for _ in range(cfg.K):
        btcart.Train(pos, neg)
    before=pos.current_shapes.copy()
    btcart.GlobalRegression(pos, neg, pos.gt_shapes.mean(0))
    assert pos.current_shapes.shape==before.shape
    for i in range(pos.size):
        _, shape_delta, rejected, _=btcart.Score(*pos.Sample(i), before[i], 0., cfg.K, True)
        if not rejected:
            np.testing.assert_allclose(before[i]+shape_delta, pos.current_shapes[i], atol=1e-12)


def test_partial_walk_has_no_shape_delta(cfg, pools):
    pos, neg=pools
    btcart=BoostCart(0, cfg)
    for _ in range(cfg.K):
        btcart.Train(pos, neg)
    btcart.GlobalRegression(pos, neg, pos.gt_shapes.mean(0))
    _, shape_delta, _, n=btcart.Score(*pos.Sample(0), pos.current_shapes[0], 0., 1, True)
    assert n<=1
    assert np.all(shape_delta==0)


def test_serialize_round_trip(cfg, pools):
    pos, neg=pools
    btcart=BoostCart(0, cfg)
    for _ in range(cfg.K):
        btcart.Train(pos, neg)
    btcart.GlobalRegression(pos, neg, pos.gt_shapes.mean(0))
    buf=io.BytesIO()
    btcart.SerializeTo(buf)
    buf.seek(0)
    restored=BoostCart(0, cfg)
    restored.SerializeFrom(buf)
    assert restored.thresholds==btcart.thresholds
    np.testing.assert_array_equal(restored.W, btcart.W)
    for i in range(3):
        expected=btcart.Score(*pos.Sample(i), pos.current_shapes[i], 0., cfg.K, True)
        got=restored.Score(*pos.Sample(i), pos.current_shapes[i], 0., cfg.K, True)
        assert got[0]==expected[0]
        np.testing.assert_array_equal(got[1], expected[1])


def test_block_of_other_stage_is_refused(cfg):
    buf=io.BytesIO()
    BoostCart(0, cfg).SerializeTo(buf)
    buf.seek(0)
    with pytest.raises(ValueError):
        BoostCart(1, cfg).SerializeFrom(buf)
