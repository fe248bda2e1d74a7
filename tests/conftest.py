import pickle

import numpy as np
import pytest

from BoostCart import CartEnsemble
from Cascador import JoinCascador
from Config import Config
from DataSet import DataSet, NegGenerator

BASE_SHAPE=np.array([[-0.4, -0.3], [0.4, -0.3], [0.0, 0.4]])


def TinyConfig(save_dir, **overrides):
    T=overrides.pop('T', 2)
    params=dict(
        T=T, K=2, landmark_n=3, tree_depth=2, img_size=16,
        feature_num=[30]*T, local_radius=[0.3]*T, probability=[0.5]*T,
        recall=[1.0]*T, nps=[1.0]*T, mining_max_attempts=20000,
        detect_min_size=16, detect_scale_factor=1.5, detect_step_ratio=0.5,
        nms_overlap=0.3, save_dir=str(save_dir), seed=0,
    )
    params.update(overrides)
    return Config(**params)


class RecordingCart(CartEnsemble):
    """Cart stand-in: every cart adds `std-min_std` and rejects flat regions.

    Visits are appended to `log` as (stage, cart) so traversal order can be
    checked. A fitted stage regression shifts shapes by `shift`.
    """

    def __init__(self, stage, cfg, log=None, min_std=1.0, reject_at=None, shift=0.01):
        self.stage=stage
        self.log=log if log is not None else []
        self.min_std=min_std
        self.reject_at=reject_at
        self.shift=shift
        self.cart_n=0
        self.regressed=False

    def Train(self, pos, neg):
        for pool in (pos, neg):
            gain=np.array([pool.Sample(i)[0].std()-self.min_std for i in range(pool.size)])
            pool.scores=pool.scores+gain
        self.cart_n+=1
        return pos.scores.min()

    def GlobalRegression(self, pos, neg, mean_shape):
        self.regressed=True
        for pool in (pos, neg):
            pool.current_shapes=pool.current_shapes+self.shift

    def Score(self, img, img_h, img_q, shape, score, cart_n, regress):
        n=0
        for k in range(min(cart_n, self.cart_n)):
            self.log.append((self.stage, k))
            n+=1
            score+=img.std()-self.min_std
            if img.std()<self.min_std or (self.stage, k)==self.reject_at:
                return score, np.zeros_like(shape), True, n
        if regress and self.regressed and n==self.cart_n:
            return score, np.full_like(shape, self.shift), False, n
        return score, np.zeros_like(shape), False, n

    def SerializeTo(self, fd):
        pickle.dump((self.stage, self.cart_n, self.regressed), fd)

    def SerializeFrom(self, fd):
        stage, self.cart_n, self.regressed=pickle.load(fd)
        assert stage==self.stage


def RecordingFactory(log=None, **kwargs):
    def factory(stage, cfg):
        return RecordingCart(stage, cfg, log=log, **kwargs)
    return factory


# cascade of recording carts sitting at `cursor`, every touched stage filled
def FakeCascade(cfg, cursor=None, log=None, **kwargs):
    joincascador=JoinCascador(cfg, RecordingFactory(log, **kwargs))
    joincascador.mean_shape=BASE_SHAPE.copy()
    cursor=cursor or joincascador.FullBound()
    for s in range(JoinCascador.StageProgress(cursor)):
        btcart=joincascador.cart_factory(s, cfg)
        btcart.cart_n=cfg.K if s<cursor[0] else cursor[1]+1
        btcart.regressed=s<cursor[0]
        joincascador.btcarts.append(btcart)
    joincascador.current_stage_idx, joincascador.current_cart_idx=cursor
    return joincascador


def MakePositives(n, cfg, seed=0):
    rng=np.random.RandomState(seed)
    patches=rng.uniform(0, 255, size=(n, cfg.img_size, cfg.img_size))
    shapes=BASE_SHAPE[None]+rng.uniform(-0.05, 0.05, size=(n, 3, 2))
    return DataSet.Positive(patches, shapes)


def MakeNegatives(cfg, flat=False, seed=1):
    rng=np.random.RandomState(seed)
    if flat:
        backgrounds=[np.full((48, 48), 128.)]
    else:
        backgrounds=[rng.uniform(0, 255, size=(48, 48)) for _ in range(3)]
    return DataSet.Negative(NegGenerator(backgrounds, cfg.img_size, seed), cfg)


@pytest.fixture
def cfg(tmp_path):
    return TinyConfig(tmp_path)


@pytest.fixture
def textured():
    img=np.random.RandomState(7).uniform(0, 255, size=(16, 16))
    return img, img[::2, ::2].copy(), img[::4, ::4].copy()
