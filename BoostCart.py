import abc
import logging
import pickle
import time

import numpy as np
from sklearn.svm import LinearSVR
from sklearn.tree import DecisionTreeRegressor

from Shape import ShapeRotation

LOGGER=logging.getLogger('jda.boostcart')


class CartEnsemble(abc.ABC):
    """Boosted carts of one stage.

    Carts are appended one at a time by `Train`; the stage's global shape
    regression is fitted once, after the last cart, by `GlobalRegression`.
    """

    @abc.abstractmethod
    def Train(self, pos, neg):
        """Fit one more cart, update pool scores and return its rejection threshold."""

    @abc.abstractmethod
    def GlobalRegression(self, pos, neg, mean_shape):
        """Fit the stage's shape regression and apply it to both pools."""

    @abc.abstractmethod
    def Score(self, img, img_h, img_q, shape, score, cart_n, regress):
        """Walk the first `cart_n` carts starting from cumulative `score`.

        Returns (score, shape_delta, rejected, n) where n is the number of
        carts walked. The shape delta is zero unless `regress` is set, the
        regression is fitted and no cart rejected the region.
        """

    @abc.abstractmethod
    def SerializeTo(self, fd):
        pass

    @abc.abstractmethod
    def SerializeFrom(self, fd):
        pass


################### features ###################
# random shape-indexed pixel differences, one row per feature:
# (view scale, landmark 1, landmark 2, dx1, dy1, dx2, dy2)
def GenerateFeatures(rng, feature_num, landmark_n, radius):
    features=np.zeros((feature_num, 7))
    features[:, 0]=rng.randint(3, size=feature_num)
    features[:, 1]=rng.randint(landmark_n, size=feature_num)
    features[:, 2]=rng.randint(landmark_n, size=feature_num)
    # uniform inside a disk of the stage radius
    angle=rng.uniform(0, 2*np.pi, size=(feature_num, 2))
    r=np.sqrt(rng.uniform(0, 1, size=(feature_num, 2)))*radius
    features[:, 3]=r[:, 0]*np.cos(angle[:, 0])
    features[:, 4]=r[:, 0]*np.sin(angle[:, 0])
    features[:, 5]=r[:, 1]*np.cos(angle[:, 1])
    features[:, 6]=r[:, 1]*np.sin(angle[:, 1])
    return features

# relative [-1,1] points to clipped pixel indexes of view
def _Pixels(points, view):
    h, w=view.shape
    x=np.clip(((points[:, 0]+1)*w/2).astype(int), 0, w-1)
    y=np.clip(((points[:, 1]+1)*h/2).astype(int), 0, h-1)
    return y, x

def ExtractFeatures(img, img_h, img_q, shape, features):
    values=np.zeros(len(features))
    scales=features[:, 0].astype(int)
    p1=shape[features[:, 1].astype(int)]+features[:, 3:5]
    p2=shape[features[:, 2].astype(int)]+features[:, 5:7]
    for s, view in enumerate((img, img_h, img_q)):
        sel=scales==s
        if not sel.any():
            continue
        y1, x1=_Pixels(p1[sel], view)
        y2, x2=_Pixels(p2[sel], view)
        values[sel]=view[y1, x1]-view[y2, x2]
    return values

def ExtractBatch(dataset, features):
    X=np.zeros((dataset.size, len(features)))
    for i in range(dataset.size):
        img, img_h, img_q=dataset.Sample(i)
        X[i]=ExtractFeatures(img, img_h, img_q, dataset.current_shapes[i], features)
    return X

####################### carts ############################
# map node ids of a fitted tree to consecutive leaf indexes, -1 on split nodes
def GetLeaves(cart):
    children_left=cart.tree_.children_left
    children_right=cart.tree_.children_right
    inds=np.where(children_left==children_right)[0]
    leaves=np.full(cart.tree_.node_count, -1, dtype=np.int64)
    leaves[inds]=np.arange(len(inds))
    return leaves, len(inds)

def _Apply(cart, X):
    if len(X)==0:
        return np.zeros(0, dtype=np.intp)
    return cart.apply(X)

def _Normalize(w):
    total=w.sum()
    return w/total if total>0 else w

# gentle boost leaf outputs from the weighted samples reaching every node
def LeafScores(node_count, leaf_pos, w_pos, leaf_neg, w_neg):
    wp=np.bincount(leaf_pos, weights=w_pos, minlength=node_count)
    wn=np.bincount(leaf_neg, weights=w_neg, minlength=node_count)
    total=wp+wn
    scores=np.zeros(node_count)
    reached=total>0
    scores[reached]=(wp[reached]-wn[reached])/total[reached]
    return scores

# lowest score keeping a `recall` fraction of the positives
def RecallThreshold(scores, recall):
    ordered=np.sort(scores)
    idx=int(np.floor((1.-recall)*len(ordered)))
    return ordered[min(idx, len(ordered)-1)]


class BoostCart(CartEnsemble):

    def __init__(self, stage, cfg):
        self.stage=stage
        self.K=cfg.K
        self.landmark_n=cfg.landmark_n
        self.tree_depth=cfg.tree_depth
        self.feature_num=cfg.feature_num[stage]
        self.radius=cfg.local_radius[stage]
        self.probability=cfg.probability[stage]
        self.recall=cfg.recall[stage]
        self.seed=cfg.seed
        self.carts=[]
        self.features=[]
        self.leaf_scores=[]
        self.thresholds=[]
        # global regression, fitted after the last cart
        self.mean_shape=None
        self.leaf_index=None
        self.leaf_offsets=None
        self.W=None
        self.b=None

    def Train(self, pos, neg):
        if pos.size==0:
            raise RuntimeError('stage %d has no positive samples left' % self.stage)
        t1=time.time()
        k=len(self.carts)
        # seeded per cart so a resumed run draws what an uninterrupted one would
        rng=np.random.RandomState([self.seed, self.stage, k])
        features=GenerateFeatures(rng, self.feature_num, self.landmark_n, self.radius)
        X_pos=ExtractBatch(pos, features)
        X_neg=ExtractBatch(neg, features)
        w_pos=_Normalize(np.exp(-pos.scores))
        w_neg=_Normalize(np.exp(neg.scores))
        cart=DecisionTreeRegressor(max_depth=self.tree_depth, random_state=rng.randint(2**31-1))
        is_cls=rng.rand()<self.probability and neg.size>0
        if is_cls:
            X=np.vstack([X_pos, X_neg])
            y=np.concatenate([np.ones(pos.size), -np.ones(neg.size)])
            cart.fit(X, y, sample_weight=np.concatenate([w_pos, w_neg]))
        else:
            landmark=rng.randint(self.landmark_n)
            residual=pos.gt_shapes[:, landmark]-pos.current_shapes[:, landmark]
            cart.fit(X_pos, residual, sample_weight=w_pos)
        leaf_pos=_Apply(cart, X_pos)
        leaf_neg=_Apply(cart, X_neg)
        leaf_scores=LeafScores(cart.tree_.node_count, leaf_pos, w_pos, leaf_neg, w_neg)
        pos.scores=pos.scores+leaf_scores[leaf_pos]
        neg.scores=neg.scores+leaf_scores[leaf_neg]
        th=RecallThreshold(pos.scores, self.recall)

        self.carts.append(cart)
        self.features.append(features)
        self.leaf_scores.append(leaf_scores)
        self.thresholds.append(th)
        LOGGER.info('stage %d cart %d: %s, threshold %.4f, pos %d neg %d, use: %.2fs',
                    self.stage, k, 'classification' if is_cls else 'regression', th,
                    pos.size, neg.size, time.time()-t1)
        return th

    # node ids reached by every sample, one column per cart
    def _Leaves(self, dataset):
        nodes=np.zeros((dataset.size, len(self.carts)), dtype=np.intp)
        for k, cart in enumerate(self.carts):
            nodes[:, k]=_Apply(cart, ExtractBatch(dataset, self.features[k]))
        return nodes

    def _BinaryFeatureIndex(self, nodes):
        return np.array([self.leaf_offsets[k]+self.leaf_index[k][node] for k, node in enumerate(nodes)])

    # do global regression
    def GlobalRegression(self, pos, neg, mean_shape):
        t1=time.time()
        self.mean_shape=np.array(mean_shape, dtype=np.float64)
        leaves=[GetLeaves(cart) for cart in self.carts]
        self.leaf_index=[index for index, _ in leaves]
        self.leaf_offsets=np.concatenate([[0], np.cumsum([num for _, num in leaves])[:-1]]).astype(np.int64)
        total=sum(num for _, num in leaves)

        nodes=self._Leaves(pos)
        local_binary_features=np.zeros((pos.size, total))
        targets=np.zeros((pos.size, self.landmark_n, 2))
        for i in range(pos.size):
            local_binary_features[i, self._BinaryFeatureIndex(nodes[i])]=1
            # residual expressed in the reference frame
            R=ShapeRotation(pos.current_shapes[i], self.mean_shape)
            targets[i]=(pos.gt_shapes[i]-pos.current_shapes[i]).dot(R.T)

        W=np.zeros((total, 2*self.landmark_n))
        b=np.zeros(2*self.landmark_n)
        for j in range(self.landmark_n):
            for c in range(2):
                svr=LinearSVR(C=1./len(targets), dual=True, loss='squared_epsilon_insensitive', epsilon=0.0001)
                svr.fit(local_binary_features, targets[:, j, c])
                W[:, 2*j+c]=svr.coef_
                b[2*j+c]=svr.intercept_[0]
        self.W=W
        self.b=b

        for dataset in (pos, neg):
            nodes=self._Leaves(dataset)
            shapes=dataset.current_shapes.copy()
            for i in range(dataset.size):
                shapes[i]=shapes[i]+self.ShapeDelta(nodes[i], shapes[i])
            dataset.current_shapes=shapes
        LOGGER.info('stage %d global regression over %d leaves, use: %.2fs', self.stage, total, time.time()-t1)

    # regression output for the reached leaves, moved from the reference frame to shape's frame
    def ShapeDelta(self, nodes, shape):
        update=self.W[self._BinaryFeatureIndex(nodes)].sum(0)+self.b
        R=ShapeRotation(self.mean_shape, shape)
        return update.reshape(self.landmark_n, 2).dot(R.T)

    def Score(self, img, img_h, img_q, shape, score, cart_n, regress):
        nodes=[]
        for k in range(min(cart_n, len(self.carts))):
            x=ExtractFeatures(img, img_h, img_q, shape, self.features[k])
            node=self.carts[k].apply(x.reshape(1, -1))[0]
            score+=self.leaf_scores[k][node]
            nodes.append(node)
            if score<self.thresholds[k]:
                return score, np.zeros_like(shape), True, len(nodes)
        if regress and self.W is not None and len(nodes)==len(self.carts):
            return score, self.ShapeDelta(nodes, shape), False, len(nodes)
        return score, np.zeros_like(shape), False, len(nodes)

    ######################### model ##################################
    def SerializeTo(self, fd):
        pickle.dump({
            'stage': self.stage,
            'carts': self.carts,
            'features': self.features,
            'leaf_scores': self.leaf_scores,
            'thresholds': self.thresholds,
            'mean_shape': self.mean_shape,
            'leaf_index': self.leaf_index,
            'leaf_offsets': self.leaf_offsets,
            'W': self.W,
            'b': self.b,
        }, fd, protocol=pickle.HIGHEST_PROTOCOL)

    def SerializeFrom(self, fd):
        state=pickle.load(fd)
        if state['stage']!=self.stage:
            raise ValueError('block of stage %d read into stage %d' % (state['stage'], self.stage))
        for key, value in state.items():
            setattr(self, key, value)
