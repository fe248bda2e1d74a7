import logging
import os
import pickle
import tempfile
import time

import cv2
import numpy as np

from BoostCart import BoostCart
from Shape import Shape2Absolute, BBoxOverlap

LOGGER=logging.getLogger('jda.cascador')

INT=np.dtype('<i4')
FLOAT=np.dtype('<f8')


class ConfigMismatchError(Exception):
    pass


class ModelFormatError(Exception):
    pass


class DetectionStatistic(object):
    """Counters of one detection pass.

    `cart_gothrough_n` sums the carts walked by rejected patches, so
    `average_cart_n` is the mean rejection depth. It stays None when no patch
    was rejected.
    """

    def __init__(self):
        self.patch_n=0
        self.face_patch_n=0
        self.nonface_patch_n=0
        self.cart_gothrough_n=0.
        self.average_cart_n=None

    def Add(self, passed, n):
        self.patch_n+=1
        if passed:
            self.face_patch_n+=1
        else:
            self.nonface_patch_n+=1
            self.cart_gothrough_n+=n

    def Finish(self):
        if self.nonface_patch_n>0:
            self.average_cart_n=self.cart_gothrough_n/self.nonface_patch_n
        else:
            self.average_cart_n=None
        return self

    def __repr__(self):
        return 'DetectionStatistic(patch_n=%d, face_patch_n=%d, nonface_patch_n=%d, average_cart_n=%s)' % (
            self.patch_n, self.face_patch_n, self.nonface_patch_n, self.average_cart_n)


class TrainingSession(object):
    """Training pools, owned by one `JoinCascador.Train` call."""

    def __init__(self, pos, neg):
        self.pos=pos
        self.neg=neg


######################## binary io ##########################
def _Write(fd, values, dtype):
    fd.write(np.asarray(values, dtype=dtype).tobytes())

def _Read(fd, dtype, count):
    data=fd.read(dtype.itemsize*count)
    if len(data)!=dtype.itemsize*count:
        raise ModelFormatError('model file truncated: wanted %d bytes, got %d' % (dtype.itemsize*count, len(data)))
    return np.frombuffer(data, dtype=dtype, count=count)


######################## detection ##########################
# square windows [x1,y1,x2,y2] fully inside a h x w image
def ScanWindows(h, w, cfg):
    win=max(cfg.img_size, cfg.detect_min_size)
    while win<=min(h, w):
        step=max(1, int(win*cfg.detect_step_ratio))
        for y in range(0, h-win+1, step):
            for x in range(0, w-win+1, step):
                yield np.array([x, y, x+win, y+win])
        win=max(win+1, int(win*cfg.detect_scale_factor))

# view triple of a window cut from the image pyramid
def WindowViews(img, img_h, img_q, bbox, size):
    x1, y1, x2, y2=bbox
    views=[]
    for view, factor in ((img, 1), (img_h, 2), (img_q, 4)):
        side=max(1, size//factor)
        crop=view[y1//factor:max(y1//factor+1, y2//factor), x1//factor:max(x1//factor+1, x2//factor)]
        views.append(cv2.resize(crop, (side, side), interpolation=cv2.INTER_AREA))
    return tuple(views)

# greedy keep-highest-score grouping over rectangle overlap
def NonMaximumSuppression(rects, scores, shapes, overlap):
    order=sorted(range(len(rects)), key=lambda i: (-scores[i], rects[i][1], rects[i][0], rects[i][2]-rects[i][0]))
    kept=[]
    for i in order:
        if all(BBoxOverlap(rects[i], rects[j])<=overlap for j in kept):
            kept.append(i)
    return [rects[i] for i in kept], [scores[i] for i in kept], [shapes[i] for i in kept]


class JoinCascador(object):
    """Joint cascade for face classification and landmark regression.

    Training progress is tracked by (current_stage_idx, current_cart_idx).
    (s, k) means every stage before s is complete and carts 0..k of stage s
    are trained; (s, K-1) still misses the stage's global regression, which
    moves the cursor to (s+1, -1). A finished cascade sits at (T, -1).
    """

    def __init__(self, cfg, cart_factory=BoostCart):
        self.cfg=cfg
        self.cart_factory=cart_factory
        self.T=cfg.T
        self.K=cfg.K
        self.landmark_n=cfg.landmark_n
        self.tree_depth=cfg.tree_depth
        self.mean_shape=None
        self.btcarts=[]
        self.current_stage_idx=0
        self.current_cart_idx=-1

    def Cursor(self):
        return (self.current_stage_idx, self.current_cart_idx)

    def FullBound(self):
        return (self.T, -1)

    # number of stages touched by a cursor
    @staticmethod
    def StageProgress(bound):
        stage, cart=bound
        return stage+1 if cart>=0 else stage

    def _Advance(self, stage, cart):
        assert (stage, cart)>self.Cursor(), 'cursor may not move from %s to %s' % (self.Cursor(), (stage, cart))
        self.current_stage_idx=stage
        self.current_cart_idx=cart

    def Initialize(self, pos):
        if self.mean_shape is None:
            self.mean_shape=pos.gt_shapes.mean(0)
        return self.mean_shape

    ########################### training ###########################
    def Train(self, pos, neg):
        session=TrainingSession(pos, neg)
        if self.mean_shape is None:
            self.Initialize(pos)
            # every positive starts from the reference shape
            pos.Rescore(self._Scorer(self.Cursor()))
        for s in range(self.current_stage_idx, self.T):
            if len(self.btcarts)==s:
                self.btcarts.append(self.cart_factory(s, self.cfg))
            btcart=self.btcarts[s]
            self._MineNegatives(session, s, self.Cursor())
            for k in range(self.current_cart_idx+1, self.K):
                t1=time.time()
                th=btcart.Train(session.pos, session.neg)
                session.pos.Remove(th)
                session.neg.Remove(th)
                self._MineNegatives(session, s, (s, k))
                self._Advance(s, k)
                self.Snapshot()
                LOGGER.info('stage %d/%d cart %d/%d done, pos %d neg %d, use: %.2fs',
                            s+1, self.T, k+1, self.K, session.pos.size, session.neg.size, time.time()-t1)
            btcart.GlobalRegression(session.pos, session.neg, self.mean_shape)
            self._Advance(s+1, -1)
            self.Snapshot()
            LOGGER.info('stage %d/%d done', s+1, self.T)

    def _Scorer(self, bound):
        def scorer(img, img_h, img_q):
            return self.Validate(img, img_h, img_q, bound)
        return scorer

    def _MineNegatives(self, session, stage, bound):
        size=int(session.pos.size*self.cfg.nps[stage])
        session.neg.MoreNegSamples(size, self._Scorer(bound))

    ########################### scoring ###########################
    def Validate(self, img, img_h, img_q, bound):
        """Score one region against the carts up to `bound`.

        `bound` is a cursor: pass `Cursor()` while training and
        `FullBound()` when testing. Returns (passed, score, shape, n) where
        n counts the carts the region went through.
        """
        bound_stage, bound_cart=bound
        score=0.
        shape=self.mean_shape.copy()
        n=0
        for s in range(min(self.StageProgress(bound), len(self.btcarts))):
            if s<bound_stage:
                cart_n, regress=self.K, True
            else:
                cart_n, regress=bound_cart+1, False
            score, shape_delta, rejected, m=self.btcarts[s].Score(img, img_h, img_q, shape, score, cart_n, regress)
            n+=m
            if rejected:
                return False, score, shape, n
            shape=shape+shape_delta
        return True, score, shape, n

    def Detect(self, img):
        """Detect faces in a gray image.

        Returns (count, rects, scores, shapes, statistic); rects are
        [x1, y1, x2, y2] and shapes are in image coordinates.
        """
        assert img is not None and img.ndim==2 and img.size>0, 'Detect needs a non-empty gray image'
        t1=time.time()
        img=np.asarray(img, dtype=np.float64)
        h, w=img.shape
        img_h=cv2.resize(img, (max(1, w//2), max(1, h//2)), interpolation=cv2.INTER_AREA)
        img_q=cv2.resize(img, (max(1, w//4), max(1, h//4)), interpolation=cv2.INTER_AREA)
        statistic=DetectionStatistic()
        bound=self.FullBound()
        rects, scores, shapes=[], [], []
        for bbox in ScanWindows(h, w, self.cfg):
            views=WindowViews(img, img_h, img_q, bbox, self.cfg.img_size)
            passed, score, shape, n=self.Validate(views[0], views[1], views[2], bound)
            statistic.Add(passed, n)
            if passed:
                rects.append(bbox)
                scores.append(score)
                shapes.append(Shape2Absolute(shape, bbox))
        rects, scores, shapes=NonMaximumSuppression(rects, scores, shapes, self.cfg.nms_overlap)
        statistic.Finish()
        LOGGER.debug('%d faces from %r, use: %.2fs', len(rects), statistic, time.time()-t1)
        return len(rects), rects, scores, shapes, statistic

    ######################### model ##################################
    def SerializeTo(self, fd):
        _Write(fd, [self.T, self.K, self.landmark_n, self.tree_depth], INT)
        _Write(fd, self.mean_shape, FLOAT)
        for btcart in self.btcarts[:self.StageProgress(self.Cursor())]:
            btcart.SerializeTo(fd)
        _Write(fd, self.Cursor(), INT)

    def SerializeFrom(self, fd, check=False):
        start=fd.tell()
        end=fd.seek(0, os.SEEK_END)
        fd.seek(start)
        header=tuple(int(v) for v in _Read(fd, INT, 4))
        expected=(self.T, self.K, self.landmark_n, self.tree_depth)
        if check and header!=expected:
            raise ConfigMismatchError('model has (T, K, landmark_n, tree_depth)=%s, config has %s' % (header, expected))
        self.T, self.K, self.landmark_n, self.tree_depth=header
        self.mean_shape=_Read(fd, FLOAT, self.landmark_n*2).reshape(self.landmark_n, 2).copy()
        self.btcarts=[]
        while fd.tell()<end-2*INT.itemsize:
            btcart=self.cart_factory(len(self.btcarts), self.cfg)
            try:
                btcart.SerializeFrom(fd)
            except (pickle.UnpicklingError, EOFError) as e:
                raise ModelFormatError('model file truncated inside stage %d: %s' % (len(self.btcarts), e)) from e
            self.btcarts.append(btcart)
        cursor=tuple(int(v) for v in _Read(fd, INT, 2))
        if len(self.btcarts)!=self.StageProgress(cursor):
            raise ModelFormatError('model holds %d stages but its cursor %s needs %d' % (
                len(self.btcarts), cursor, self.StageProgress(cursor)))
        self.current_stage_idx, self.current_cart_idx=cursor

    def Snapshot(self):
        stamp=time.strftime('%Y%m%d-%H%M%S')
        if self.current_cart_idx>=0:
            name='jda_tmp_%s_stage_%d_cart_%d' % (stamp, self.current_stage_idx+1, self.current_cart_idx+1)
        else:
            name='jda_tmp_%s_stage_%d_done' % (stamp, self.current_stage_idx)
        path=os.path.join(self.cfg.save_dir, name+'.model')
        n=0
        while os.path.exists(path):
            n+=1
            path=os.path.join(self.cfg.save_dir, '%s_%d.model' % (name, n))
        SaveModel(self, path)
        LOGGER.info('snapshot saved to %s', path)
        return path

    @classmethod
    def Resume(cls, fd, cfg, pos, neg, cart_factory=BoostCart):
        """Restore a snapshot and rebuild both training pools from it.

        Positives are rescored through the restored cascade, negatives are
        mined again; the negative pool itself is never stored.
        """
        joincascador=cls(cfg, cart_factory)
        joincascador.SerializeFrom(fd, check=True)
        bound=joincascador.Cursor()
        LOGGER.info('resumed at stage %d cart %d', bound[0], bound[1])
        pos.Rescore(joincascador._Scorer(bound))
        if bound[0]<joincascador.T:
            joincascador._MineNegatives(TrainingSession(pos, neg), bound[0], bound)
        return joincascador


# write through a temporary file so a failure never leaves a partial model behind
def SaveModel(joincascador, path):
    directory=os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp=tempfile.mkstemp(prefix='.jda_', suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, 'wb') as f:
            joincascador.SerializeTo(f)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    return path

def LoadModel(path, cfg, cart_factory=BoostCart):
    joincascador=JoinCascador(cfg, cart_factory)
    # stage blocks are built from the per-stage config, so it must describe the model
    with open(path, 'rb') as f:
        joincascador.SerializeFrom(f, check=True)
    return joincascador
