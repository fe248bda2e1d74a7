import abc
import logging
import time

import cv2
import numpy as np

from Shape import ReadShape, GenerateBBox, SquareBBox, Shape2Relative

LOGGER=logging.getLogger('jda.dataset')


class NegativePoolExhausted(RuntimeError):
    pass


################### views ###################
# full, half and quarter views of a square patch
def MultiScale(patch):
    size=patch.shape[0]
    half=cv2.resize(patch, (max(1, size//2), max(1, size//2)), interpolation=cv2.INTER_AREA)
    quarter=cv2.resize(patch, (max(1, size//4), max(1, size//4)), interpolation=cv2.INTER_AREA)
    return patch, half, quarter

# crop bbox out of img (zero padded outside) and resize to size x size
def CropPatch(img, bbox, size):
    x1, y1, x2, y2=[int(round(v)) for v in bbox]
    h, w=img.shape
    pad=max(0, -x1, -y1, x2-w, y2-h)
    if pad>0:
        img=cv2.copyMakeBorder(img, pad, pad, pad, pad, cv2.BORDER_CONSTANT, value=0)
        x1, y1, x2, y2=x1+pad, y1+pad, x2+pad, y2+pad
    patch=img[y1:y2, x1:x2]
    return cv2.resize(patch, (size, size), interpolation=cv2.INTER_AREA)


class SampleStore(abc.ABC):
    """Ordered pool of samples seen by the cascade during training.

    Every sample carries its view triple, its current cumulative score and its
    current shape estimate (relative window coordinates).
    """

    scores=None
    current_shapes=None
    gt_shapes=None

    @property
    @abc.abstractmethod
    def size(self):
        pass

    @abc.abstractmethod
    def Sample(self, i):
        """Return the (img, img_h, img_q) views of sample i."""

    @abc.abstractmethod
    def Remove(self, th):
        """Drop every sample whose score is below th."""

    @abc.abstractmethod
    def Rescore(self, scorer):
        """Score every sample from scratch and keep the passing ones."""

    @abc.abstractmethod
    def MoreNegSamples(self, size, scorer):
        """Mine regions accepted by scorer until the pool holds size samples."""


class NegGenerator(object):
    """Random square windows drawn from background images."""

    def __init__(self, backgrounds, img_size, seed=0, min_size=None):
        if not backgrounds:
            raise ValueError('no background images for hard negative mining')
        self.backgrounds=[np.asarray(img, dtype=np.float64) for img in backgrounds]
        self.img_size=img_size
        self.min_size=min_size or img_size
        self.rng=np.random.RandomState(seed)

    def Next(self):
        img=self.backgrounds[self.rng.randint(len(self.backgrounds))]
        h, w=img.shape
        max_size=min(h, w)
        min_size=min(self.min_size, max_size)
        size=self.rng.randint(min_size, max_size+1)
        x=self.rng.randint(0, w-size+1)
        y=self.rng.randint(0, h-size+1)
        return MultiScale(CropPatch(img, [x, y, x+size, y+size], self.img_size))


class DataSet(SampleStore):

    def __init__(self, landmark_n, is_pos, generator=None, max_attempts=10000000):
        self.landmark_n=landmark_n
        self.is_pos=is_pos
        self.generator=generator
        self.max_attempts=max_attempts
        self.views=[]
        self.gt_shapes=np.zeros((0, landmark_n, 2)) if is_pos else None
        self.current_shapes=np.zeros((0, landmark_n, 2))
        self.scores=np.zeros(0)

    @classmethod
    def Positive(cls, patches, gt_shapes):
        dataset=cls(gt_shapes.shape[1], True)
        dataset.views=[MultiScale(np.asarray(patch, dtype=np.float64)) for patch in patches]
        dataset.gt_shapes=np.array(gt_shapes, dtype=np.float64)
        dataset.current_shapes=np.zeros_like(dataset.gt_shapes)
        dataset.scores=np.zeros(len(dataset.views))
        return dataset

    @classmethod
    def Negative(cls, generator, cfg):
        return cls(cfg.landmark_n, False, generator, cfg.mining_max_attempts)

    @property
    def size(self):
        return len(self.views)

    def Sample(self, i):
        return self.views[i]

    def Keep(self, mask):
        mask=np.asarray(mask, dtype=bool)
        self.views=[view for view, keep in zip(self.views, mask) if keep]
        self.scores=self.scores[mask]
        self.current_shapes=self.current_shapes[mask]
        if self.gt_shapes is not None:
            self.gt_shapes=self.gt_shapes[mask]

    def Remove(self, th):
        mask=self.scores>=th
        removed=self.size-int(mask.sum())
        self.Keep(mask)
        return removed

    def Rescore(self, scorer):
        scores=np.zeros(self.size)
        shapes=np.zeros((self.size, self.landmark_n, 2))
        mask=np.zeros(self.size, dtype=bool)
        for i in range(self.size):
            mask[i], scores[i], shapes[i], _=scorer(*self.views[i])
        self.scores=scores
        self.current_shapes=shapes
        self.Keep(mask)
        LOGGER.info('rescored pool: %d of %d samples kept', self.size, len(mask))

    # hard negative mining
    def MoreNegSamples(self, size, scorer):
        need=size-self.size
        if need<=0:
            return 0
        if self.generator is None:
            raise NegativePoolExhausted('no negative generator attached to this pool')
        t1=time.time()
        views, scores, shapes=[], [], []
        attempts=0
        while len(views)<need:
            if attempts>=self.max_attempts:
                raise NegativePoolExhausted('mined %d of %d negatives in %d attempts' % (len(views), need, attempts))
            attempts+=1
            region=self.generator.Next()
            passed, score, shape, _=scorer(*region)
            if passed:
                views.append(region)
                scores.append(score)
                shapes.append(shape)
        self.views.extend(views)
        self.scores=np.concatenate([self.scores, scores])
        self.current_shapes=np.concatenate([self.current_shapes, np.array(shapes).reshape(-1, self.landmark_n, 2)])
        LOGGER.info('mined %d negatives in %d attempts, use: %.2fs', need, attempts, time.time()-t1)
        return attempts


######################## loading ##########################
def LoadImage(path):
    img=cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise IOError('can not read image %s' % path)
    return img.astype(np.float64)

# each line of list_path names an image; its shape lives in the .pts file beside it
def LoadPositives(list_path, cfg, padding=1.3):
    patches=[]
    shapes=[]
    with open(list_path) as f:
        img_list=[line.strip() for line in f if line.strip()]
    t1=time.time()
    for path in img_list:
        img=LoadImage(path)
        shape=ReadShape(path.rsplit('.', 1)[0]+'.pts', cfg.landmark_n)
        bbox=SquareBBox(GenerateBBox(shape), padding)
        patches.append(CropPatch(img, bbox, cfg.img_size))
        shapes.append(Shape2Relative(shape, bbox))
    LOGGER.info('loaded %d positives, use: %.2fs', len(patches), time.time()-t1)
    return DataSet.Positive(patches, np.array(shapes).reshape(-1, cfg.landmark_n, 2))

def LoadBackgrounds(list_path):
    with open(list_path) as f:
        return [LoadImage(line.strip()) for line in f if line.strip()]
