import logging
import yaml

################### params ###################
param_stage_num=5
param_cart_num=1080
param_landmark_num=5
param_tree_depth=4
# side of the normalized face patch, half and quarter views are derived from it
param_img_size=80
param_feature_num=[500, 500, 500, 300, 300]
param_local_radius=[0.4, 0.3, 0.2, 0.15, 0.1]
# probability of a classification cart, otherwise a regression cart
param_probability=[0.9, 0.8, 0.7, 0.6, 0.5]
param_recall=[0.9999, 0.9999, 0.9999, 0.9999, 0.9999]
# negative / positive ratio of the training pools
param_nps=[1.0, 1.0, 1.0, 1.0, 1.0]
param_mining_max_attempts=10000000

################### detection ###################
param_detect_min_size=80
param_detect_scale_factor=1.2
param_detect_step_ratio=0.1
param_nms_overlap=0.3

param_save_dir='../model'
param_seed=0

DEFAULTS={
    'T': param_stage_num,
    'K': param_cart_num,
    'landmark_n': param_landmark_num,
    'tree_depth': param_tree_depth,
    'img_size': param_img_size,
    'feature_num': param_feature_num,
    'local_radius': param_local_radius,
    'probability': param_probability,
    'recall': param_recall,
    'nps': param_nps,
    'mining_max_attempts': param_mining_max_attempts,
    'detect_min_size': param_detect_min_size,
    'detect_scale_factor': param_detect_scale_factor,
    'detect_step_ratio': param_detect_step_ratio,
    'nms_overlap': param_nms_overlap,
    'save_dir': param_save_dir,
    'seed': param_seed,
}

STAGE_PARAMS=('feature_num', 'local_radius', 'probability', 'recall', 'nps')

LOGGER=logging.getLogger('jda.config')


class Config(object):
    """Parameters of one training or detection run.

    Every key of ``DEFAULTS`` becomes an attribute. Per-stage parameters are
    lists indexed by stage and must hold exactly ``T`` values.
    """

    def __init__(self, **overrides):
        unknown=set(overrides)-set(DEFAULTS)
        if unknown:
            raise KeyError('unknown config keys: %s' % ', '.join(sorted(unknown)))
        for key, value in DEFAULTS.items():
            value=overrides.get(key, value)
            if isinstance(value, list):
                value=list(value)
            setattr(self, key, value)
        for key in ('T', 'K', 'landmark_n', 'tree_depth'):
            if getattr(self, key)<1:
                raise ValueError('%s must be positive, got %r' % (key, getattr(self, key)))
        for key in STAGE_PARAMS:
            if len(getattr(self, key))!=self.T:
                raise ValueError('%s needs %d values, got %d' % (key, self.T, len(getattr(self, key))))

    def __repr__(self):
        return 'Config(T=%d, K=%d, landmark_n=%d, tree_depth=%d, img_size=%d)' % (
            self.T, self.K, self.landmark_n, self.tree_depth, self.img_size)


# build a Config from a YAML mapping, missing keys keep their defaults
def LoadConfig(path):
    with open(path, 'r', encoding='utf-8') as fh:
        data=yaml.safe_load(fh) or {}
    LOGGER.debug('Loaded config %s -> keys=%s', path, list(data.keys()))
    return Config(**data)


def SetupLogging(level=logging.INFO):
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    )
