import argparse
import logging
import os
import time

from Cascador import JoinCascador, SaveModel
from Config import Config, LoadConfig, SetupLogging
from DataSet import DataSet, NegGenerator, LoadPositives, LoadBackgrounds

LOGGER=logging.getLogger('jda.train')


def command_line_options(command_line_arguments=None):
    parser=argparse.ArgumentParser(description='Train a joint cascade face detector.')
    parser.add_argument('--pos', required=True, help='list of positive images, shapes in .pts files beside them')
    parser.add_argument('--neg', required=True, help='list of background images for hard negative mining')
    parser.add_argument('--config', help='YAML file overriding the default parameters')
    parser.add_argument('--resume', help='snapshot model file to resume training from')
    parser.add_argument('--out', help='final model file, defaults to <save_dir>/jda_<time>.model')
    return parser.parse_args(command_line_arguments)


def main(command_line_arguments=None):
    args=command_line_options(command_line_arguments)
    SetupLogging()
    cfg=LoadConfig(args.config) if args.config else Config()
    pos=LoadPositives(args.pos, cfg)
    neg=DataSet.Negative(NegGenerator(LoadBackgrounds(args.neg), cfg.img_size, cfg.seed), cfg)

    if args.resume:
        with open(args.resume, 'rb') as fd:
            joincascador=JoinCascador.Resume(fd, cfg, pos, neg)
    else:
        joincascador=JoinCascador(cfg)

    t1=time.time()
    joincascador.Train(pos, neg)
    LOGGER.info('training done, use: %.2fs', time.time()-t1)

    out=args.out or os.path.join(cfg.save_dir, 'jda_%s.model' % time.strftime('%Y%m%d-%H%M%S'))
    SaveModel(joincascador, out)
    LOGGER.info('model saved to %s', out)


if __name__=='__main__':
    main()
