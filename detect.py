import argparse
import logging
import os
import time

import cv2
import numpy as np

from Cascador import LoadModel
from Config import Config, LoadConfig, SetupLogging
from DataSet import LoadImage

LOGGER=logging.getLogger('jda.detect')


def command_line_options(command_line_arguments=None):
    parser=argparse.ArgumentParser(description='Detect faces and landmarks with a trained joint cascade.')
    parser.add_argument('--model', required=True)
    parser.add_argument('--images', required=True, help='list of images to run detection on')
    parser.add_argument('--config', help='YAML file the model was trained with, detection parameters included. '
                        'Required unless the model was trained with the defaults: patch size and detection '
                        'parameters are not stored in the model file')
    parser.add_argument('--out', help='directory for images with drawn detections')
    return parser.parse_args(command_line_arguments)


# boxes in green, landmarks in red
def DrawDetections(img, rects, shapes):
    canvas=cv2.cvtColor(np.clip(img, 0, 255).astype(np.uint8), cv2.COLOR_GRAY2BGR)
    for rect, shape in zip(rects, shapes):
        x1, y1, x2, y2=[int(v) for v in rect]
        cv2.rectangle(canvas, (x1, y1), (x2, y2), (0, 255, 0), 2)
        for x, y in shape:
            cv2.circle(canvas, (int(x), int(y)), 2, (0, 0, 255), -1)
    return canvas


def main(command_line_arguments=None):
    args=command_line_options(command_line_arguments)
    SetupLogging()
    cfg=LoadConfig(args.config) if args.config else Config()
    joincascador=LoadModel(args.model, cfg)
    with open(args.images) as f:
        img_list=[line.strip() for line in f if line.strip()]
    if args.out:
        os.makedirs(args.out, exist_ok=True)

    for path in img_list:
        t1=time.time()
        img=LoadImage(path)
        n, rects, scores, shapes, statistic=joincascador.Detect(img)
        LOGGER.info('%s: %d faces, %d patches, %d rejected, average reject depth %s, use: %.2fs',
                    path, n, statistic.patch_n, statistic.nonface_patch_n, statistic.average_cart_n,
                    time.time()-t1)
        for rect, score in zip(rects, scores):
            LOGGER.info('  face at %s score %.4f', [int(v) for v in rect], score)
        if args.out:
            cv2.imwrite(os.path.join(args.out, os.path.basename(path)), DrawDetections(img, rects, shapes))


if __name__=='__main__':
    main()
