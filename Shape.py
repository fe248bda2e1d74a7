import numpy as np
from skimage import transform

################### shape ###################
# load the first `landmark_num` points of a .pts file
def ReadShape(path, landmark_num):
    with open(path) as f:
        lines=f.readlines()
    shape=[]
    for line in lines[3:]:
        if line.strip()=='}' or len(shape)==landmark_num:
            break
        pair=line.split()
        shape.append([float(pair[0]), float(pair[1])])
    if len(shape)!=landmark_num:
        raise ValueError('%s holds %d points, expected %d' % (path, len(shape), landmark_num))
    return np.array(shape)

# transform point to [-1,1] relative to center
def Shape2Relative(shape, bbox):
    w=bbox[2]-bbox[0]
    h=bbox[3]-bbox[1]
    cx=(bbox[0]+bbox[2])/2
    cy=(bbox[1]+bbox[3])/2
    rshape=np.array(shape, dtype=np.float64)
    rshape[:, 0]=(rshape[:, 0]-cx)*2/w
    rshape[:, 1]=(rshape[:, 1]-cy)*2/h
    return rshape

# transform to absolute coord
def Shape2Absolute(rshape, bbox):
    w=bbox[2]-bbox[0]
    h=bbox[3]-bbox[1]
    cx=(bbox[0]+bbox[2])/2
    cy=(bbox[1]+bbox[3])/2
    ashape=np.array(rshape, dtype=np.float64)
    ashape[:, 0]=ashape[:, 0]*w/2+cx
    ashape[:, 1]=ashape[:, 1]*h/2+cy
    return ashape

# make the mean shape as (0,0)
def CenterShape(shape):
    cshape=np.array(shape, dtype=np.float64)
    cshape-=cshape.mean(0)
    return cshape

######################## bbox ##########################
# generate bbox from shape
def GenerateBBox(shape):
    x1=np.min(shape[:, 0])
    y1=np.min(shape[:, 1])
    x2=np.max(shape[:, 0])
    y2=np.max(shape[:, 1])
    return np.array([x1, y1, x2, y2])

# square box sharing the center of bbox, side scaled from its longer edge
def SquareBBox(bbox, scale=1.0):
    cx=(bbox[0]+bbox[2])/2.
    cy=(bbox[1]+bbox[3])/2.
    half=max(bbox[2]-bbox[0], bbox[3]-bbox[1])*scale/2.
    return np.array([cx-half, cy-half, cx+half, cy+half])

# intersection over union of two [x1,y1,x2,y2] boxes
def BBoxOverlap(a, b):
    w=min(a[2], b[2])-max(a[0], b[0])
    h=min(a[3], b[3])-max(a[1], b[1])
    if w<=0 or h<=0:
        return 0.
    inter=w*h
    union=(a[2]-a[0])*(a[3]-a[1])+(b[2]-b[0])*(b[3]-b[1])-inter
    return inter/union

##################### similarity #####################
def SimilarityTransform(src, dst):
    return transform.estimate_transform('similarity', CenterShape(src), CenterShape(dst))

# 2x2 linear part of the similarity taking src to dst, applied to offsets as `offsets.dot(R.T)`
def ShapeRotation(src, dst):
    return SimilarityTransform(src, dst).params[:2, :2]
