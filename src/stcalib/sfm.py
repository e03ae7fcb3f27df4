"""
Hand-off to and from an external structure-from-motion tool (COLMAP).

Export writes undistorted images, a match list and the command lines to run;
import reads the text model (cameras.txt, images.txt, points3D.txt) back into
a VisualStructure tied to the camera frames taking part in the calibration.

    <output>/sfm/<topic>/
        images/<frame_id>.jpg
        info.<fmt>
        matches.txt
        sfm-command-line.txt
        cameras.txt, images.txt, points3D.txt    <- written by the user
"""

import json
import logging
from collections import namedtuple
from pathlib import Path

import cv2
import numpy as np
import yaml
from scipy.spatial.transform import Rotation
from tqdm import tqdm

from .geometry import se3_from_rt, se3_inverse, transform_points

logger = logging.getLogger(__name__)

ColmapCamera = namedtuple('ColmapCamera', ['camera_id', 'model', 'width', 'height', 'params'])
ColmapImage = namedtuple('ColmapImage', ['image_id', 'qvec', 'tvec', 'camera_id', 'name', 'points2d'])
ColmapPoint3D = namedtuple('ColmapPoint3D', ['point3d_id', 'xyz', 'rgb', 'error', 'track'])


class ImagesInfo:
    """Index of the exported images: frame id -> file name under root_path."""

    def __init__(self, topic, root_path, images=None):
        self.topic = topic
        self.root_path = str(root_path)
        self.images = dict(images or {})

    def name_to_id(self):
        return {name: frame_id for frame_id, name in self.images.items()}

    def to_dict(self):
        return {'topic': self.topic, 'root_path': self.root_path,
                'images': {int(k): v for k, v in self.images.items()}}

    @classmethod
    def from_dict(cls, data):
        return cls(data['topic'], data['root_path'], {int(k): v for k, v in data['images'].items()})

    def save(self, path, fmt='yaml'):
        with open(path, 'w') as f:
            if fmt == 'json':
                json.dump(self.to_dict(), f, indent=2)
            else:
                yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    @classmethod
    def load(cls, path):
        path = Path(path)
        with open(path, 'r') as f:
            data = json.load(f) if path.suffix == '.json' else yaml.safe_load(f)
        return cls.from_dict(data)


class Observation:
    def __init__(self, xy, feature_id):
        self.xy = np.asarray(xy, dtype=float)
        self.feature_id = int(feature_id)


class Landmark:
    def __init__(self, position, color=(0, 0, 0), observations=None):
        self.position = np.asarray(position, dtype=float)
        self.color = tuple(int(c) for c in color)
        # view id -> Observation
        self.observations = dict(observations or {})


class View:
    def __init__(self, view_id, timestamp, width, height):
        self.view_id = view_id
        self.timestamp = timestamp
        self.width = width
        self.height = height


class VisualStructure:
    """Views, camera-to-world poses and landmarks of one camera topic."""

    def __init__(self, topic, intrinsics=None):
        self.topic = topic
        self.intrinsics = intrinsics
        self.views = {}
        self.poses = {}
        self.landmarks = {}

    def num_observations(self):
        return sum(len(lm.observations) for lm in self.landmarks.values())


# -----------------
# workspace layout
# -----------------

def normalize_topic(topic):
    return topic.strip('/').replace('/', '-') or 'camera'


def sfm_workspace(output_path, topic):
    return Path(output_path) / 'sfm' / normalize_topic(topic)


def info_file(workspace, fmt='yaml'):
    return Path(workspace) / f'info.{fmt}'


# -------------
# COLMAP readers
# -------------

def _data_lines(path):
    with open(path, 'r') as f:
        return [line.rstrip('\n') for line in f if not line.startswith('#')]


def read_cameras_text(path):
    cameras = {}
    for line in _data_lines(path):
        if not line.strip():
            continue
        elems = line.split()
        cam = ColmapCamera(int(elems[0]), elems[1], int(elems[2]), int(elems[3]),
                           np.array([float(v) for v in elems[4:]]))
        cameras[cam.camera_id] = cam
    return cameras


def read_images_text(path):
    """Two lines per image: the pose line and the (possibly empty) 2D point line."""
    images = {}
    lines = _data_lines(path)
    # skip blank lines between records but keep empty point lines
    i = 0
    while i < len(lines):
        if not lines[i].strip():
            i += 1
            continue
        elems = lines[i].split()
        point_elems = lines[i + 1].split() if i + 1 < len(lines) else []
        points2d = [
            (float(point_elems[k]), float(point_elems[k + 1]), int(point_elems[k + 2]))
            for k in range(0, len(point_elems), 3)
        ]
        image = ColmapImage(
            image_id=int(elems[0]),
            qvec=np.array([float(v) for v in elems[1:5]]),
            tvec=np.array([float(v) for v in elems[5:8]]),
            camera_id=int(elems[8]),
            name=elems[9],
            points2d=points2d,
        )
        images[image.image_id] = image
        i += 2
    return images


def read_points3d_text(path):
    points = {}
    for line in _data_lines(path):
        if not line.strip():
            continue
        elems = line.split()
        track_elems = elems[8:]
        track = [(int(track_elems[k]), int(track_elems[k + 1])) for k in range(0, len(track_elems), 2)]
        pt = ColmapPoint3D(
            point3d_id=int(elems[0]),
            xyz=np.array([float(v) for v in elems[1:4]]),
            rgb=tuple(int(v) for v in elems[4:7]),
            error=float(elems[7]),
            track=track,
        )
        points[pt.point3d_id] = pt
    return points


def colmap_image_to_world(image):
    """COLMAP stores world-to-image poses with quaternions as (qw, qx, qy, qz)."""
    qw, qx, qy, qz = image.qvec
    T_world_to_img = se3_from_rt(Rotation.from_quat([qx, qy, qz, qw]).as_matrix(), image.tvec)
    return se3_inverse(T_world_to_img)


# ------
# export
# ------

def make_sequential_matches(frames, overlap=10):
    """Pairs every frame with its next `overlap` neighbours: {(id_i, id_j)}."""
    ids = [frame.id for frame in frames]
    return {
        (ids[i], ids[j])
        for i in range(len(ids))
        for j in range(i + 1, min(i + 1 + overlap, len(ids)))
    }


def write_sfm_command_lines(workspace, topic, intrinsics, image_path):
    workspace = Path(workspace)
    database_path = workspace / 'database.db'
    match_list_path = workspace / 'matches.txt'

    cmd_logger = logging.getLogger(__name__ + '.command_line')
    cmd_logger.setLevel(logging.INFO)
    cmd_logger.propagate = False
    handler = logging.FileHandler(workspace / 'sfm-command-line.txt', mode='w')
    handler.setFormatter(logging.Formatter('%(message)s'))
    cmd_logger.addHandler(handler)
    try:
        cmd_logger.info(
            f"command line for 'feature_extractor' in colmap for topic '{topic}':\n"
            f"colmap feature_extractor --database_path {database_path} --image_path {image_path} "
            f"--ImageReader.camera_model PINHOLE --ImageReader.single_camera 1 "
            f"--ImageReader.camera_params "
            f"{intrinsics.fx:.3f},{intrinsics.fy:.3f},{intrinsics.cx:.3f},{intrinsics.cy:.3f}\n"
        )
        cmd_logger.info(
            f"command line for 'matches_importer' in colmap for topic '{topic}':\n"
            f"colmap matches_importer --database_path {database_path} --match_list_path {match_list_path} "
            f"--match_type pairs\n"
        )
        cmd_logger.info(
            f"command line for 'colmap gui' for topic '{topic}' (recommended, the mapper is strict "
            f"in finding the initial image pair):\n"
            f"colmap gui --database_path {database_path} --image_path {image_path}\n"
        )
        cmd_logger.info(
            f"command line for 'colmap mapper' for topic '{topic}':\n"
            f"colmap mapper --database_path {database_path} --image_path {image_path} "
            f"--output_path {workspace} --Mapper.init_min_tri_angle 25 --Mapper.init_max_error 1.0 "
            f"--Mapper.tri_min_angle 3 --Mapper.ba_refine_focal_length 0 "
            f"--Mapper.ba_refine_principal_point 0\n"
        )
        cmd_logger.info(
            f"command line for 'model_converter' in colmap for topic '{topic}':\n"
            f"colmap model_converter --input_path {workspace / '0'} --output_path {workspace} "
            f"--output_type TXT\n"
        )
    finally:
        cmd_logger.removeHandler(handler)
        handler.close()


def export_images_for_sfm(frames, intrinsics, topic, workspace, matches, fmt='yaml', progress=True):
    """
    Writes undistorted images, the match list, the command lines and the image index.

    Args:
        frames (list): CameraFrame items of the topic.
        intrinsics (PinholeIntrinsics): Used for undistortion and the extractor command.
        topic (str): Camera topic.
        workspace (Path): The topic's reconstruction workspace.
        matches (set): (frame_id, frame_id) pairs to match.
        fmt (str): 'yaml' or 'json' for the image index.

    Returns:
        ImagesInfo: The saved image index.
    """
    workspace = Path(workspace)
    image_path = workspace / 'images'
    image_path.mkdir(parents=True, exist_ok=True)

    info = ImagesInfo(topic, image_path)
    for frame in tqdm(frames, desc=f"export '{topic}'", disable=not progress):
        filename = f'{frame.id}.jpg'
        info.images[frame.id] = filename
        cv2.imwrite(str(image_path / filename), intrinsics.undistort_image(frame.image))

    with open(workspace / 'matches.txt', 'w') as f:
        for id1, id2 in sorted(matches):
            f.write(f'{id1}.jpg {id2}.jpg\n')

    write_sfm_command_lines(workspace, topic, intrinsics, image_path)
    info.save(info_file(workspace, fmt), fmt)
    logger.info(f"images of topic '{topic}' are exported to '{image_path}', run the commands in "
                f"'{workspace / 'sfm-command-line.txt'}' to reconstruct them.")
    return info


# ------
# import
# ------

def load_visual_structure(frames, intrinsics, topic, workspace, reproj_error_thd, track_len_thd, fmt='yaml'):
    """
    Reads the reconstruction of a camera topic.

    Only views of `frames` are kept; landmarks with a reprojection error above
    `reproj_error_thd` or fewer than `track_len_thd` usable observations are dropped.

    Returns:
        VisualStructure: or None when the index or a model file is missing.
    """
    workspace = Path(workspace)
    required = [
        ('info', info_file(workspace, fmt)),
        ('cameras', workspace / 'cameras.txt'),
        ('images', workspace / 'images.txt'),
        ('points 3D', workspace / 'points3D.txt'),
    ]
    for what, path in required:
        if not path.exists():
            logger.warning(f"the {what} file, i.e., '{path}', does not exist!")
            return None

    info = ImagesInfo.load(info_file(workspace, fmt))
    cameras = read_cameras_text(workspace / 'cameras.txt')
    if len(cameras) != 1:
        logger.warning(f"expect a single camera in the reconstruction of '{topic}', got {len(cameras)}.")
    images = read_images_text(workspace / 'images.txt')
    points3d = read_points3d_text(workspace / 'points3D.txt')

    name_to_id = info.name_to_id()
    frame_by_id = {frame.id: frame for frame in frames}

    structure = VisualStructure(topic, intrinsics)
    for image in images.values():
        view_id = name_to_id.get(image.name)
        frame = frame_by_id.get(view_id)
        # not involved in solving
        if frame is None:
            continue
        structure.views[view_id] = View(view_id, frame.timestamp, intrinsics.width, intrinsics.height)
        structure.poses[view_id] = colmap_image_to_world(image)

    for frame in frames:
        if frame.id not in structure.views:
            logger.warning(
                f"frame indexed as '{frame.id}' of camera '{topic}' is involved in solving but not "
                f"reconstructed in SfM!"
            )

    for pt_id, pt in points3d.items():
        if pt.error > reproj_error_thd or len(pt.track) < track_len_thd:
            continue
        landmark = Landmark(pt.xyz, pt.rgb)
        for image_id, point2d_idx in pt.track:
            image = images[image_id]
            x, y, linked_id = image.points2d[point2d_idx]
            if linked_id != pt_id:
                logger.warning("'point3D_id' of a point3D and of the feature it is connected to are in conflict!")
                continue
            view_id = name_to_id.get(image.name)
            if view_id not in structure.views:
                continue
            landmark.observations[view_id] = Observation((x, y), point2d_idx)
        if len(landmark.observations) >= track_len_thd:
            structure.landmarks[pt_id] = landmark

    logger.info(
        f"visual structure of topic '{topic}': views: {len(structure.views)}, "
        f"landmarks: {len(structure.landmarks)}, observations: {structure.num_observations()}"
    )
    return structure


def transform_visual_structure(structure, transform, scale=1.0):
    """Scales every translation, then applies the rigid transform to poses and landmarks."""
    for view_id, pose in structure.poses.items():
        scaled = pose.copy()
        scaled[:3, 3] *= scale
        structure.poses[view_id] = transform @ scaled
    for landmark in structure.landmarks.values():
        landmark.position = transform_points(transform, landmark.position * scale)
    return structure


def downsample_visual_structure(structure, max_landmarks, max_obs, rng=None):
    """
    Randomly drops landmarks beyond `max_landmarks`, then observations of landmarks
    seen at least `max_obs` times beyond `max_obs`.
    """
    rng = np.random.default_rng() if rng is None else rng

    if len(structure.landmarks) > max_landmarks:
        ids = list(structure.landmarks.keys())
        for idx in rng.choice(len(ids), len(ids) - max_landmarks, replace=False):
            del structure.landmarks[ids[idx]]

    for landmark in structure.landmarks.values():
        if len(landmark.observations) < max_obs:
            continue
        view_ids = list(landmark.observations.keys())
        for idx in rng.choice(len(view_ids), len(view_ids) - max_obs, replace=False):
            del landmark.observations[view_ids[idx]]
    return structure
