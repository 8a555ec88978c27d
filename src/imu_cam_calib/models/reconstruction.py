"""
Reconstruction container for IMU-camera calibration.

Holds the views (timestamped camera poses with 2D observations) and tracks
(3D calibration pattern points) produced by an external structure-from-motion
or board-pose step. The calibrator reads initial poses and corners from it
and writes the spline-evaluated poses back into a fresh instance.
"""

import json
import logging
import numpy as np
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .camera_model import PinholeCamera
from ..utils.geometry_utils import Pose

logger = logging.getLogger(__name__)

ViewId = int
TrackId = int


@dataclass
class ViewCamera:
    """
    Camera state of a single view.

    `orientation` rotates world points into the camera frame (R_c_w) and
    `position` is the camera centre in world coordinates.
    """
    intrinsics: PinholeCamera
    orientation: np.ndarray = field(default_factory=lambda: np.eye(3))
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.orientation = np.asarray(self.orientation, dtype=np.float64).reshape(3, 3)
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)

    def camera_to_world(self) -> Pose:
        """Pose T_w_c of this camera."""
        return Pose(rotation=self.orientation.T, translation=self.position)

    def set_from_camera_to_world(self, T_w_c: Pose):
        self.orientation = T_w_c.rotation.T.copy()
        self.position = T_w_c.translation.copy()


@dataclass
class View:
    """Single image of the capture."""
    name: str
    timestamp: float  # seconds
    camera: ViewCamera
    camera_index: int = 0
    features: Dict[TrackId, np.ndarray] = field(default_factory=dict)
    is_estimated: bool = False

    def add_feature(self, track_id: TrackId, pixel: np.ndarray):
        self.features[track_id] = np.asarray(pixel, dtype=np.float64).reshape(2)

    def track_ids(self) -> List[TrackId]:
        """Track ids observed in this view, ascending."""
        return sorted(self.features)

    def get_feature(self, track_id: TrackId) -> Optional[np.ndarray]:
        return self.features.get(track_id)


class Reconstruction:
    """Views and 3D tracks of a calibration capture."""

    def __init__(self):
        self._views: Dict[ViewId, View] = {}
        self._tracks: Dict[TrackId, np.ndarray] = {}
        self._next_view_id: ViewId = 0
        self._next_track_id: TrackId = 0

    def add_view(self,
                 name: str,
                 camera_index: int = 0,
                 timestamp: float = 0.0,
                 intrinsics: Optional[PinholeCamera] = None) -> ViewId:
        """
        Add a view and return its id.

        Views without intrinsics inherit those of the first view, so exported
        datasets stay projectable.
        """
        if intrinsics is None:
            if not self._views:
                raise ValueError("Intrinsics are required for the first view")
            intrinsics = self._views[min(self._views)].camera.intrinsics

        view_id = self._next_view_id
        self._views[view_id] = View(
            name=name,
            timestamp=float(timestamp),
            camera=ViewCamera(intrinsics=intrinsics),
            camera_index=camera_index
        )
        self._next_view_id += 1
        return view_id

    def add_track(self, point: np.ndarray) -> TrackId:
        track_id = self._next_track_id
        self._tracks[track_id] = np.asarray(point, dtype=np.float64).reshape(3)
        self._next_track_id += 1
        return track_id

    def view_ids(self) -> List[ViewId]:
        return sorted(self._views)

    def track_ids(self) -> List[TrackId]:
        return sorted(self._tracks)

    def view(self, view_id: ViewId) -> View:
        return self._views[view_id]

    def track(self, track_id: TrackId) -> np.ndarray:
        return self._tracks[track_id]

    @property
    def num_views(self) -> int:
        return len(self._views)

    @property
    def num_tracks(self) -> int:
        return len(self._tracks)

    def to_dict(self) -> Dict:
        """Convert to a JSON-serializable dictionary."""
        views = []
        for view_id in self.view_ids():
            view = self._views[view_id]
            views.append({
                'view_id': view_id,
                'name': view.name,
                'timestamp': view.timestamp,
                'camera_index': view.camera_index,
                'is_estimated': view.is_estimated,
                'intrinsics': view.camera.intrinsics.to_dict(),
                'orientation': view.camera.orientation.tolist(),
                'position': view.camera.position.tolist(),
                'features': {str(tid): px.tolist() for tid, px in view.features.items()},
            })
        tracks = {str(tid): point.tolist() for tid, point in self._tracks.items()}
        return {'views': views, 'tracks': tracks}

    @classmethod
    def from_dict(cls, d: Dict) -> 'Reconstruction':
        """Create from dictionary."""
        recon = cls()
        for tid, point in d.get('tracks', {}).items():
            recon._tracks[int(tid)] = np.asarray(point, dtype=np.float64)
        recon._next_track_id = max(recon._tracks, default=-1) + 1

        for v in d.get('views', []):
            view_id = int(v['view_id'])
            view = View(
                name=v['name'],
                timestamp=float(v['timestamp']),
                camera=ViewCamera(
                    intrinsics=PinholeCamera.from_dict(v['intrinsics']),
                    orientation=np.asarray(v['orientation']),
                    position=np.asarray(v['position'])
                ),
                camera_index=v.get('camera_index', 0),
                is_estimated=v.get('is_estimated', False)
            )
            for tid, px in v.get('features', {}).items():
                view.add_feature(int(tid), px)
            recon._views[view_id] = view
        recon._next_view_id = max(recon._views, default=-1) + 1
        return recon

    def save_json(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved reconstruction with {self.num_views} views to {path}")

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> 'Reconstruction':
        with open(path, 'r') as f:
            recon = cls.from_dict(json.load(f))
        logger.info(f"Loaded reconstruction with {recon.num_views} views, "
                    f"{recon.num_tracks} tracks from {path}")
        return recon
