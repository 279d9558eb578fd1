# geantcad/transform.py
import logging

import numpy as np
from scipy.spatial.transform import Rotation as R

from .errors import ValidationError

logger = logging.getLogger(__name__)


def _as_vector3(values, what):
    try:
        vec = np.asarray(values, dtype=float).reshape(3)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{what} must be a 3-vector, got {values!r}") from e
    if not np.all(np.isfinite(vec)):
        raise ValidationError(f"{what} must be finite, got {values!r}")
    return vec


class Transform:
    """
    Local placement of a volume: translation (mm), rotation as a unit
    quaternion stored (x, y, z, w), and a per-axis scale.

    The 4x4 matrix is T @ R @ S, i.e. scale first, then rotation, then
    translation.
    """

    def __init__(self, translation=None, rotation=None, scale=None):
        self._translation = np.zeros(3)
        self._rotation = np.array([0.0, 0.0, 0.0, 1.0])
        self._scale = np.ones(3)
        if translation is not None:
            self.set_translation(translation)
        if rotation is not None:
            self.set_rotation(rotation)
        if scale is not None:
            self.set_scale(scale)

    @classmethod
    def identity(cls):
        return cls()

    # --- Accessors ---

    @property
    def translation(self):
        return self._translation.copy()

    def set_translation(self, translation):
        self._translation = _as_vector3(translation, "Translation")

    @property
    def rotation(self):
        """Unit quaternion as (x, y, z, w)."""
        return self._rotation.copy()

    def set_rotation(self, quaternion):
        try:
            q = np.asarray(quaternion, dtype=float).reshape(4)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Rotation must be a quaternion (x, y, z, w), got {quaternion!r}") from e
        norm = np.linalg.norm(q)
        if not np.isfinite(norm) or norm < 1e-12:
            raise ValidationError(f"Rotation quaternion {quaternion!r} cannot be normalized")
        self._rotation = q / norm

    def set_rotation_euler(self, x, y, z):
        """Sets the rotation from Euler angles in degrees, composed as Rz @ Ry @ Rx."""
        self._rotation = R.from_euler('ZYX', [z, y, x], degrees=True).as_quat()

    @property
    def rotation_euler(self):
        """Euler angles (x, y, z) in degrees such that R = Rz @ Ry @ Rx."""
        z, y, x = R.from_quat(self._rotation).as_euler('ZYX', degrees=True)
        return np.array([x, y, z])

    @property
    def scale(self):
        return self._scale.copy()

    def set_scale(self, scale):
        vec = _as_vector3(scale, "Scale")
        if np.any(vec <= 0):
            raise ValidationError(f"Scale components must be positive, got {list(vec)}")
        self._scale = vec

    # --- Matrices ---

    def rotation_matrix(self):
        return R.from_quat(self._rotation).as_matrix()

    def matrix(self):
        m = np.eye(4)
        m[:3, :3] = self.rotation_matrix() @ np.diag(self._scale)
        m[:3, 3] = self._translation
        return m

    def inverse_matrix(self):
        try:
            return np.linalg.inv(self.matrix())
        except np.linalg.LinAlgError:
            logger.warning("Transform matrix is not invertible; using identity.")
            return np.eye(4)

    # --- Composition ---

    def combine(self, other):
        """Returns the transform that applies `other` first, then `self`."""
        combined = Transform()
        combined._translation = (self.matrix() @ np.append(other._translation, 1.0))[:3]
        combined._rotation = (R.from_quat(self._rotation) * R.from_quat(other._rotation)).as_quat()
        combined._scale = self._scale * other._scale
        return combined

    def transform_point(self, point):
        p = _as_vector3(point, "Point")
        return (self.matrix() @ np.append(p, 1.0))[:3]

    def transform_direction(self, direction):
        d = _as_vector3(direction, "Direction")
        out = (self.matrix() @ np.append(d, 0.0))[:3]
        norm = np.linalg.norm(out)
        return out / norm if norm > 0 else out

    # --- Value semantics ---

    def copy(self):
        clone = Transform()
        clone._translation = self._translation.copy()
        clone._rotation = self._rotation.copy()
        clone._scale = self._scale.copy()
        return clone

    def is_identity(self, atol=1e-9):
        return np.allclose(self.matrix(), np.eye(4), atol=atol)

    def __eq__(self, other):
        if not isinstance(other, Transform):
            return NotImplemented
        return np.allclose(self.matrix(), other.matrix(), atol=1e-9)

    def __repr__(self):
        return (f"Transform(translation={self._translation.tolist()}, "
                f"rotation={self._rotation.tolist()}, scale={self._scale.tolist()})")

    def to_dict(self):
        return {
            "translation": [float(v) for v in self._translation],
            "rotation": [float(v) for v in self._rotation],
            "scale": [float(v) for v in self._scale],
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            translation=data.get("translation", [0.0, 0.0, 0.0]),
            rotation=data.get("rotation", [0.0, 0.0, 0.0, 1.0]),
            scale=data.get("scale", [1.0, 1.0, 1.0]),
        )
