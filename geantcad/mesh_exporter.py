# geantcad/mesh_exporter.py
"""
Triangulated export of the visible scene (STL binary/ASCII, OBJ).

Each volume is tessellated in its own frame, moved by its world matrix and
concatenated into a single mesh. Boolean solids have no exact tessellation
here; they are drawn as their first operand.
"""
import logging
import math
import os

import numpy as np
import trimesh

from .errors import ExportError
from .geometry_types import ShapeType

logger = logging.getLogger(__name__)

MESH_FORMATS = {
    "stl": "stl",
    "stl_ascii": "stl_ascii",
    "obj": "obj",
}
CIRCLE_SEGMENTS = 36
SPHERE_SEGMENTS = 32


def _revolved_mesh(profile, segments, sphi=0.0, dphi=360.0, exact_segments=False):
    """
    Surface of revolution about z for a closed (r, z) profile given as a
    list of points. Open phi ranges are closed with flat end caps.

    `segments` is per full turn, or spread over `dphi` when `exact_segments`.
    """
    full = dphi >= 360.0 - 1e-9
    if full:
        n_phi = segments
    elif exact_segments:
        n_phi = segments + 1
    else:
        n_phi = max(2, int(math.ceil(segments * dphi / 360.0))) + 1
    phis = np.radians(sphi + np.linspace(0.0, dphi, n_phi, endpoint=not full))

    profile = np.asarray(profile, dtype=float)
    n_prof = len(profile)
    vertices = []
    for phi in phis:
        c, s = math.cos(phi), math.sin(phi)
        for r, z in profile:
            vertices.append((r * c, r * s, z))
    vertices = np.asarray(vertices)

    faces = []
    n_ring = len(phis) if full else len(phis) - 1
    for i in range(n_ring):
        j = (i + 1) % len(phis)
        for k in range(n_prof):
            k2 = (k + 1) % n_prof
            a, b = i * n_prof + k, i * n_prof + k2
            c_, d = j * n_prof + k, j * n_prof + k2
            faces.append((a, c_, b))
            faces.append((b, c_, d))

    if not full:
        for ring, flip in ((0, False), (len(phis) - 1, True)):
            base = ring * n_prof
            for k in range(1, n_prof - 1):
                tri = (base, base + k, base + k + 1)
                faces.append(tri[::-1] if flip else tri)

    mesh = trimesh.Trimesh(vertices=vertices, faces=np.asarray(faces), process=True)
    # Winding is consistent; flip it outward if the profile ran clockwise
    if mesh.volume < 0:
        mesh.invert()
    return mesh


def _plane_profile(z_planes, rmin, rmax, radius_scale=1.0):
    """Closed (r, z) outline: outer radii up the planes, inner radii back down."""
    outer = [(r * radius_scale, z) for z, r in zip(z_planes, rmax)]
    inner = [(r * radius_scale, z) for z, r in reversed(list(zip(z_planes, rmin)))]
    return outer + inner


def shape_to_mesh(shape, operand_lookup=None):
    """
    Tessellates one shape in its local frame (mm). Returns None for shapes
    that produce no surface.
    """
    p = shape.params

    if shape.type is ShapeType.BOX:
        return trimesh.creation.box(extents=(2 * p.x, 2 * p.y, 2 * p.z))

    if shape.type is ShapeType.SPHERE:
        if p.rmin <= 0 and p.dphi >= 360 and p.stheta <= 0 and p.dtheta >= 180:
            return trimesh.creation.uv_sphere(radius=p.rmax, count=[SPHERE_SEGMENTS, SPHERE_SEGMENTS])
        thetas = np.radians(np.linspace(p.stheta, p.stheta + p.dtheta, SPHERE_SEGMENTS // 2 + 1))
        outer = [(p.rmax * math.sin(t), p.rmax * math.cos(t)) for t in thetas]
        if p.rmin > 0:
            inner = [(p.rmin * math.sin(t), p.rmin * math.cos(t)) for t in reversed(thetas)]
        else:
            inner = [(0.0, 0.0)]
        return _revolved_mesh(outer + inner, SPHERE_SEGMENTS, p.sphi, p.dphi)

    if shape.type is ShapeType.TUBE:
        if p.dphi >= 360:
            if p.rmin > 0:
                return trimesh.creation.annulus(r_min=p.rmin, r_max=p.rmax, height=2 * p.dz,
                                                sections=CIRCLE_SEGMENTS)
            return trimesh.creation.cylinder(radius=p.rmax, height=2 * p.dz, sections=CIRCLE_SEGMENTS)
        profile = [(p.rmin, -p.dz), (p.rmax, -p.dz), (p.rmax, p.dz), (p.rmin, p.dz)]
        return _revolved_mesh(profile, CIRCLE_SEGMENTS, p.sphi, p.dphi)

    if shape.type is ShapeType.CONE:
        profile = [(p.rmin1, -p.dz), (p.rmax1, -p.dz), (p.rmax2, p.dz), (p.rmin2, p.dz)]
        return _revolved_mesh(profile, CIRCLE_SEGMENTS, p.sphi, p.dphi)

    if shape.type is ShapeType.POLYCONE:
        return _revolved_mesh(_plane_profile(p.z_planes, p.rmin, p.rmax), CIRCLE_SEGMENTS, p.sphi, p.dphi)

    if shape.type is ShapeType.POLYHEDRA:
        # Radii are distances to the flat faces; num_sides sides span dphi
        n = int(p.num_sides)
        corner = 1.0 / math.cos(math.pi / n) if p.dphi >= 360 else 1.0 / math.cos(math.radians(p.dphi) / (2 * n))
        return _revolved_mesh(_plane_profile(p.z_planes, p.rmin, p.rmax, corner), n, p.sphi, p.dphi,
                              exact_segments=True)

    if shape.type is ShapeType.TRD:
        points = [(sx * p.dx1, sy * p.dy1, -p.dz) for sx in (-1, 1) for sy in (-1, 1)]
        points += [(sx * p.dx2, sy * p.dy2, p.dz) for sx in (-1, 1) for sy in (-1, 1)]
        return trimesh.convex.convex_hull(np.asarray(points))

    if shape.type is ShapeType.BOOLEAN:
        operand = operand_lookup(p.solid_a) if operand_lookup else None
        if operand is None:
            logger.warning("Boolean solid '%s': operand '%s' not found; skipped in mesh export.",
                           shape.name, p.solid_a)
            return None
        logger.warning("Boolean solid '%s' is approximated by its first operand '%s' in mesh export.",
                       shape.name, p.solid_a)
        return shape_to_mesh(operand, None)

    return None


class MeshExporter:
    """Writes the visible volumes of a scene as one triangle mesh."""

    def __init__(self):
        self.last_error = ""

    def _operand_lookup(self, scene):
        def lookup(name):
            for node in scene.nodes():
                if node.shape is not None and (node.name == name or node.shape.name == name):
                    return node.shape
            return None
        return lookup

    def build_mesh(self, scene):
        """Concatenated world-space mesh; raises ExportError if nothing is drawable."""
        lookup = self._operand_lookup(scene)
        meshes = []
        for node in scene.nodes():
            if node is scene.root or not node.visible or node.shape is None:
                continue
            mesh = shape_to_mesh(node.shape, lookup)
            if mesh is None or len(mesh.faces) == 0:
                continue
            mesh.apply_transform(node.world_transform().matrix())
            meshes.append(mesh)
        if not meshes:
            raise ExportError("Nothing to export: the scene has no visible volumes with a shape")
        return trimesh.util.concatenate(meshes)

    def write(self, scene, path, file_format=None):
        path = os.fspath(path)
        if file_format is None:
            file_format = os.path.splitext(path)[1].lstrip(".").lower() or "stl"
        if file_format not in MESH_FORMATS:
            raise ExportError(f"Unsupported mesh format '{file_format}'. Known: {sorted(MESH_FORMATS)}")
        mesh = self.build_mesh(scene)
        try:
            mesh.export(path, file_type=MESH_FORMATS[file_format])
        except OSError as e:
            raise ExportError(f"Could not write mesh to '{path}': {e}") from e
        logger.info("Exported %d triangles to %s", len(mesh.faces), path)

    def export_to_file(self, scene, path, file_format=None):
        self.last_error = ""
        try:
            self.write(scene, path, file_format)
        except ExportError as e:
            self.last_error = str(e)
            logger.error(self.last_error)
            return False
        return True
