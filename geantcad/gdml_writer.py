# geantcad/gdml_writer.py
import logging
import math
import re
import xml.etree.ElementTree as ET
from xml.dom import minidom

import numpy as np
from scipy.spatial.transform import Rotation as R

from .errors import ExportError
from .geometry_types import (
    DEFAULT_OUTPUT_AUNIT, DEFAULT_OUTPUT_LUNIT, MaterialType, OpticalModel, ShapeType,
    convert_from_internal_units, format_double
)

logger = logging.getLogger(__name__)

GDML_SCHEMA_LOCATION = "http://service-spi.web.cern.ch/service-spi/app/releases/GDML/schema/gdml.xsd"
DEFAULT_MATERIAL_REF = "G4_AIR"
PASCAL_PER_ATM = 101325.0
# Photon energy range the surface reflectivity table spans
REFLECTIVITY_ENERGIES = ("1.5*eV", "4.5*eV")


def sanitize_name(name):
    """Every character outside [A-Za-z0-9_] becomes '_'; a leading digit gets a '_' prefix."""
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", name or "")
    if not cleaned:
        return "_"
    if cleaned[0].isdigit():
        cleaned = "_" + cleaned
    return cleaned


def _length(value):
    return format_double(convert_from_internal_units(value, DEFAULT_OUTPUT_LUNIT, "length"))


def _angle(value):
    return format_double(convert_from_internal_units(value, DEFAULT_OUTPUT_AUNIT, "angle"))


def gdml_rotation_angles(rotation):
    """
    GDML (x, y, z) angles in degrees for an object rotated by `rotation`.

    Geant4 builds Rz(z) @ Ry(y) @ Rx(x) from a GDML rotation and places the
    daughter with its inverse, so the angles describe the inverse rotation.
    """
    z, y, x = rotation.inv().as_euler('ZYX', degrees=True)
    return x, y, z


def _rotation_is_identity(rotation):
    return np.allclose(rotation.as_matrix(), np.eye(3), atol=1e-12)


class GDMLWriter:
    """
    Writes a SceneGraph as a GDML string: positions, rotations and optical
    surfaces in <define>, custom materials, one solid per volume, the volume
    tree (daughters before mothers) and the world/skin surfaces in <setup>.
    """

    def __init__(self, scene):
        self.scene = scene
        self.root = ET.Element("gdml", {
            "xmlns:xsi": "http://www.w3.org/2001/XMLSchema-instance",
            "xsi:noNamespaceSchemaLocation": GDML_SCHEMA_LOCATION
        })
        self.names = {}
        self.nodes = []
        self.written_solids = set()
        self.written_elements = set()
        self._collect_nodes()

    # --- Node selection and naming ---

    def _collect_nodes(self):
        """Assigns unique sanitized names. Volumes without a shape are skipped with their subtree."""
        used = set()
        stack = [self.scene.root]
        while stack:
            node = stack.pop()
            if node is not self.scene.root and node.shape is None:
                logger.warning("GDML export: skipping volume '%s' (no shape) and its daughters.", node.name)
                continue
            base = sanitize_name(node.name)
            name = base
            suffix = 1
            while name in used:
                name = f"{base}_{suffix}"
                suffix += 1
            used.add(name)
            self.names[node.id] = name
            self.nodes.append(node)
            stack.extend(reversed(node.children))

    def _is_exported(self, node):
        return node.id in self.names

    def _placed_nodes(self):
        return [n for n in self.nodes if n is not self.scene.root]

    def _optical_nodes(self):
        return [n for n in self.nodes if n.optical_config.enabled]

    def _material_ref(self, material):
        if material is None:
            return DEFAULT_MATERIAL_REF
        if material.is_nist:
            return material.nist_name
        return sanitize_name(material.name)

    # --- <define> ---

    def _add_defines(self):
        define_el = ET.SubElement(self.root, "define")

        for node in self._placed_nodes():
            name = self.names[node.id]
            t = node.transform.translation
            ET.SubElement(define_el, "position", {
                "name": f"{name}_pos", "unit": DEFAULT_OUTPUT_LUNIT,
                "x": _length(t[0]), "y": _length(t[1]), "z": _length(t[2])
            })
            rotation = R.from_quat(node.transform.rotation)
            if not _rotation_is_identity(rotation):
                x, y, z = gdml_rotation_angles(rotation)
                ET.SubElement(define_el, "rotation", {
                    "name": f"{name}_rot", "unit": DEFAULT_OUTPUT_AUNIT,
                    "x": _angle(x), "y": _angle(y), "z": _angle(z)
                })

        for node in self._optical_nodes():
            self._write_optical_surface(node, define_el)

    def _write_optical_surface(self, node, define_el):
        name = self.names[node.id]
        config = node.optical_config
        reflectivity = format_double(config.reflectivity)
        low, high = REFLECTIVITY_ENERGIES
        ET.SubElement(define_el, "matrix", {
            "name": f"{name}_REFLECTIVITY", "coldim": "2",
            "values": f"{low} {reflectivity} {high} {reflectivity}"
        })
        if config.model is OpticalModel.GLISUR:
            value = "1"  # polish
        else:
            value = format_double(math.radians(config.sigma_alpha))  # sigma_alpha
        surf_el = ET.SubElement(define_el, "opticalsurface", {
            "name": f"{name}_optical_surface",
            "model": config.model.value,
            "finish": config.finish.value,
            "type": "dielectric_metal",
            "value": value
        })
        ET.SubElement(surf_el, "property", {"name": "REFLECTIVITY", "ref": f"{name}_REFLECTIVITY"})

    # --- <materials> ---

    def _add_materials(self):
        custom = [m for m in self.scene.materials() if not m.is_nist]
        if not custom:
            return
        materials_el = ET.SubElement(self.root, "materials")
        written = set()
        for material in custom:
            mat_name = sanitize_name(material.name)
            if mat_name in written:
                continue
            for comp in material.components:
                self._write_element(comp.element, materials_el)

            mat_el = ET.SubElement(materials_el, "material", {"name": mat_name, "state": material.state.value})
            if material.material_type is MaterialType.ELEMENT:
                mat_el.set("Z", format_double(material.atomic_number))
            ET.SubElement(mat_el, "T", {"unit": "K", "value": format_double(material.temperature)})
            ET.SubElement(mat_el, "P", {"unit": "pascal", "value": format_double(material.pressure * PASCAL_PER_ATM)})
            ET.SubElement(mat_el, "D", {"unit": "g/cm3", "value": format_double(material.density, 9)})
            if material.material_type is MaterialType.ELEMENT:
                ET.SubElement(mat_el, "atom", {"unit": "g/mole", "value": format_double(material.atomic_mass)})
            for comp in material.components:
                if material.material_type is MaterialType.COMPOUND_MASS:
                    ET.SubElement(mat_el, "fraction", {"n": format_double(comp.amount), "ref": sanitize_name(comp.element.name)})
                else:
                    ET.SubElement(mat_el, "composite", {"n": str(int(comp.amount)), "ref": sanitize_name(comp.element.name)})
            written.add(mat_name)

    def _write_element(self, element, materials_el):
        el_name = sanitize_name(element.name)
        if el_name in self.written_elements:
            return
        el_el = ET.SubElement(materials_el, "element", {
            "name": el_name, "formula": element.symbol, "Z": format_double(element.Z)
        })
        ET.SubElement(el_el, "atom", {"unit": "g/mole", "value": format_double(element.A)})
        self.written_elements.add(el_name)

    # --- <solids> ---

    def _add_solids(self):
        solids_el = ET.SubElement(self.root, "solids")
        for node in self.nodes:
            self._write_solid_recursive(node, solids_el, set())

    def _solid_name(self, node):
        return f"{self.names[node.id]}_shape"

    def _resolve_operand(self, operand):
        """Finds the volume a boolean operand name refers to: volume name, GDML name, then shape name."""
        for match in (lambda n: n.name == operand,
                      lambda n: self.names[n.id] == operand,
                      lambda n: n.shape.name == operand):
            for node in self.nodes:
                if node.shape is not None and match(node):
                    return node
        return None

    def _write_solid_recursive(self, node, solids_el, in_progress):
        """Writes a volume's solid, writing boolean operands first."""
        if node.id in self.written_solids:
            return
        if node.id in in_progress:
            raise ExportError(f"Boolean solid of '{node.name}' references itself through its operands")
        if node.shape.type is ShapeType.BOOLEAN:
            in_progress.add(node.id)
            for operand in (node.shape.params.solid_a, node.shape.params.solid_b):
                operand_node = self._resolve_operand(operand)
                if operand_node is not None:
                    self._write_solid_recursive(operand_node, solids_el, in_progress)
            in_progress.discard(node.id)
        self._write_single_solid(node, solids_el)
        self.written_solids.add(node.id)

    def _operand_ref(self, owner, operand):
        operand_node = self._resolve_operand(operand)
        if operand_node is None:
            logger.warning("GDML export: boolean solid of '%s' references unknown solid '%s'.", owner.name, operand)
            return f"{sanitize_name(operand)}_shape"
        return self._solid_name(operand_node)

    def _write_single_solid(self, node, solids_el):
        shape = node.shape
        p = shape.params
        name = self._solid_name(node)
        lunit = {"lunit": DEFAULT_OUTPUT_LUNIT}
        both = {"lunit": DEFAULT_OUTPUT_LUNIT, "aunit": DEFAULT_OUTPUT_AUNIT}

        if shape.type is ShapeType.BOX:
            ET.SubElement(solids_el, "box", {
                "name": name, **lunit,
                "x": _length(2 * p.x), "y": _length(2 * p.y), "z": _length(2 * p.z)
            })

        elif shape.type is ShapeType.TUBE:
            ET.SubElement(solids_el, "tube", {
                "name": name, **both,
                "rmin": _length(p.rmin), "rmax": _length(p.rmax), "z": _length(2 * p.dz),
                "startphi": _angle(p.sphi), "deltaphi": _angle(p.dphi)
            })

        elif shape.type is ShapeType.SPHERE:
            ET.SubElement(solids_el, "sphere", {
                "name": name, **both,
                "rmin": _length(p.rmin), "rmax": _length(p.rmax),
                "startphi": _angle(p.sphi), "deltaphi": _angle(p.dphi),
                "starttheta": _angle(p.stheta), "deltatheta": _angle(p.dtheta)
            })

        elif shape.type is ShapeType.CONE:
            ET.SubElement(solids_el, "cone", {
                "name": name, **both,
                "rmin1": _length(p.rmin1), "rmax1": _length(p.rmax1),
                "rmin2": _length(p.rmin2), "rmax2": _length(p.rmax2),
                "z": _length(2 * p.dz),
                "startphi": _angle(p.sphi), "deltaphi": _angle(p.dphi)
            })

        elif shape.type is ShapeType.TRD:
            ET.SubElement(solids_el, "trd", {
                "name": name, **lunit,
                "x1": _length(2 * p.dx1), "x2": _length(2 * p.dx2),
                "y1": _length(2 * p.dy1), "y2": _length(2 * p.dy2),
                "z": _length(2 * p.dz)
            })

        elif shape.type in (ShapeType.POLYCONE, ShapeType.POLYHEDRA):
            attrs = {"name": name, **both, "startphi": _angle(p.sphi), "deltaphi": _angle(p.dphi)}
            if shape.type is ShapeType.POLYHEDRA:
                attrs["numsides"] = str(int(p.num_sides))
            solid_el = ET.SubElement(solids_el, shape.type.value, attrs)
            for z, r_in, r_out in zip(p.z_planes, p.rmin, p.rmax):
                ET.SubElement(solid_el, "zplane", {"rmin": _length(r_in), "rmax": _length(r_out), "z": _length(z)})

        elif shape.type is ShapeType.BOOLEAN:
            bool_el = ET.SubElement(solids_el, p.operation.value, {"name": name})
            ET.SubElement(bool_el, "first", {"ref": self._operand_ref(node, p.solid_a)})
            ET.SubElement(bool_el, "second", {"ref": self._operand_ref(node, p.solid_b)})
            if any(abs(v) > 1e-12 for v in p.rel_translation):
                ET.SubElement(bool_el, "position", {
                    "name": f"{name}_position", "unit": DEFAULT_OUTPUT_LUNIT,
                    "x": _length(p.rel_pos_x), "y": _length(p.rel_pos_y), "z": _length(p.rel_pos_z)
                })
            rotation = R.from_euler('ZYX', [p.rel_rot_z, p.rel_rot_y, p.rel_rot_x], degrees=True)
            if not _rotation_is_identity(rotation):
                x, y, z = gdml_rotation_angles(rotation)
                ET.SubElement(bool_el, "rotation", {
                    "name": f"{name}_rotation", "unit": DEFAULT_OUTPUT_AUNIT,
                    "x": _angle(x), "y": _angle(y), "z": _angle(z)
                })

    # --- <structure> ---

    def _add_structure(self):
        structure_el = ET.SubElement(self.root, "structure")
        for node in self._topological_sort_volumes():
            self._write_volume(node, structure_el)

    def _topological_sort_volumes(self):
        """Daughters before mothers, the World last."""
        ordered = []

        def visit(node):
            for child in node.children:
                if self._is_exported(child):
                    visit(child)
            ordered.append(node)

        visit(self.scene.root)
        return ordered

    def _write_volume(self, node, structure_el):
        name = self.names[node.id]
        vol_el = ET.SubElement(structure_el, "volume", {"name": name})
        ET.SubElement(vol_el, "materialref", {"ref": self._material_ref(node.material)})
        ET.SubElement(vol_el, "solidref", {"ref": self._solid_name(node)})

        for child in node.children:
            if not self._is_exported(child):
                continue
            child_name = self.names[child.id]
            pv_el = ET.SubElement(vol_el, "physvol", {"name": f"{child_name}_pv"})
            if child.sd_config.copy_number != 0:
                pv_el.set("copynumber", str(child.sd_config.copy_number))
            ET.SubElement(pv_el, "volumeref", {"ref": child_name})
            ET.SubElement(pv_el, "positionref", {"ref": f"{child_name}_pos"})
            if not _rotation_is_identity(R.from_quat(child.transform.rotation)):
                ET.SubElement(pv_el, "rotationref", {"ref": f"{child_name}_rot"})

        if node.sd_config.enabled:
            ET.SubElement(vol_el, "auxiliary", {"auxtype": "SensDet", "auxvalue": node.sd_config.kind.value})

    # --- <setup> ---

    def _add_setup(self):
        setup_el = ET.SubElement(self.root, "setup", {"name": "Default", "version": "1.0"})
        ET.SubElement(setup_el, "world", {"ref": self.names[self.scene.root.id]})
        for node in self._optical_nodes():
            name = self.names[node.id]
            skin_el = ET.SubElement(setup_el, "skinsurface", {
                "name": f"{name}_skin",
                "surfaceproperty": f"{name}_optical_surface"
            })
            ET.SubElement(skin_el, "volumeref", {"ref": name})

    def get_gdml_string(self):
        self._add_defines()
        self._add_materials()
        self._add_solids()
        self._add_structure()
        self._add_setup()

        xml_str = ET.tostring(self.root, encoding='unicode')
        dom = minidom.parseString(xml_str)
        return dom.toprettyxml(indent="  ", newl="\n", encoding="UTF-8").decode('utf-8')


class GDMLExporter:
    """File-level front end: records the last failure instead of raising."""

    def __init__(self):
        self.last_error = ""

    def export_to_string(self, scene):
        return GDMLWriter(scene).get_gdml_string()

    def write(self, scene, path):
        """Writes `scene` to `path`; raises ExportError."""
        gdml_string = self.export_to_string(scene)
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(gdml_string)
        except OSError as e:
            raise ExportError(f"Could not write GDML to '{path}': {e}") from e
        logger.info("Exported GDML to %s", path)

    def export_to_file(self, scene, path):
        self.last_error = ""
        try:
            self.write(scene, path)
        except ExportError as e:
            self.last_error = str(e)
            logger.error(self.last_error)
            return False
        return True
