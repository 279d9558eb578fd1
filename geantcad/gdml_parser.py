# geantcad/gdml_parser.py
import io
import logging
import math
import xml.etree.ElementTree as ET

from scipy.spatial.transform import Rotation as R

from . import nist_materials
from .errors import GeantCADError, LoadError
from .expression_evaluator import ExpressionEvaluator
from .geometry_types import (
    BooleanOperation, Element, Material, MaterialComponent, MaterialState, MaterialType,
    OpticalFinish, OpticalModel, SDKind, ShapeType, Shape, VolumeNode, PARAMS_BY_TYPE
)
from .scene_graph import SceneGraph

logger = logging.getLogger(__name__)

ATM_PER_PASCAL = 1.0 / 101325.0
DENSITY_UNITS = {"g/cm3": 1.0, "mg/cm3": 1e-3, "kg/m3": 1e-3, "g/cm^3": 1.0}
SUPPORTED_SOLIDS = ("box", "tube", "sphere", "cone", "trd", "polycone", "polyhedra",
                    "union", "subtraction", "intersection")


class GDMLParser:
    """
    Reads the GDML subset the writer produces (plus constants, quantities
    and inline positions/rotations) back into a SceneGraph. Logical volumes
    placed more than once become separate volume subtrees.
    """

    def __init__(self):
        self._reset()

    def _reset(self):
        self.evaluator = ExpressionEvaluator()
        self.warnings = []
        self.positions = {}
        self.rotations = {}
        self.matrices = {}
        self.elements = {}
        self.materials = {}
        self.solids = {}
        self.volumes = {}
        self.optical_surfaces = {}
        self.skin_surfaces = {}
        self.world_ref = None

    def _warn(self, message):
        logger.warning("GDML import: %s", message)
        self.warnings.append(message)

    def _strip_namespace(self, gdml_content_string):
        it = ET.iterparse(io.StringIO(gdml_content_string))
        for _, el in it:
            if '}' in el.tag:
                el.tag = el.tag.split('}', 1)[1]
        return it.root

    # --- Values and units ---

    def _eval(self, expression, default=None):
        if expression is None:
            if default is None:
                raise LoadError("Missing numeric attribute")
            return float(default)
        ok, value = self.evaluator.evaluate(expression)
        if not ok:
            raise LoadError(f"Could not evaluate '{expression}': {value}")
        return value

    def _unit_factor(self, unit, default_unit):
        unit = unit or default_unit
        ok, factor = self.evaluator.evaluate(unit)
        if not ok:
            raise LoadError(f"Unknown unit '{unit}'")
        return factor

    def _length(self, element, attr, lunit, default=None):
        return self._eval(element.get(attr), default) * lunit

    def _angle(self, element, attr, aunit, default=None):
        return math.degrees(self._eval(element.get(attr), default) * aunit)

    # --- Entry points ---

    def parse_gdml_file(self, path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise LoadError(f"Could not read GDML file '{path}': {e}") from e
        return self.parse_gdml_string(content)

    def parse_gdml_string(self, gdml_content_string):
        """Returns a new SceneGraph. Raises LoadError on malformed input."""
        self._reset()
        try:
            root = self._strip_namespace(gdml_content_string)
        except ET.ParseError as e:
            raise LoadError(f"Malformed GDML: {e}") from e
        if root.tag != "gdml":
            raise LoadError(f"Root element is <{root.tag}>, expected <gdml>")

        try:
            self._parse_defines(root.find('define'))
            self._parse_materials(root.find('materials'))
            self._parse_solids(root.find('solids'))
            self._parse_structure(root.find('structure'))
            self._parse_setup(root.find('setup'))
            return self._build_scene()
        except LoadError:
            raise
        except (GeantCADError, KeyError, TypeError, ValueError) as e:
            raise LoadError(f"Malformed GDML: {e}") from e

    # --- <define> ---

    def _parse_defines(self, define_element):
        if define_element is None: return

        for element in define_element:
            name = element.get('name')
            if not name: continue
            tag = element.tag

            if tag in ('constant', 'variable'):
                self.evaluator.define(name, self._eval(element.get('value')))
            elif tag == 'quantity':
                unit = element.get('unit')
                value = self._eval(element.get('value'))
                if unit:
                    value *= self._unit_factor(unit, unit)
                self.evaluator.define(name, value)
            elif tag == 'expression':
                self.evaluator.define(name, self._eval((element.text or "").strip()))
            elif tag == 'position':
                self.positions[name] = self._read_position(element)
            elif tag == 'rotation':
                self.rotations[name] = self._read_rotation(element)
            elif tag == 'matrix':
                values = [self._eval(v) for v in (element.get('values') or "").split()]
                self.matrices[name] = (int(self._eval(element.get('coldim'), 1)), values)
            elif tag == 'opticalsurface':
                self._parse_optical_surface(element)
            else:
                self._warn(f"ignoring <{tag}> '{name}' in <define>")

    def _read_position(self, element):
        lunit = self._unit_factor(element.get('unit'), 'mm')
        return [self._length(element, axis, lunit, 0.0) for axis in ('x', 'y', 'z')]

    def _read_rotation(self, element):
        """Object rotation (as a scipy Rotation) for a GDML frame rotation."""
        aunit = self._unit_factor(element.get('unit'), 'rad')
        x, y, z = (self._angle(element, axis, aunit, 0.0) for axis in ('x', 'y', 'z'))
        return R.from_euler('ZYX', [z, y, x], degrees=True).inv()

    def _parse_optical_surface(self, element):
        name = element.get('name')
        reflectivity = None
        for prop_el in element.findall('property'):
            if prop_el.get('name') == 'REFLECTIVITY':
                matrix = self.matrices.get(prop_el.get('ref'))
                if matrix is None:
                    self._warn(f"optical surface '{name}' references unknown matrix '{prop_el.get('ref')}'")
                    continue
                coldim, values = matrix
                column = values[1::2] if coldim == 2 else values
                if column:
                    reflectivity = sum(column) / len(column)
        try:
            model = OpticalModel(element.get('model', 'glisur'))
            finish = OpticalFinish(element.get('finish', 'polished'))
        except ValueError as e:
            self._warn(f"optical surface '{name}': {e}; using unified/polished")
            model, finish = OpticalModel.UNIFIED, OpticalFinish.POLISHED
        value = self._eval(element.get('value'), 1.0)
        sigma_alpha = 0.0 if model is OpticalModel.GLISUR else math.degrees(value)
        self.optical_surfaces[name] = {
            "enabled": True, "model": model.value, "finish": finish.value,
            "reflectivity": reflectivity if reflectivity is not None else 0.95,
            "sigmaAlpha": sigma_alpha,
        }

    # --- <materials> ---

    def _parse_materials(self, materials_element):
        if materials_element is None: return

        for element in materials_element:
            name = element.get('name')
            if not name: continue
            if element.tag == 'element':
                atom_el = element.find('atom')
                A = self._eval(atom_el.get('value')) if atom_el is not None else 0.0
                self.elements[name] = Element(name, element.get('formula') or name,
                                              int(round(self._eval(element.get('Z'), 0))), A)
            elif element.tag == 'material':
                material = self._parse_material(element)
                if material is not None:
                    self.materials[name] = material
            elif element.tag == 'isotope':
                self._warn(f"isotope '{name}' is not supported")

    def _parse_material(self, element):
        name = element.get('name')
        state = element.get('state') or 'solid'
        if state not in [s.value for s in MaterialState]:
            state = 'solid'

        kwargs = {"state": state}
        d_el = element.find('D')
        if d_el is not None:
            unit = d_el.get('unit', 'g/cm3')
            kwargs["density"] = self._eval(d_el.get('value')) * DENSITY_UNITS.get(unit, 1.0)
        t_el = element.find('T')
        if t_el is not None:
            kwargs["temperature"] = self._eval(t_el.get('value'))
        p_el = element.find('P')
        if p_el is not None:
            kwargs["pressure"] = self._eval(p_el.get('value')) * ATM_PER_PASCAL

        fractions = element.findall('fraction')
        composites = element.findall('composite')
        if element.get('Z') is not None:
            atom_el = element.find('atom')
            kwargs["atomic_number"] = int(round(self._eval(element.get('Z'))))
            kwargs["atomic_mass"] = self._eval(atom_el.get('value')) if atom_el is not None else 0.0
            return Material(name, MaterialType.ELEMENT, **kwargs)

        material_type = MaterialType.COMPOUND_MASS if fractions else MaterialType.COMPOUND_ATOMS
        components = []
        for comp_el in fractions or composites:
            ref = comp_el.get('ref')
            el = self.elements.get(ref)
            if el is None:
                self._warn(f"material '{name}' uses '{ref}', which is not an element; material skipped")
                return None
            amount = self._eval(comp_el.get('n'))
            if material_type is MaterialType.COMPOUND_ATOMS:
                amount = int(round(amount))
            components.append(MaterialComponent(el, amount))
        if not components:
            self._warn(f"material '{name}' has no composition; material skipped")
            return None
        return Material(name, material_type, components=components, **kwargs)

    def _material_for(self, ref):
        if ref in self.materials:
            return self.materials[ref]
        if nist_materials.find_by_nist_name(ref) is None:
            self._warn(f"material '{ref}' is neither defined in the file nor a known NIST material")
        # One shared instance per NIST name
        material = Material.make_nist(ref)
        self.materials[ref] = material
        return material

    # --- <solids> ---

    def _parse_solids(self, solids_element):
        if solids_element is None: return

        for solid_el in solids_element:
            name = solid_el.get('name')
            if not name: continue
            tag = solid_el.tag
            if tag == 'opticalsurface':
                self._parse_optical_surface(solid_el)
            elif tag in SUPPORTED_SOLIDS:
                self.solids[name] = self._parse_solid(solid_el)
            else:
                self._warn(f"solid <{tag}> '{name}' is not supported; volumes using it get no shape")

    def _parse_solid(self, el):
        tag = el.tag
        name = el.get('name')
        lunit = self._unit_factor(el.get('lunit'), 'mm')
        aunit = self._unit_factor(el.get('aunit'), 'rad')
        L = lambda attr, default=None: self._length(el, attr, lunit, default)
        A = lambda attr, default=None: self._angle(el, attr, aunit, default)

        if tag == 'box':
            params = {"x": L('x') / 2, "y": L('y') / 2, "z": L('z') / 2}
        elif tag == 'tube':
            params = {"rmin": L('rmin', 0), "rmax": L('rmax'), "dz": L('z') / 2,
                      "sphi": A('startphi', 0), "dphi": A('deltaphi')}
        elif tag == 'sphere':
            params = {"rmin": L('rmin', 0), "rmax": L('rmax'),
                      "sphi": A('startphi', 0), "dphi": A('deltaphi'),
                      "stheta": A('starttheta', 0), "dtheta": A('deltatheta')}
        elif tag == 'cone':
            params = {"rmin1": L('rmin1', 0), "rmax1": L('rmax1'), "rmin2": L('rmin2', 0),
                      "rmax2": L('rmax2'), "dz": L('z') / 2,
                      "sphi": A('startphi', 0), "dphi": A('deltaphi')}
        elif tag == 'trd':
            params = {"dx1": L('x1') / 2, "dx2": L('x2') / 2, "dy1": L('y1') / 2,
                      "dy2": L('y2') / 2, "dz": L('z') / 2}
        elif tag in ('polycone', 'polyhedra'):
            planes = el.findall('zplane')
            params = {"sphi": A('startphi', 0), "dphi": A('deltaphi'),
                      "z_planes": [self._length(p, 'z', lunit) for p in planes],
                      "rmin": [self._length(p, 'rmin', lunit, 0) for p in planes],
                      "rmax": [self._length(p, 'rmax', lunit) for p in planes]}
            if tag == 'polyhedra':
                params["num_sides"] = int(round(self._eval(el.get('numsides'))))
        else:
            return self._parse_boolean(el)

        shape_type = ShapeType(tag)
        shape = Shape(shape_type, PARAMS_BY_TYPE[shape_type](**params), name=name)
        shape.validate()
        return shape

    def _parse_boolean(self, el):
        name = el.get('name')
        first_el, second_el = el.find('first'), el.find('second')
        if first_el is None or second_el is None:
            raise LoadError(f"Boolean solid '{name}' needs <first> and <second>")

        pos = [0.0, 0.0, 0.0]
        rot_xyz = [0.0, 0.0, 0.0]
        pos_el = el.find('position')
        if pos_el is not None:
            pos = self._read_position(pos_el)
        elif el.find('positionref') is not None:
            pos = self._lookup(self.positions, el.find('positionref').get('ref'), "position")
        rot_el = el.find('rotation')
        rotation = None
        if rot_el is not None:
            rotation = self._read_rotation(rot_el)
        elif el.find('rotationref') is not None:
            rotation = self._lookup(self.rotations, el.find('rotationref').get('ref'), "rotation")
        if rotation is not None:
            z, y, x = rotation.as_euler('ZYX', degrees=True)
            rot_xyz = [x, y, z]

        params = PARAMS_BY_TYPE[ShapeType.BOOLEAN](
            operation=BooleanOperation(el.tag),
            solid_a=first_el.get('ref'), solid_b=second_el.get('ref'),
            rel_pos_x=pos[0], rel_pos_y=pos[1], rel_pos_z=pos[2],
            rel_rot_x=rot_xyz[0], rel_rot_y=rot_xyz[1], rel_rot_z=rot_xyz[2])
        for operand in (params.solid_a, params.solid_b):
            if operand not in self.solids:
                self._warn(f"boolean solid '{name}' references undefined solid '{operand}'")
        shape = Shape(ShapeType.BOOLEAN, params, name=name)
        shape.validate()
        return shape

    def _lookup(self, table, ref, what):
        if ref not in table:
            raise LoadError(f"Reference to undefined {what} '{ref}'")
        return table[ref]

    # --- <structure> ---

    def _parse_structure(self, structure_element):
        if structure_element is None:
            raise LoadError("GDML has no <structure> section")

        for element in structure_element:
            if element.tag == 'volume':
                self._parse_single_lv(element)
            elif element.tag == 'skinsurface':
                self._parse_surface(element)
            elif element.tag in ('assembly', 'bordersurface'):
                self._warn(f"<{element.tag}> '{element.get('name')}' is not supported")

    def _parse_single_lv(self, vol_el):
        lv_name = vol_el.get('name')
        solid_ref_el = vol_el.find('solidref')
        mat_ref_el = vol_el.find('materialref')
        if not lv_name or solid_ref_el is None:
            self._warn(f"skipping incomplete logical volume '{lv_name}'")
            return

        placements = []
        for pv_el in vol_el.findall('physvol'):
            placement = self._parse_pv_element(pv_el)
            if placement is not None:
                placements.append(placement)
        for tag in ('replicavol', 'divisionvol', 'paramvol'):
            if vol_el.find(tag) is not None:
                self._warn(f"<{tag}> in volume '{lv_name}' is not supported")

        sens_det = None
        for aux_el in vol_el.findall('auxiliary'):
            if aux_el.get('auxtype') == 'SensDet':
                sens_det = aux_el.get('auxvalue', 'calorimeter')

        self.volumes[lv_name] = {
            "solid": solid_ref_el.get('ref'),
            "material": mat_ref_el.get('ref') if mat_ref_el is not None else None,
            "placements": placements,
            "sens_det": sens_det,
        }

    def _parse_pv_element(self, pv_el):
        vol_ref_el = pv_el.find('volumeref')
        if vol_ref_el is None:
            self._warn(f"physvol '{pv_el.get('name')}' has no volumeref")
            return None

        position = [0.0, 0.0, 0.0]
        if pv_el.find('position') is not None:
            position = self._read_position(pv_el.find('position'))
        elif pv_el.find('positionref') is not None:
            position = self._lookup(self.positions, pv_el.find('positionref').get('ref'), "position")

        rotation = None
        if pv_el.find('rotation') is not None:
            rotation = self._read_rotation(pv_el.find('rotation'))
        elif pv_el.find('rotationref') is not None:
            rotation = self._lookup(self.rotations, pv_el.find('rotationref').get('ref'), "rotation")

        return {
            "volume": vol_ref_el.get('ref'),
            "position": position,
            "rotation": rotation,
            "copy_number": int(round(self._eval(pv_el.get('copynumber'), 0))),
        }

    def _parse_surface(self, surf_el):
        name = surf_el.get('name')
        prop = surf_el.get('surfaceproperty')
        volumeref_el = surf_el.find('volumeref')
        if not prop or volumeref_el is None:
            self._warn(f"skin surface '{name}' is incomplete; skipped")
            return
        self.skin_surfaces[volumeref_el.get('ref')] = prop

    # --- <setup> ---

    def _parse_setup(self, setup_element):
        if setup_element is None: return
        world_el = setup_element.find('world')
        if world_el is not None:
            self.world_ref = world_el.get('ref')
        for surf_el in setup_element.findall('skinsurface'):
            self._parse_surface(surf_el)

    # --- Scene construction ---

    def _build_scene(self):
        if not self.world_ref:
            raise LoadError("GDML has no <setup> world reference")
        if self.world_ref not in self.volumes:
            raise LoadError(f"World volume '{self.world_ref}' is not defined")

        scene = SceneGraph()
        self._fill_node(scene.root, self.world_ref, ())
        scene.root.name = self.world_ref
        logger.info("Imported GDML with %d volumes", len(scene.nodes()))
        return scene

    def _fill_node(self, node, lv_name, ancestry):
        if lv_name in ancestry:
            raise LoadError(f"Volume '{lv_name}' contains itself")
        lv = self.volumes[lv_name]
        solid = self.solids.get(lv["solid"])
        if solid is None:
            self._warn(f"volume '{lv_name}' references missing or unsupported solid '{lv['solid']}'")
        node.shape = solid.clone() if solid is not None else None
        node.material = self._material_for(lv["material"]) if lv["material"] else None

        if lv["sens_det"]:
            node.sd_config.enabled = True
            try:
                node.sd_config.kind = SDKind(lv["sens_det"])
            except ValueError:
                node.sd_config.kind = SDKind.CALORIMETER

        surface = self.skin_surfaces.get(lv_name)
        if surface is not None:
            config = self.optical_surfaces.get(surface)
            if config is None:
                self._warn(f"skin surface on '{lv_name}' references unknown optical surface '{surface}'")
            else:
                node.optical_config = type(node.optical_config).from_dict(config)

        for placement in lv["placements"]:
            child_lv = placement["volume"]
            if child_lv not in self.volumes:
                self._warn(f"physvol in '{lv_name}' references undefined volume '{child_lv}'")
                continue
            child = VolumeNode(child_lv)
            transform = child.transform
            transform.set_translation(placement["position"])
            if placement["rotation"] is not None:
                transform.set_rotation(placement["rotation"].as_quat())
            child.transform = transform
            child.sd_config.copy_number = placement["copy_number"]
            node.add_child(child)
            self._fill_node(child, child_lv, ancestry + (lv_name,))
