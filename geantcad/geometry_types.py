# FILE: geantcad/geometry_types.py

import logging
import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional

from . import nist_materials
from .errors import CycleError, LoadError, ValidationError
from .transform import Transform

logger = logging.getLogger(__name__)

# --- Helper for Units ---
# Internal units are mm for length and deg for angle
UNIT_FACTORS = {
    "length": {"um": 0.001, "mm": 1.0, "cm": 10.0, "m": 1000.0},
    "angle": {"deg": 1.0, "rad": 180.0 / math.pi, "mrad": 0.18 / math.pi}
}
OUTPUT_UNIT_FACTORS = {
    "length": {"um": 1000.0, "mm": 1.0, "cm": 0.1, "m": 0.001},
    "angle": {"deg": 1.0, "rad": math.pi / 180.0, "mrad": 1000.0 * math.pi / 180.0}
}
DEFAULT_OUTPUT_LUNIT = "cm"
DEFAULT_OUTPUT_AUNIT = "deg"


def convert_to_internal_units(value, unit_str, category="length"):
    try:
        val = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Could not parse '{value}' as a number") from e

    if unit_str and category in UNIT_FACTORS and unit_str in UNIT_FACTORS[category]:
        return val * UNIT_FACTORS[category][unit_str]
    return val  # Assume already in internal units if unit_str is unknown/None


def convert_from_internal_units(value, target_unit_str, category="length"):
    num_value = float(value)
    if target_unit_str and category in OUTPUT_UNIT_FACTORS and target_unit_str in OUTPUT_UNIT_FACTORS[category]:
        return num_value * OUTPUT_UNIT_FACTORS[category][target_unit_str]
    return num_value


def format_double(value, decimals=6):
    """Fixed-point text with trailing zeros stripped: 20.0 -> '20', 0.25 -> '0.25'."""
    text = f"{float(value):.{decimals}f}".rstrip("0").rstrip(".")
    if text in ("", "-0"):
        return "0"
    return text


# --- Shapes ---

class ShapeType(Enum):
    BOX = "box"
    TUBE = "tube"
    SPHERE = "sphere"
    CONE = "cone"
    TRD = "trd"
    POLYCONE = "polycone"
    POLYHEDRA = "polyhedra"
    BOOLEAN = "boolean"


# Older project files stored the tag as an integer in this order
_LEGACY_SHAPE_TAGS = list(ShapeType)


class BooleanOperation(Enum):
    UNION = "union"
    SUBTRACTION = "subtraction"
    INTERSECTION = "intersection"


_LEGACY_BOOLEAN_TAGS = list(BooleanOperation)


def _require(condition, message):
    if not condition:
        raise ValidationError(message)


def _check_phi(sphi, dphi):
    _require(math.isfinite(sphi), f"Start phi must be finite, got {sphi}")
    _require(0.0 <= dphi <= 360.0, f"Delta phi must be within [0, 360] deg, got {dphi}")


class _ShapeParams:
    """Common JSON handling for the parameter dataclasses below."""
    # Python field name -> JSON key, where they differ
    JSON_KEYS = {}

    def to_dict(self):
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                value = [float(v) for v in value]
            elif isinstance(value, Enum):
                value = value.value
            data[self.JSON_KEYS.get(f.name, f.name)] = value
        return data

    @classmethod
    def from_dict(cls, data):
        kwargs = {}
        for f in fields(cls):
            key = cls.JSON_KEYS.get(f.name, f.name)
            if key not in data:
                continue
            value = data[key]
            if isinstance(value, list):
                kwargs[f.name] = [float(v) for v in value]
            elif f.type is int:
                kwargs[f.name] = int(value)
            elif f.type is float:
                kwargs[f.name] = float(value)
            else:
                kwargs[f.name] = value
        return cls(**kwargs)

    def validate(self):
        raise NotImplementedError


@dataclass
class BoxParams(_ShapeParams):
    """Half-lengths in mm."""
    x: float = 10.0
    y: float = 10.0
    z: float = 10.0

    def validate(self):
        for axis in ("x", "y", "z"):
            _require(getattr(self, axis) > 0, f"Box half-length {axis} must be > 0, got {getattr(self, axis)}")


@dataclass
class TubeParams(_ShapeParams):
    rmin: float = 0.0
    rmax: float = 10.0
    dz: float = 10.0
    sphi: float = 0.0
    dphi: float = 360.0

    def validate(self):
        _require(self.rmin >= 0, f"Tube rmin must be >= 0, got {self.rmin}")
        _require(self.rmax > self.rmin, f"Tube rmax ({self.rmax}) must exceed rmin ({self.rmin})")
        _require(self.dz > 0, f"Tube dz must be > 0, got {self.dz}")
        _check_phi(self.sphi, self.dphi)


@dataclass
class SphereParams(_ShapeParams):
    rmin: float = 0.0
    rmax: float = 10.0
    sphi: float = 0.0
    dphi: float = 360.0
    stheta: float = 0.0
    dtheta: float = 180.0

    def validate(self):
        _require(self.rmin >= 0, f"Sphere rmin must be >= 0, got {self.rmin}")
        _require(self.rmax > self.rmin, f"Sphere rmax ({self.rmax}) must exceed rmin ({self.rmin})")
        _check_phi(self.sphi, self.dphi)
        _require(0.0 <= self.stheta <= 180.0, f"Start theta must be within [0, 180] deg, got {self.stheta}")
        _require(0.0 <= self.dtheta <= 180.0, f"Delta theta must be within [0, 180] deg, got {self.dtheta}")


@dataclass
class ConeParams(_ShapeParams):
    """rmin1/rmax1 at the -z face, rmin2/rmax2 at the +z face."""
    rmin1: float = 0.0
    rmax1: float = 5.0
    rmin2: float = 0.0
    rmax2: float = 10.0
    dz: float = 10.0
    sphi: float = 0.0
    dphi: float = 360.0

    def validate(self):
        _require(self.rmin1 >= 0 and self.rmin2 >= 0, "Cone inner radii must be >= 0")
        _require(self.rmax1 > self.rmin1, f"Cone rmax1 ({self.rmax1}) must exceed rmin1 ({self.rmin1})")
        _require(self.rmax2 > self.rmin2, f"Cone rmax2 ({self.rmax2}) must exceed rmin2 ({self.rmin2})")
        _require(self.dz > 0, f"Cone dz must be > 0, got {self.dz}")
        _check_phi(self.sphi, self.dphi)


@dataclass
class TrdParams(_ShapeParams):
    dx1: float = 10.0
    dx2: float = 5.0
    dy1: float = 10.0
    dy2: float = 5.0
    dz: float = 10.0

    def validate(self):
        for name in ("dx1", "dx2", "dy1", "dy2", "dz"):
            _require(getattr(self, name) > 0, f"Trd {name} must be > 0, got {getattr(self, name)}")


def _check_planes(kind, z_planes, rmin, rmax):
    _require(len(z_planes) >= 2, f"{kind} needs at least 2 z-planes, got {len(z_planes)}")
    _require(len(z_planes) == len(rmin) == len(rmax),
             f"{kind} z-plane, rmin and rmax arrays must have equal length")
    for lower, upper in zip(z_planes, z_planes[1:]):
        _require(upper >= lower, f"{kind} z-planes must be in ascending order")
    for i, (r_in, r_out) in enumerate(zip(rmin, rmax)):
        _require(r_in >= 0, f"{kind} rmin at plane {i} must be >= 0")
        _require(r_out > r_in, f"{kind} rmax at plane {i} must exceed rmin")


@dataclass
class PolyconeParams(_ShapeParams):
    sphi: float = 0.0
    dphi: float = 360.0
    z_planes: List[float] = field(default_factory=lambda: [-10.0, 10.0])
    rmin: List[float] = field(default_factory=lambda: [0.0, 0.0])
    rmax: List[float] = field(default_factory=lambda: [10.0, 10.0])

    JSON_KEYS = {"z_planes": "zPlanes"}

    def validate(self):
        _check_phi(self.sphi, self.dphi)
        _check_planes("Polycone", self.z_planes, self.rmin, self.rmax)


@dataclass
class PolyhedraParams(_ShapeParams):
    sphi: float = 0.0
    dphi: float = 360.0
    num_sides: int = 6
    z_planes: List[float] = field(default_factory=lambda: [-10.0, 10.0])
    rmin: List[float] = field(default_factory=lambda: [0.0, 0.0])
    rmax: List[float] = field(default_factory=lambda: [10.0, 10.0])

    JSON_KEYS = {"z_planes": "zPlanes", "num_sides": "numSides"}

    def validate(self):
        _require(int(self.num_sides) == self.num_sides and self.num_sides >= 3,
                 f"Polyhedra needs an integer number of sides >= 3, got {self.num_sides}")
        _check_phi(self.sphi, self.dphi)
        _check_planes("Polyhedra", self.z_planes, self.rmin, self.rmax)


@dataclass
class BooleanParams(_ShapeParams):
    """
    Operands are referenced by name. Operand B is placed in A's frame by a
    translation (mm) and Euler rotation (deg).
    """
    operation: BooleanOperation = BooleanOperation.UNION
    solid_a: str = ""
    solid_b: str = ""
    rel_pos_x: float = 0.0
    rel_pos_y: float = 0.0
    rel_pos_z: float = 0.0
    rel_rot_x: float = 0.0
    rel_rot_y: float = 0.0
    rel_rot_z: float = 0.0

    JSON_KEYS = {
        "solid_a": "solidA", "solid_b": "solidB",
        "rel_pos_x": "relPosX", "rel_pos_y": "relPosY", "rel_pos_z": "relPosZ",
        "rel_rot_x": "relRotX", "rel_rot_y": "relRotY", "rel_rot_z": "relRotZ",
    }

    def __post_init__(self):
        self.operation = _parse_boolean_operation(self.operation)

    @property
    def rel_translation(self):
        return (self.rel_pos_x, self.rel_pos_y, self.rel_pos_z)

    @property
    def rel_rotation(self):
        return (self.rel_rot_x, self.rel_rot_y, self.rel_rot_z)

    def validate(self):
        _require(bool(self.solid_a), "Boolean solid needs a first operand name")
        _require(bool(self.solid_b), "Boolean solid needs a second operand name")


def _parse_boolean_operation(value):
    if isinstance(value, BooleanOperation):
        return value
    if isinstance(value, int) and 0 <= value < len(_LEGACY_BOOLEAN_TAGS):
        return _LEGACY_BOOLEAN_TAGS[value]
    try:
        return BooleanOperation(str(value).lower())
    except ValueError as e:
        raise ValidationError(f"Unknown boolean operation '{value}'") from e


PARAMS_BY_TYPE = {
    ShapeType.BOX: BoxParams,
    ShapeType.TUBE: TubeParams,
    ShapeType.SPHERE: SphereParams,
    ShapeType.CONE: ConeParams,
    ShapeType.TRD: TrdParams,
    ShapeType.POLYCONE: PolyconeParams,
    ShapeType.POLYHEDRA: PolyhedraParams,
    ShapeType.BOOLEAN: BooleanParams,
}

DEFAULT_SHAPE_NAMES = {
    ShapeType.BOX: "Box",
    ShapeType.TUBE: "Tube",
    ShapeType.SPHERE: "Sphere",
    ShapeType.CONE: "Cone",
    ShapeType.TRD: "Trd",
    ShapeType.POLYCONE: "Polycone",
    ShapeType.POLYHEDRA: "Polyhedra",
    ShapeType.BOOLEAN: "BooleanSolid",
}


def parse_shape_type(tag):
    """Accepts the string tag, the enum itself, or a legacy integer tag."""
    if isinstance(tag, ShapeType):
        return tag
    if isinstance(tag, int) and not isinstance(tag, bool):
        if 0 <= tag < len(_LEGACY_SHAPE_TAGS):
            return _LEGACY_SHAPE_TAGS[tag]
        raise LoadError(f"Unknown shape type tag {tag}")
    try:
        return ShapeType(str(tag).lower())
    except ValueError as e:
        raise LoadError(f"Unknown shape type tag '{tag}'") from e


class Shape:
    """A solid: a type tag plus the parameter record for that variant."""

    def __init__(self, shape_type, params=None, name=None):
        self.type = parse_shape_type(shape_type)
        params_cls = PARAMS_BY_TYPE[self.type]
        if params is None:
            params = params_cls()
        if not isinstance(params, params_cls):
            raise ValidationError(
                f"{self.type.value} shape needs {params_cls.__name__}, got {type(params).__name__}")
        self.params = params
        self.name = name or DEFAULT_SHAPE_NAMES[self.type]

    def get_params_as(self, params_cls):
        """Returns the parameter record if it is a `params_cls`, else None."""
        return self.params if isinstance(self.params, params_cls) else None

    def validate(self):
        self.params.validate()

    def clone(self):
        return Shape.from_dict(self.to_dict())

    def to_dict(self):
        return {"type": self.type.value, "name": self.name, "params": self.params.to_dict()}

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or "type" not in data:
            raise LoadError(f"Shape data must be an object with a 'type', got {data!r}")
        shape_type = parse_shape_type(data["type"])
        try:
            params = PARAMS_BY_TYPE[shape_type].from_dict(data.get("params") or {})
        except (TypeError, ValueError) as e:
            raise LoadError(f"Invalid parameters for {shape_type.value} shape: {e}") from e
        shape = cls(shape_type, params, data.get("name"))
        shape.validate()
        return shape

    def __eq__(self, other):
        if not isinstance(other, Shape):
            return NotImplemented
        return self.type == other.type and self.name == other.name and self.params == other.params

    def __repr__(self):
        return f"Shape({self.type.value}, name={self.name!r}, params={self.params!r})"


def _make(shape_type, params, name):
    shape = Shape(shape_type, params, name)
    shape.validate()
    return shape


def make_box(x=10.0, y=10.0, z=10.0, name=None):
    return _make(ShapeType.BOX, BoxParams(float(x), float(y), float(z)), name)


def make_tube(rmin=0.0, rmax=10.0, dz=10.0, sphi=0.0, dphi=360.0, name=None):
    return _make(ShapeType.TUBE, TubeParams(rmin, rmax, dz, sphi, dphi), name)


def make_sphere(rmin=0.0, rmax=10.0, sphi=0.0, dphi=360.0, stheta=0.0, dtheta=180.0, name=None):
    return _make(ShapeType.SPHERE, SphereParams(rmin, rmax, sphi, dphi, stheta, dtheta), name)


def make_cone(rmin1=0.0, rmax1=5.0, rmin2=0.0, rmax2=10.0, dz=10.0, sphi=0.0, dphi=360.0, name=None):
    return _make(ShapeType.CONE, ConeParams(rmin1, rmax1, rmin2, rmax2, dz, sphi, dphi), name)


def make_trd(dx1=10.0, dx2=5.0, dy1=10.0, dy2=5.0, dz=10.0, name=None):
    return _make(ShapeType.TRD, TrdParams(dx1, dx2, dy1, dy2, dz), name)


def make_polycone(z_planes, rmin, rmax, sphi=0.0, dphi=360.0, name=None):
    params = PolyconeParams(sphi, dphi, [float(z) for z in z_planes],
                            [float(r) for r in rmin], [float(r) for r in rmax])
    return _make(ShapeType.POLYCONE, params, name)


def make_polyhedra(num_sides, z_planes, rmin, rmax, sphi=0.0, dphi=360.0, name=None):
    params = PolyhedraParams(sphi, dphi, num_sides, [float(z) for z in z_planes],
                             [float(r) for r in rmin], [float(r) for r in rmax])
    return _make(ShapeType.POLYHEDRA, params, name)


def make_boolean_solid(operation, solid_a, solid_b, rel_translation=(0.0, 0.0, 0.0),
                       rel_rotation=(0.0, 0.0, 0.0), name=None):
    operation = _parse_boolean_operation(operation)
    params = BooleanParams(operation, solid_a, solid_b, *[float(v) for v in rel_translation],
                           *[float(v) for v in rel_rotation])
    return _make(ShapeType.BOOLEAN, params, name or f"{operation.value}_{solid_a}_{solid_b}")


# --- Materials ---

class MaterialType(Enum):
    NIST = "nist"
    ELEMENT = "element"
    COMPOUND_MASS = "compound_mass"
    COMPOUND_ATOMS = "compound_atoms"


class MaterialState(Enum):
    SOLID = "solid"
    LIQUID = "liquid"
    GAS = "gas"

    @property
    def geant4_name(self):
        return {"solid": "kStateSolid", "liquid": "kStateLiquid", "gas": "kStateGas"}[self.value]


@dataclass
class VisualAttributes:
    r: float = 0.8
    g: float = 0.8
    b: float = 0.8
    a: float = 1.0
    wireframe: bool = False

    def to_dict(self):
        return {"r": self.r, "g": self.g, "b": self.b, "a": self.a, "wireframe": self.wireframe}

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(float(data.get("r", 0.8)), float(data.get("g", 0.8)), float(data.get("b", 0.8)),
                   float(data.get("a", 1.0)), bool(data.get("wireframe", False)))


@dataclass
class Element:
    """A chemical element used in custom material compositions. A is in g/mole."""
    name: str
    symbol: str
    Z: int
    A: float

    def validate(self):
        _require(self.Z >= 1, f"Element '{self.name}' needs Z >= 1, got {self.Z}")
        _require(self.A > 0, f"Element '{self.name}' needs A > 0, got {self.A}")

    def to_dict(self):
        return {"name": self.name, "symbol": self.symbol, "Z": self.Z, "A": self.A}

    @classmethod
    def from_dict(cls, data):
        return cls(data["name"], data.get("symbol", data["name"]), int(data["Z"]), float(data["A"]))


@dataclass
class MaterialComponent:
    """An element and its share: a mass fraction or an atom count, depending on the material type."""
    element: Element
    amount: float


class Material:
    """
    A NIST reference or an explicit composition. Materials are shared: several
    volumes may hold the same instance, and edits are seen by all of them.
    """

    def __init__(self, name, material_type=MaterialType.NIST, nist_name="", density=0.0,
                 atomic_number=0, atomic_mass=0.0, components=None, state=MaterialState.SOLID,
                 temperature=293.15, pressure=1.0, visual=None):
        self.name = name
        self.material_type = MaterialType(material_type)
        self.nist_name = nist_name
        self.density = float(density)  # g/cm3
        self.atomic_number = int(atomic_number)
        self.atomic_mass = float(atomic_mass)  # g/mole
        self.components = list(components) if components else []
        self.state = MaterialState(state)
        self.temperature = float(temperature)  # K
        self.pressure = float(pressure)  # atm
        self.visual = visual if visual is not None else VisualAttributes()

    @property
    def is_nist(self):
        return self.material_type is MaterialType.NIST

    def validate(self):
        _require(bool(self.name), "Material needs a name")
        _require(self.temperature > 0, f"Material '{self.name}' temperature must be > 0 K")
        _require(self.pressure > 0, f"Material '{self.name}' pressure must be > 0 atm")
        if self.is_nist:
            _require(bool(self.nist_name), f"NIST material '{self.name}' needs a NIST name")
            return
        _require(self.density > 0, f"Material '{self.name}' density must be > 0 g/cm3")
        if self.material_type is MaterialType.ELEMENT:
            _require(self.atomic_number >= 1, f"Material '{self.name}' needs Z >= 1")
            _require(self.atomic_mass > 0, f"Material '{self.name}' needs A > 0")
            return
        _require(len(self.components) > 0, f"Compound '{self.name}' needs at least one element")
        for comp in self.components:
            comp.element.validate()
        if self.material_type is MaterialType.COMPOUND_MASS:
            for comp in self.components:
                _require(0.0 <= comp.amount <= 1.0,
                         f"Mass fraction of {comp.element.name} in '{self.name}' must be within [0, 1]")
            total = sum(comp.amount for comp in self.components)
            if abs(total - 1.0) > 1e-3:
                logger.warning("Mass fractions of material '%s' sum to %.4f, not 1.", self.name, total)
        else:
            for comp in self.components:
                _require(int(comp.amount) == comp.amount and comp.amount >= 1,
                         f"Atom count of {comp.element.name} in '{self.name}' must be an integer >= 1")

    # --- Factories ---

    @classmethod
    def make_nist(cls, nist_name, name=None):
        r, g, b, a = nist_materials.color_for(nist_name)
        return cls(name or nist_name, MaterialType.NIST, nist_name=nist_name,
                   state=MaterialState(nist_materials.default_state(nist_name)),
                   visual=VisualAttributes(r, g, b, a))

    @classmethod
    def make_element(cls, name, atomic_number, atomic_mass, density, state=MaterialState.SOLID, **kwargs):
        material = cls(name, MaterialType.ELEMENT, density=density, atomic_number=atomic_number,
                       atomic_mass=atomic_mass, state=state, **kwargs)
        material.validate()
        return material

    @classmethod
    def make_compound_by_mass(cls, name, density, components, state=MaterialState.SOLID, **kwargs):
        """`components` is a list of (Element, mass fraction) pairs."""
        material = cls(name, MaterialType.COMPOUND_MASS, density=density,
                       components=[MaterialComponent(el, float(frac)) for el, frac in components],
                       state=state, **kwargs)
        material.validate()
        return material

    @classmethod
    def make_compound_by_atoms(cls, name, density, components, state=MaterialState.SOLID, **kwargs):
        """`components` is a list of (Element, atom count) pairs."""
        material = cls(name, MaterialType.COMPOUND_ATOMS, density=density,
                       components=[MaterialComponent(el, int(n)) for el, n in components],
                       state=state, **kwargs)
        material.validate()
        return material

    @classmethod
    def make_air(cls): return cls.make_nist("G4_AIR")
    @classmethod
    def make_vacuum(cls): return cls.make_nist("G4_Galactic")
    @classmethod
    def make_water(cls): return cls.make_nist("G4_WATER")
    @classmethod
    def make_lead(cls): return cls.make_nist("G4_Pb")
    @classmethod
    def make_silicon(cls): return cls.make_nist("G4_Si")
    @classmethod
    def make_aluminum(cls): return cls.make_nist("G4_Al")
    @classmethod
    def make_iron(cls): return cls.make_nist("G4_Fe")
    @classmethod
    def make_copper(cls): return cls.make_nist("G4_Cu")
    @classmethod
    def make_titanium(cls): return cls.make_nist("G4_Ti")
    @classmethod
    def make_stainless_steel(cls): return cls.make_nist("G4_STAINLESS-STEEL")
    @classmethod
    def make_brass(cls): return cls.make_nist("G4_BRASS")
    @classmethod
    def make_bronze(cls): return cls.make_nist("G4_BRONZE")
    @classmethod
    def make_glass(cls): return cls.make_nist("G4_GLASS_PLATE")
    @classmethod
    def make_polystyrene(cls): return cls.make_nist("G4_POLYSTYRENE")
    @classmethod
    def make_polyethylene(cls): return cls.make_nist("G4_POLYETHYLENE")
    @classmethod
    def make_plexiglass(cls): return cls.make_nist("G4_PLEXIGLASS")
    @classmethod
    def make_co2(cls): return cls.make_nist("G4_CARBON_DIOXIDE")
    @classmethod
    def make_argon(cls): return cls.make_nist("G4_Ar")
    @classmethod
    def make_helium(cls): return cls.make_nist("G4_He")
    @classmethod
    def make_nitrogen(cls): return cls.make_nist("G4_N")
    @classmethod
    def make_oxygen(cls): return cls.make_nist("G4_O")
    @classmethod
    def make_sodium(cls): return cls.make_nist("G4_Na")
    @classmethod
    def make_iodine(cls): return cls.make_nist("G4_I")
    @classmethod
    def make_csi(cls): return cls.make_nist("G4_CESIUM_IODIDE")
    @classmethod
    def make_nai(cls): return cls.make_nist("G4_SODIUM_IODIDE")
    @classmethod
    def make_bgo(cls): return cls.make_nist("G4_BGO")
    @classmethod
    def make_lyso(cls): return cls.make_nist("G4_LYSO")

    # --- Code emission ---

    def to_geant4_code(self):
        """
        C++ statements that make this material available by name in a
        Geant4 application. The block is self-contained and safe to emit
        more than once.
        """
        if self.is_nist:
            return f'  G4NistManager::Instance()->FindOrBuildMaterial("{self.nist_name}");\n'

        density = f"{format_double(self.density, 9)}*g/cm3"
        tail = (f"{self.state.geant4_name}, {format_double(self.temperature)}*kelvin, "
                f"{format_double(self.pressure)}*atmosphere")
        lines = [f'  if (!G4Material::GetMaterial("{self.name}", false)) {{']
        if self.material_type is MaterialType.ELEMENT:
            lines.append(f'    new G4Material("{self.name}", {format_double(self.atomic_number)}., '
                         f'{format_double(self.atomic_mass)}*g/mole, {density}, {tail});')
        else:
            for i, comp in enumerate(self.components):
                el = comp.element
                lines.append(f'    G4Element* el{i} = G4Element::GetElement("{el.name}", false);')
                lines.append(f'    if (!el{i}) el{i} = new G4Element("{el.name}", "{el.symbol}", '
                             f'{format_double(el.Z)}., {format_double(el.A)}*g/mole);')
            lines.append(f'    auto material = new G4Material("{self.name}", {density}, '
                         f'{len(self.components)}, {tail});')
            for i, comp in enumerate(self.components):
                if self.material_type is MaterialType.COMPOUND_MASS:
                    lines.append(f'    material->AddElement(el{i}, {format_double(comp.amount)});')
                else:
                    lines.append(f'    material->AddElement(el{i}, {int(comp.amount)});')
        lines.append('  }')
        return "\n".join(lines) + "\n"

    # --- JSON ---

    def to_dict(self):
        data = {
            "name": self.name,
            "type": self.material_type.value,
            "nistName": self.nist_name,
            "density": self.density,
            "atomicNumber": self.atomic_number,
            "atomicMass": self.atomic_mass,
            "state": self.state.value,
            "temperature": self.temperature,
            "pressure": self.pressure,
            "visual": self.visual.to_dict(),
        }
        if self.components:
            amount_key = "fraction" if self.material_type is MaterialType.COMPOUND_MASS else "atoms"
            data["components"] = [
                {"element": comp.element.to_dict(), amount_key: comp.amount} for comp in self.components
            ]
        return data

    @classmethod
    def from_dict(cls, data):
        type_tag = data.get("type", "nist")
        if type_tag == "custom":
            type_tag = MaterialType.ELEMENT.value  # single-element materials in older files
        try:
            material_type = MaterialType(type_tag)
        except ValueError as e:
            raise LoadError(f"Unknown material type '{type_tag}'") from e
        components = []
        for comp in data.get("components", []):
            amount = comp.get("fraction", comp.get("atoms", 0))
            components.append(MaterialComponent(Element.from_dict(comp["element"]), amount))
        default_state = nist_materials.default_state(data.get("nistName", "")) if material_type is MaterialType.NIST else "solid"
        return cls(
            data["name"], material_type,
            nist_name=data.get("nistName", ""),
            density=data.get("density", 0.0),
            atomic_number=data.get("atomicNumber", 0),
            atomic_mass=data.get("atomicMass", 0.0),
            components=components,
            state=data.get("state", default_state),
            temperature=data.get("temperature", 293.15),
            pressure=data.get("pressure", 1.0),
            visual=VisualAttributes.from_dict(data.get("visual")),
        )

    def __repr__(self):
        return f"Material({self.name!r}, {self.material_type.value})"


# --- Volume annotations ---

class SDKind(Enum):
    CALORIMETER = "calorimeter"
    TRACKER = "tracker"
    OPTICAL = "optical"
    MULTIFUNCTIONAL = "multifunctional"


class ScorerKind(Enum):
    ENERGY_DEPOSIT = "energy_deposit"
    TRACK_LENGTH = "track_length"
    STEP_COUNT = "step_count"
    FLUX = "flux"
    DOSE = "dose"


@dataclass
class ScorerConfig:
    """A primitive scorer of a multifunctional detector. Energies in MeV; a zero window means no filter."""
    name: str
    kind: ScorerKind = ScorerKind.ENERGY_DEPOSIT
    particle_filter: str = ""
    energy_min: float = 0.0
    energy_max: float = 0.0

    def __post_init__(self):
        self.kind = ScorerKind(self.kind)

    @property
    def has_energy_window(self):
        return self.energy_max > 0.0

    def validate(self):
        _require(bool(self.name), "Scorer needs a name")
        _require(self.energy_min >= 0, f"Scorer '{self.name}' energy minimum must be >= 0")
        if self.has_energy_window:
            _require(self.energy_max > self.energy_min,
                     f"Scorer '{self.name}' energy window maximum must exceed its minimum")

    def to_dict(self):
        return {"name": self.name, "kind": self.kind.value, "particleFilter": self.particle_filter,
                "energyMin": self.energy_min, "energyMax": self.energy_max}

    @classmethod
    def from_dict(cls, data):
        return cls(data["name"], data.get("kind", "energy_deposit"), data.get("particleFilter", ""),
                   float(data.get("energyMin", 0.0)), float(data.get("energyMax", 0.0)))


@dataclass
class ScoringMeshConfig:
    """Box scoring mesh centred on the volume: half-sizes in mm and bin counts."""
    size_x: float = 100.0
    size_y: float = 100.0
    size_z: float = 100.0
    bins_x: int = 10
    bins_y: int = 10
    bins_z: int = 10
    quantity: ScorerKind = ScorerKind.ENERGY_DEPOSIT

    def __post_init__(self):
        self.quantity = ScorerKind(self.quantity)

    def validate(self):
        for axis in ("x", "y", "z"):
            _require(getattr(self, f"size_{axis}") > 0, f"Scoring mesh size_{axis} must be > 0")
            _require(int(getattr(self, f"bins_{axis}")) >= 1, f"Scoring mesh bins_{axis} must be >= 1")

    def to_dict(self):
        return {"size": [self.size_x, self.size_y, self.size_z],
                "bins": [self.bins_x, self.bins_y, self.bins_z],
                "quantity": self.quantity.value}

    @classmethod
    def from_dict(cls, data):
        size = data.get("size", [100.0, 100.0, 100.0])
        bins = data.get("bins", [10, 10, 10])
        return cls(float(size[0]), float(size[1]), float(size[2]),
                   int(bins[0]), int(bins[1]), int(bins[2]), data.get("quantity", "energy_deposit"))


@dataclass
class SensitiveDetectorConfig:
    enabled: bool = False
    kind: SDKind = SDKind.CALORIMETER
    collection_name: str = ""
    copy_number: int = 0
    scorers: List[ScorerConfig] = field(default_factory=list)
    scoring_mesh: Optional[ScoringMeshConfig] = None

    def __post_init__(self):
        self.kind = SDKind(self.kind)

    def effective_collection_name(self, volume_name):
        return self.collection_name or f"{volume_name}HitsCollection"

    def validate(self):
        _require(self.copy_number >= 0, f"Copy number must be >= 0, got {self.copy_number}")
        for scorer in self.scorers:
            scorer.validate()
        if self.scoring_mesh is not None:
            self.scoring_mesh.validate()

    def copy(self):
        return SensitiveDetectorConfig.from_dict(self.to_dict())

    def to_dict(self):
        return {
            "enabled": self.enabled,
            "type": self.kind.value,
            "collectionName": self.collection_name,
            "copyNumber": self.copy_number,
            "scorers": [s.to_dict() for s in self.scorers],
            "scoringMesh": self.scoring_mesh.to_dict() if self.scoring_mesh else None,
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        kind = data.get("type", "calorimeter")
        if isinstance(kind, int):
            kind = list(SDKind)[kind]
        mesh = data.get("scoringMesh")
        return cls(
            enabled=bool(data.get("enabled", False)),
            kind=kind,
            collection_name=data.get("collectionName", ""),
            copy_number=int(data.get("copyNumber", 0)),
            scorers=[ScorerConfig.from_dict(s) for s in data.get("scorers", [])],
            scoring_mesh=ScoringMeshConfig.from_dict(mesh) if mesh else None,
        )


class OpticalModel(Enum):
    UNIFIED = "unified"
    GLISUR = "glisur"
    DICHROIC = "dichroic"


class OpticalFinish(Enum):
    POLISHED = "polished"
    POLISHED_FRONT_PAINTED = "polishedfrontpainted"
    POLISHED_BACK_PAINTED = "polishedbackpainted"
    GROUND = "ground"
    GROUND_FRONT_PAINTED = "groundfrontpainted"
    GROUND_BACK_PAINTED = "groundbackpainted"


# preset name -> (model, finish, reflectivity, sigma_alpha deg)
OPTICAL_PRESETS = {
    "tyvek": (OpticalModel.UNIFIED, OpticalFinish.GROUND, 0.98, 2.5),
    "esr": (OpticalModel.UNIFIED, OpticalFinish.POLISHED, 0.98, 0.0),
    "black": (OpticalModel.UNIFIED, OpticalFinish.POLISHED, 0.0, 0.0),
}


@dataclass
class OpticalSurfaceConfig:
    enabled: bool = False
    model: OpticalModel = OpticalModel.UNIFIED
    finish: OpticalFinish = OpticalFinish.POLISHED
    reflectivity: float = 0.95
    sigma_alpha: float = 0.0
    preset: str = ""

    def __post_init__(self):
        self.model = OpticalModel(self.model)
        self.finish = OpticalFinish(self.finish)

    def apply_preset(self, preset):
        if preset not in OPTICAL_PRESETS:
            raise ValidationError(f"Unknown optical preset '{preset}'. Known: {sorted(OPTICAL_PRESETS)}")
        self.model, self.finish, self.reflectivity, self.sigma_alpha = OPTICAL_PRESETS[preset]
        self.preset = preset

    def validate(self):
        _require(0.0 <= self.reflectivity <= 1.0, f"Reflectivity must be within [0, 1], got {self.reflectivity}")
        _require(self.sigma_alpha >= 0.0, f"Sigma alpha must be >= 0, got {self.sigma_alpha}")

    def copy(self):
        return OpticalSurfaceConfig.from_dict(self.to_dict())

    def to_dict(self):
        return {
            "enabled": self.enabled,
            "model": self.model.value,
            "finish": self.finish.value,
            "reflectivity": self.reflectivity,
            "sigmaAlpha": self.sigma_alpha,
            "preset": self.preset,
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            model=data.get("model", "unified"),
            finish=data.get("finish", "polished"),
            reflectivity=float(data.get("reflectivity", 0.95)),
            sigma_alpha=float(data.get("sigmaAlpha", 0.0)),
            preset=data.get("preset", ""),
        )


# --- Volumes ---

class _IdAllocator:
    """Process-wide monotonically increasing volume ids."""

    def __init__(self):
        self._next = 1

    def allocate(self):
        value = self._next
        self._next += 1
        return value

    def observe(self, used_id):
        if used_id >= self._next:
            self._next = used_id + 1

    @property
    def max_allocated(self):
        return self._next - 1


volume_ids = _IdAllocator()


class VolumeNode:
    """
    One placed volume. A node owns its children and its shape; the parent
    handle is a back-reference maintained by set_parent/add_child/remove_child.
    """

    def __init__(self, name="Volume", node_id=None):
        if node_id is None:
            node_id = volume_ids.allocate()
        else:
            volume_ids.observe(node_id)
        self._id = node_id
        self.name = name
        self._parent = None
        self._children = []
        self._transform = Transform()
        self.shape = None
        self.material = None
        self.sd_config = SensitiveDetectorConfig()
        self.optical_config = OpticalSurfaceConfig()
        self.visible = True

    @property
    def id(self):
        return self._id

    @property
    def parent(self):
        return self._parent

    @property
    def children(self):
        return tuple(self._children)

    @property
    def transform(self):
        return self._transform

    @transform.setter
    def transform(self, value):
        self._transform = value.copy()

    # --- Hierarchy ---

    def set_parent(self, new_parent, index=None):
        """Moves this node under `new_parent` (appending unless `index` is given)."""
        if new_parent is None:
            if self._parent is not None:
                self._parent.remove_child(self)
            return
        if new_parent is self or new_parent.is_descendant_of(self):
            raise CycleError(f"Cannot move '{self.name}' under '{new_parent.name}': that would create a cycle")
        if self._parent is not None:
            self._parent._children.remove(self)
        if index is None or index >= len(new_parent._children):
            new_parent._children.append(self)
        else:
            new_parent._children.insert(max(index, 0), self)
        self._parent = new_parent

    def add_child(self, child, index=None):
        child.set_parent(self, index)

    def remove_child(self, child):
        if child in self._children:
            self._children.remove(child)
            child._parent = None

    def child_index(self, child):
        return self._children.index(child) if child in self._children else -1

    def is_descendant_of(self, ancestor):
        current = self._parent
        while current is not None:
            if current is ancestor:
                return True
            current = current._parent
        return False

    def iter_subtree(self):
        """Pre-order depth-first iteration starting with this node."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node._children))

    def world_transform(self):
        world = self._transform
        current = self._parent
        while current is not None:
            world = current._transform.combine(world)
            current = current._parent
        return world.copy()

    # --- JSON ---

    def to_dict(self):
        return {
            "id": self._id,
            "name": self.name,
            "visible": self.visible,
            "transform": self._transform.to_dict(),
            "shape": self.shape.to_dict() if self.shape else None,
            "material": self.material.to_dict() if self.material else None,
            "sdConfig": self.sd_config.to_dict(),
            "opticalConfig": self.optical_config.to_dict(),
            "children": [child.to_dict() for child in self._children],
        }

    @classmethod
    def from_dict(cls, data, material_cache=None, preserve_ids=True):
        """
        Rebuilds a subtree. Materials are looked up by name in
        `material_cache` (and added to it), so nodes that shared a material
        when saved share one instance again.
        """
        if material_cache is None:
            material_cache = {}
        node_id = data.get("id") if preserve_ids else None
        node = cls(data.get("name", "Volume"), node_id=int(node_id) if node_id is not None else None)
        node.visible = bool(data.get("visible", True))
        node._transform = Transform.from_dict(data.get("transform"))
        if data.get("shape"):
            node.shape = Shape.from_dict(data["shape"])
        mat_data = data.get("material")
        if mat_data:
            material = material_cache.get(mat_data.get("name"))
            if material is None:
                material = Material.from_dict(mat_data)
                material_cache[material.name] = material
            node.material = material
        node.sd_config = SensitiveDetectorConfig.from_dict(data.get("sdConfig"))
        node.optical_config = OpticalSurfaceConfig.from_dict(data.get("opticalConfig"))
        for child_data in data.get("children", []):
            child = cls.from_dict(child_data, material_cache, preserve_ids)
            child._parent = node
            node._children.append(child)
        return node

    def __repr__(self):
        return f"VolumeNode(id={self._id}, name={self.name!r})"
