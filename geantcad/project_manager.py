# geantcad/project_manager.py
import logging
import math
import os

from . import nist_materials
from .commands import (
    CommandStack, CompositeCommand, CreateVolumeCommand, DeleteVolumeCommand,
    DuplicateVolumeCommand, ModifyMaterialCommand, ModifyNameCommand,
    ModifyOpticalConfigCommand, ModifySDConfigCommand, ModifyShapeCommand,
    ReparentVolumeCommand, SetVisibilityCommand, TransformVolumeCommand,
)
from .errors import GeantCADError, LoadError, ValidationError
from .expression_evaluator import ExpressionEvaluator
from .gdml_parser import GDMLParser
from .gdml_writer import GDMLExporter
from .geometry_types import (
    PARAMS_BY_TYPE, Material, OpticalSurfaceConfig, SensitiveDetectorConfig, Shape,
    parse_shape_type,
)
from .mesh_exporter import MeshExporter
from .project_generator import DEFAULT_NUMBER_OF_EVENTS, DEFAULT_TEMPLATE_DIR, ProjectGenerator
from .scene_graph import SceneGraph
from .serialization import PROJECT_EXTENSION, load_project, save_project
from .simulation_config import OutputConfig, ParticleGunConfig, PhysicsConfig

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "untitled"
DEFAULT_MATERIAL = "G4_AIR"

# Shape parameters that are names or tags rather than numbers
NON_NUMERIC_PARAMS = {"operation", "solidA", "solidB", "solid_a", "solid_b"}

# Shape parameters stored in degrees
ANGLE_PARAMS = {"sphi", "dphi", "stheta", "dtheta", "rel_rot_x", "rel_rot_y", "rel_rot_z",
                "relRotX", "relRotY", "relRotZ"}

# Angle unit symbols rescaled so "90*deg" evaluates to 90
DEGREE_UNITS = {"deg": 1.0, "degree": 1.0, "rad": 180.0 / math.pi, "mrad": 0.18 / math.pi}


class ProjectManager:
    """
    Single entry point for an authoring session: owns the scene graph and
    its undo history, and wraps every edit as a command. Public methods
    return `(success, message_or_payload)` and never raise GeantCADError.
    """

    def __init__(self, expression_evaluator=None, template_dir=DEFAULT_TEMPLATE_DIR, history_capacity=100):
        self.evaluator = expression_evaluator or ExpressionEvaluator()
        self.scene_graph = SceneGraph()
        self.command_stack = CommandStack(history_capacity)
        self.gdml_parser = GDMLParser()
        self.gdml_exporter = GDMLExporter()
        self.mesh_exporter = MeshExporter()
        self.generator = ProjectGenerator(template_dir)

        # User-defined materials that may not be assigned to any volume yet
        self.material_library = {}

        self.project_name = DEFAULT_PROJECT_NAME
        self.projects_dir = "projects"
        self.is_changed = False
        self.last_warnings = []

    def create_empty_project(self):
        self.scene_graph = SceneGraph()
        self.material_library = {}
        self.command_stack.clear()
        self.project_name = DEFAULT_PROJECT_NAME
        self.is_changed = False
        self.last_warnings = []

    # --- Helpers ---

    def _get_node(self, volume_id):
        try:
            return self.scene_graph.find_by_id(int(volume_id))
        except (TypeError, ValueError):
            return None

    def _get_nodes(self, volume_ids):
        """Resolves one id or a list of ids; returns (nodes, missing_ids)."""
        if not isinstance(volume_ids, (list, tuple)):
            volume_ids = [volume_ids]
        nodes, missing = [], []
        for volume_id in volume_ids:
            node = self._get_node(volume_id)
            if node is None:
                missing.append(volume_id)
            elif node not in nodes:
                nodes.append(node)
        return nodes, missing

    def _execute(self, command_factory, message):
        """Builds and runs a command. Construction errors leave scene and history untouched."""
        try:
            command = command_factory()
            self.command_stack.execute(command)
        except GeantCADError as e:
            logger.warning("Edit rejected: %s", e)
            return False, str(e)
        self.is_changed = True
        return True, message

    def _group(self, description, commands):
        return commands[0] if len(commands) == 1 else CompositeCommand(description, commands)

    def _evaluate_value(self, value, defines=None):
        if isinstance(value, (list, tuple)):
            return [self._evaluate_value(v, defines) for v in value]
        ok, result = self.evaluator.evaluate(value, defines)
        if not ok:
            raise ValidationError(f"Invalid value '{value}': {result}")
        return result

    def _vector(self, values, what, defines=None):
        """A 3-vector from {x, y, z} or a sequence; entries may be expressions."""
        if values is None:
            return None
        if isinstance(values, dict):
            values = [values.get('x', 0), values.get('y', 0), values.get('z', 0)]
        if not isinstance(values, (list, tuple)) or len(values) != 3:
            raise ValidationError(f"{what} must have three components, got {values!r}")
        return self._evaluate_value(list(values), defines)

    def build_shape(self, shape_type, raw_params=None, name=None):
        """
        Creates a validated Shape from a parameter dict whose numeric entries
        may be numbers or expressions such as "5*cm" (evaluated to mm/deg).
        """
        shape_type = parse_shape_type(shape_type)
        evaluated = {}
        for key, value in (raw_params or {}).items():
            if key in NON_NUMERIC_PARAMS:
                evaluated[key] = value
            elif key in ANGLE_PARAMS:
                evaluated[key] = self._evaluate_value(value, DEGREE_UNITS)
            else:
                evaluated[key] = self._evaluate_value(value)
        params = PARAMS_BY_TYPE[shape_type].from_dict(evaluated)
        shape = Shape(shape_type, params, name)
        shape.validate()
        return shape

    # --- Materials ---

    def resolve_material(self, material_name):
        """
        Looks a material up by name: first among materials in use, then the
        material library, then as a NIST name. Returns None if unknown.
        """
        if not material_name:
            return None
        for material in self.scene_graph.materials():
            if material.name == material_name:
                return material
        if material_name in self.material_library:
            return self.material_library[material_name]
        if nist_materials.find_by_nist_name(material_name) is not None:
            return Material.make_nist(material_name)
        if material_name.startswith("G4_"):
            logger.warning("'%s' is not in the NIST catalogue; using it as a NIST name anyway.", material_name)
            return Material.make_nist(material_name)
        return None

    def define_material(self, material_data):
        """Adds or replaces a custom material in the library from its JSON form."""
        try:
            material = Material.from_dict(material_data)
            material.validate()
        except (GeantCADError, KeyError, TypeError, ValueError) as e:
            return False, f"Invalid material: {e}"
        if material.name in (m.name for m in self.scene_graph.materials()):
            return False, f"Material '{material.name}' is in use; assign a new name instead."
        self.material_library[material.name] = material
        return True, material.name

    def search_materials(self, query=""):
        return [info.to_dict() for info in nist_materials.search(query)]

    # --- Volume edits ---

    def add_volume(self, name, shape_type, params=None, material_name=DEFAULT_MATERIAL, parent_id=None):
        """Creates a volume; on success the payload is the new volume's id."""
        parent = None
        if parent_id is not None:
            parent = self._get_node(parent_id)
            if parent is None:
                return False, f"Parent volume {parent_id} not found."
        material = self.resolve_material(material_name)
        if material is None:
            return False, f"Unknown material '{material_name}'."

        try:
            shape = self.build_shape(shape_type, params, name=name)
        except GeantCADError as e:
            return False, str(e)

        command = CreateVolumeCommand(self.scene_graph, name, shape, material, parent)
        success, message = self._execute(lambda: command, f"Created {name}")
        if not success:
            return False, message
        return True, command.created_id

    def delete_volumes(self, volume_ids):
        nodes, missing = self._get_nodes(volume_ids)
        if missing:
            return False, f"Volume(s) not found: {missing}"
        if not nodes:
            return False, "Nothing to delete."
        # A selected ancestor already takes its descendants with it
        nodes = [n for n in nodes if not any(n.is_descendant_of(other) for other in nodes)]
        return self._execute(
            lambda: self._group(f"Delete {len(nodes)} volumes",
                                [DeleteVolumeCommand(self.scene_graph, n) for n in nodes]),
            f"Deleted {', '.join(n.name for n in nodes)}")

    def duplicate_volume(self, volume_id):
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        try:
            command = DuplicateVolumeCommand(self.scene_graph, node)
        except GeantCADError as e:
            return False, str(e)
        success, message = self._execute(lambda: command, f"Duplicated {node.name}")
        if not success:
            return False, message
        return True, command.copy_id

    def transform_volume(self, volume_id, position=None, rotation=None, scale=None):
        """Position in mm, rotation as Euler angles in degrees (Rz @ Ry @ Rx); omitted parts are kept."""
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        try:
            new_transform = node.transform.copy()
            translation = self._vector(position, "Position")
            if translation is not None:
                new_transform.set_translation(translation)
            angles = self._vector(rotation, "Rotation", DEGREE_UNITS)
            if angles is not None:
                new_transform.set_rotation_euler(*angles)
            factors = self._vector(scale, "Scale")
            if factors is not None:
                new_transform.set_scale(factors)
        except GeantCADError as e:
            return False, str(e)
        return self._execute(lambda: TransformVolumeCommand(self.scene_graph, node, new_transform),
                             f"Moved {node.name}")

    def rename_volume(self, volume_id, new_name):
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        return self._execute(lambda: ModifyNameCommand(self.scene_graph, node, new_name),
                             f"Renamed to {new_name}")

    def set_volume_material(self, volume_ids, material_name):
        nodes, missing = self._get_nodes(volume_ids)
        if missing:
            return False, f"Volume(s) not found: {missing}"
        material = self.resolve_material(material_name)
        if material is None:
            return False, f"Unknown material '{material_name}'."
        return self._execute(
            lambda: self._group(f"Set material of {len(nodes)} volumes to {material.name}",
                                [ModifyMaterialCommand(self.scene_graph, n, material) for n in nodes]),
            f"Material set to {material.name}")

    def update_shape(self, volume_id, params, shape_type=None):
        """Replaces the shape's parameters; the type defaults to the current one."""
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        if shape_type is None:
            if node.shape is None:
                return False, f"Volume '{node.name}' has no shape; give a shape type."
            shape_type = node.shape.type
        name = node.shape.name if node.shape is not None else node.name
        try:
            shape = self.build_shape(shape_type, params, name=name)
        except GeantCADError as e:
            return False, str(e)
        return self._execute(lambda: ModifyShapeCommand(self.scene_graph, node, shape),
                             f"Updated shape of {node.name}")

    def update_sd_config(self, volume_id, config_data):
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        try:
            config = SensitiveDetectorConfig.from_dict(config_data)
        except (GeantCADError, KeyError, TypeError, ValueError) as e:
            return False, f"Invalid sensitive detector settings: {e}"
        return self._execute(lambda: ModifySDConfigCommand(self.scene_graph, node, config),
                             f"Updated sensitive detector of {node.name}")

    def update_optical_config(self, volume_id, config_data):
        """A non-empty `preset` overrides model, finish, reflectivity and sigma alpha."""
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        try:
            config = OpticalSurfaceConfig.from_dict(config_data)
            if config.preset:
                config.apply_preset(config.preset)
        except (GeantCADError, KeyError, TypeError, ValueError) as e:
            return False, f"Invalid optical surface settings: {e}"
        return self._execute(lambda: ModifyOpticalConfigCommand(self.scene_graph, node, config),
                             f"Updated optical surface of {node.name}")

    def set_visibility(self, volume_ids, visible):
        nodes, missing = self._get_nodes(volume_ids)
        if missing:
            return False, f"Volume(s) not found: {missing}"
        return self._execute(
            lambda: self._group(f"{'Show' if visible else 'Hide'} {len(nodes)} volumes",
                                [SetVisibilityCommand(self.scene_graph, n, bool(visible)) for n in nodes]),
            "Visibility updated.")

    def reparent_volume(self, volume_id, new_parent_id, index=None):
        node = self._get_node(volume_id)
        new_parent = self._get_node(new_parent_id)
        if node is None or new_parent is None:
            return False, "Volume or new parent not found."
        return self._execute(
            lambda: ReparentVolumeCommand(self.scene_graph, node, new_parent, index),
            f"Moved {node.name} into {new_parent.name}")

    # --- History ---

    def undo(self):
        try:
            if not self.command_stack.undo():
                return False, "Nothing to undo."
        except GeantCADError as e:
            return False, f"Undo failed: {e}"
        self.is_changed = True
        return True, "Undo successful."

    def redo(self):
        try:
            if not self.command_stack.redo():
                return False, "Nothing to redo."
        except GeantCADError as e:
            return False, f"Redo failed: {e}"
        self.is_changed = True
        return True, "Redo successful."

    def go_to_history(self, index):
        try:
            changed = self.command_stack.go_to(int(index))
        except (IndexError, TypeError, ValueError) as e:
            return False, str(e)
        except GeantCADError as e:
            return False, f"History navigation failed: {e}"
        if changed:
            self.is_changed = True
        return True, f"History at step {self.command_stack.cursor}."

    def get_history_status(self):
        stack = self.command_stack
        return {
            "can_undo": stack.can_undo,
            "can_redo": stack.can_redo,
            "undo_description": stack.undo_description,
            "redo_description": stack.redo_description,
            "cursor": stack.cursor,
            "entries": [{"description": d, "applied": a} for d, a in stack.history()],
        }

    # --- Selection ---

    def select_volume(self, volume_id, additive=False):
        if volume_id is None:
            self.scene_graph.clear_selection()
            return True, "Selection cleared."
        node = self._get_node(volume_id)
        if node is None:
            return False, f"Volume {volume_id} not found."
        if additive:
            self.scene_graph.toggle_selection(node)
        else:
            self.scene_graph.set_selected(node)
        return True, [n.id for n in self.scene_graph.multi_selection]

    # --- Simulation settings ---

    def _update_config(self, attr, config_cls, data, label):
        try:
            config = config_cls.from_dict(data)
            config.validate()
        except (GeantCADError, KeyError, TypeError, ValueError) as e:
            return False, f"Invalid {label} settings: {e}"
        setattr(self.scene_graph, attr, config)
        self.is_changed = True
        return True, f"{label.capitalize()} settings updated."

    def update_physics_config(self, data):
        return self._update_config("physics_config", PhysicsConfig, data, "physics")

    def update_output_config(self, data):
        return self._update_config("output_config", OutputConfig, data, "output")

    def update_particle_gun_config(self, data):
        return self._update_config("particle_gun_config", ParticleGunConfig, data, "particle gun")

    # --- Persistence ---

    def _default_project_path(self):
        return os.path.join(self.projects_dir, self.project_name + PROJECT_EXTENSION)

    def save_project(self, path=None):
        try:
            saved_path = save_project(self.scene_graph, path or self._default_project_path())
        except OSError as e:
            return False, f"Could not save project: {e}"
        self.is_changed = False
        return True, saved_path

    def load_project(self, path):
        try:
            warnings = load_project(self.scene_graph, path)
        except (LoadError, OSError) as e:
            return False, str(e)
        self.command_stack.clear()
        name = os.path.basename(os.path.normpath(path))
        if name.endswith(PROJECT_EXTENSION):
            name = name[:-len(PROJECT_EXTENSION)]
        self.project_name = os.path.splitext(name)[0] if name.endswith(".json") else name
        self.is_changed = False
        self.last_warnings = warnings
        return True, "Project loaded." if not warnings else " ".join(warnings)

    def list_projects(self):
        if not os.path.isdir(self.projects_dir):
            return []
        return sorted(
            entry[:-len(PROJECT_EXTENSION)] for entry in os.listdir(self.projects_dir)
            if entry.endswith(PROJECT_EXTENSION) and os.path.isdir(os.path.join(self.projects_dir, entry))
        )

    # --- GDML import / export ---

    def _replace_geometry(self, imported):
        """Takes the volume tree from `imported`, keeping this project's simulation settings."""
        data = imported.to_dict()
        data["physics"] = self.scene_graph.physics_config.to_dict()
        data["output"] = self.scene_graph.output_config.to_dict()
        data["particleGun"] = self.scene_graph.particle_gun_config.to_dict()
        data["selectedId"] = None
        data["multiSelection"] = []
        self.scene_graph.load_dict(data)
        self.command_stack.clear()
        self.is_changed = True
        self.last_warnings = list(self.gdml_parser.warnings)

    def import_gdml_string(self, gdml_string):
        try:
            imported = self.gdml_parser.parse_gdml_string(gdml_string)
            self._replace_geometry(imported)
        except LoadError as e:
            return False, str(e)
        return True, self.last_warnings

    def import_gdml_file(self, path):
        try:
            imported = self.gdml_parser.parse_gdml_file(path)
            self._replace_geometry(imported)
        except LoadError as e:
            return False, str(e)
        return True, self.last_warnings

    def export_gdml_string(self):
        try:
            return True, self.gdml_exporter.export_to_string(self.scene_graph)
        except GeantCADError as e:
            return False, str(e)

    def export_gdml(self, path):
        if not self.gdml_exporter.export_to_file(self.scene_graph, path):
            return False, self.gdml_exporter.last_error
        return True, path

    def export_mesh(self, path, file_format=None):
        if not self.mesh_exporter.export_to_file(self.scene_graph, path, file_format):
            return False, self.mesh_exporter.last_error
        return True, path

    def generate_project(self, output_dir=None, project_name=None, number_of_events=DEFAULT_NUMBER_OF_EVENTS):
        project_name = project_name or self.project_name
        output_dir = output_dir or os.path.join(self.projects_dir, project_name + "_geant4")
        if not self.generator.generate(self.scene_graph, output_dir, project_name, number_of_events):
            return False, self.generator.last_error
        return True, output_dir

    # --- Read-only views ---

    def get_object_details(self, volume_id):
        """JSON form of one volume with child ids instead of nested children, or None."""
        node = self._get_node(volume_id)
        if node is None:
            return None
        details = node.to_dict()
        details["parentId"] = node.parent.id if node.parent else None
        details["children"] = [child.id for child in node.children]
        details["worldMatrix"] = node.world_transform().matrix().tolist()
        return details

    def get_scene_description(self):
        """Flat per-volume list for the viewport: world matrix, shape, colour and visibility."""
        description = []
        selected = set(n.id for n in self.scene_graph.multi_selection)
        for node in self.scene_graph.nodes():
            visual = node.material.visual.to_dict() if node.material else None
            description.append({
                "id": node.id,
                "name": node.name,
                "parent_id": node.parent.id if node.parent else None,
                "is_world": node is self.scene_graph.root,
                "shape": node.shape.to_dict() if node.shape else None,
                "material": node.material.name if node.material else None,
                "visual": visual,
                "visible": node.visible,
                "selected": node.id in selected,
                "world_matrix": node.world_transform().matrix().tolist(),
            })
        return description

    def get_full_project_state_dict(self):
        return self.scene_graph.to_dict()
