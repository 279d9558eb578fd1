# geantcad/project_generator.py
import datetime
import logging
import os

from .errors import ExportError, GenerateError
from .gdml_writer import GDMLExporter, GDMLWriter, sanitize_name
from .geometry_types import SDKind, ScorerKind, format_double
from .template_engine import TemplateEngine

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = "templates/geant4_project"
BUNDLED_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates", "geant4_project")
DEFAULT_PROJECT_NAME = "GeantCADSimulation"
DEFAULT_NUMBER_OF_EVENTS = 1000
GDML_FILE = "scene.gdml"

# (destination relative to the output directory, template file name)
PROJECT_FILES = [
    ("CMakeLists.txt", "CMakeLists.txt.template"),
    ("src/main.cc", "main.cc.template"),
]
for _cls in ("DetectorConstruction", "PhysicsList", "ActionInitialization", "PrimaryGeneratorAction",
             "RunAction", "EventAction", "SteppingAction"):
    PROJECT_FILES.append((f"src/{_cls}.cc", f"{_cls}.cc.template"))
    PROJECT_FILES.append((f"include/{_cls}.hh", f"{_cls}.hh.template"))
PROJECT_FILES += [
    ("macros/vis.mac", "vis.mac.template"),
    ("macros/run.mac", "run.mac.template"),
    ("README.md", "README.md.template"),
]

# Class stems generated for each sensitive-detector kind with its own SD class
SD_CLASSES = {
    SDKind.CALORIMETER: ("CalorimeterHit", "CalorimeterSD"),
    SDKind.TRACKER: ("TrackerHit", "TrackerSD"),
    SDKind.OPTICAL: ("OpticalHit", "OpticalSD"),
}

PRIMITIVE_SCORERS = {
    ScorerKind.ENERGY_DEPOSIT: "G4PSEnergyDeposit",
    ScorerKind.TRACK_LENGTH: "G4PSTrackLength",
    ScorerKind.STEP_COUNT: "G4PSNofStep",
    ScorerKind.FLUX: "G4PSCellFlux",
    ScorerKind.DOSE: "G4PSDoseDeposit",
}

MESH_QUANTITIES = {
    ScorerKind.ENERGY_DEPOSIT: "energyDeposit",
    ScorerKind.TRACK_LENGTH: "trackLength",
    ScorerKind.STEP_COUNT: "nOfStep",
    ScorerKind.FLUX: "cellFlux",
    ScorerKind.DOSE: "doseDeposit",
}

MULTIFUNCTIONAL_INCLUDES = (
    "G4MultiFunctionalDetector", "G4VPrimitiveScorer", "G4SDParticleFilter",
    "G4SDKineticEnergyFilter", "G4SDParticleWithEnergyFilter",
) + tuple(sorted(set(PRIMITIVE_SCORERS.values())))


class ProjectGenerator:
    """
    Renders the Geant4 project templates for a scene into an output
    directory and writes the scene as GDML next to them. Existing files
    keep the bodies of their user-code regions.
    """

    def __init__(self, template_dir=DEFAULT_TEMPLATE_DIR):
        self.template_dir = template_dir
        self.engine = TemplateEngine()
        self.gdml_exporter = GDMLExporter()
        self.last_error = ""

    # --- Templates ---

    def locate_template_dir(self):
        """First existing of template_dir, ../template_dir, ../../template_dir, then the bundled copy."""
        candidates = [self.template_dir,
                      os.path.join("..", self.template_dir),
                      os.path.join("..", "..", self.template_dir),
                      BUNDLED_TEMPLATE_DIR]
        for candidate in candidates:
            if os.path.isdir(candidate):
                return candidate
        raise GenerateError(f"Template directory '{self.template_dir}' not found")

    def _read_template(self, template_base, template_name):
        path = os.path.join(template_base, template_name)
        if not os.path.isfile(path):
            logger.debug("Template %s not found; skipping.", path)
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    # --- Code fragments ---

    def _used_sd_kinds(self, scene):
        kinds = []
        for node in scene.nodes():
            if node.sd_config.enabled and node.sd_config.kind not in kinds:
                kinds.append(node.sd_config.kind)
        return kinds

    def _sd_includes(self, kinds):
        lines = [f'#include "{SD_CLASSES[k][1]}.hh"' for k in kinds if k in SD_CLASSES]
        if SDKind.MULTIFUNCTIONAL in kinds:
            lines += [f'#include "{header}.hh"' for header in MULTIFUNCTIONAL_INCLUDES]
        return "\n".join(lines) + ("\n" if lines else "")

    def _scorer_filter_code(self, scorer, filter_name):
        particle = scorer.particle_filter
        if particle and scorer.has_energy_window:
            return [f'      auto filter = new G4SDParticleWithEnergyFilter("{filter_name}", '
                    f'{format_double(scorer.energy_min)}*MeV, {format_double(scorer.energy_max)}*MeV);',
                    f'      filter->add("{particle}");',
                    '      scorer->SetFilter(filter);']
        if particle:
            return [f'      scorer->SetFilter(new G4SDParticleFilter("{filter_name}", "{particle}"));']
        if scorer.has_energy_window:
            return [f'      scorer->SetFilter(new G4SDKineticEnergyFilter("{filter_name}", '
                    f'{format_double(scorer.energy_min)}*MeV, {format_double(scorer.energy_max)}*MeV));']
        return []

    def generate_sensitive_detector_setup(self, scene, names):
        """C++ for ConstructSDandField: one registered detector per enabled volume."""
        sd_nodes = [n for n in scene.nodes() if n.sd_config.enabled and n.id in names]
        if not sd_nodes:
            return "  // No sensitive detectors\n"

        lines = ["  G4SDManager* sdManager = G4SDManager::GetSDMpointer();", ""]
        for node in sd_nodes:
            config = node.sd_config
            lv_name = names[node.id]
            sd_name = f"{lv_name}_SD"
            lines.append(f"  // {config.kind.value.capitalize()} detector for {node.name}")
            lines.append("  {")
            if config.kind is SDKind.MULTIFUNCTIONAL:
                lines.append(f'    auto detector = new G4MultiFunctionalDetector("{sd_name}");')
                lines.append("    sdManager->AddNewDetector(detector);")
                for scorer in config.scorers:
                    scorer_name = sanitize_name(scorer.name)
                    lines.append("    {")
                    lines.append(f'      G4VPrimitiveScorer* scorer = new {PRIMITIVE_SCORERS[scorer.kind]}("{scorer_name}");')
                    lines += self._scorer_filter_code(scorer, f"{scorer_name}_filter")
                    lines.append("      detector->RegisterPrimitive(scorer);")
                    lines.append("    }")
            else:
                collection = config.effective_collection_name(lv_name)
                sd_class = SD_CLASSES[config.kind][1]
                lines.append(f'    auto detector = new {sd_class}("{sd_name}", "{collection}");')
                lines.append("    sdManager->AddNewDetector(detector);")
            lines.append(f'    G4LogicalVolume* volume = G4LogicalVolumeStore::GetInstance()->GetVolume("{lv_name}", false);')
            lines.append("    if (volume) {")
            lines.append("      volume->SetSensitiveDetector(detector);")
            lines.append("    }")
            lines.append("  }")
            lines.append("")
        return "\n".join(lines)

    def generate_material_definitions(self, scene):
        code = "".join(m.to_geant4_code() for m in scene.materials())
        return code or "  // No materials\n"

    def generate_scoring_mesh_commands(self, scene, names):
        """(/score/ definitions placed before beamOn, dump commands placed after)."""
        define, dump = [], []
        for node in scene.nodes():
            mesh = node.sd_config.scoring_mesh
            if not node.sd_config.enabled or mesh is None or node.id not in names:
                continue
            mesh_name = f"{names[node.id]}_mesh"
            quantity = MESH_QUANTITIES[mesh.quantity]
            center = node.world_transform().translation
            define += [
                f"/score/create/boxMesh {mesh_name}",
                f"/score/mesh/boxSize {format_double(mesh.size_x)} {format_double(mesh.size_y)} "
                f"{format_double(mesh.size_z)} mm",
                f"/score/mesh/nBin {int(mesh.bins_x)} {int(mesh.bins_y)} {int(mesh.bins_z)}",
                f"/score/mesh/translate/xyz {format_double(center[0])} {format_double(center[1])} "
                f"{format_double(center[2])} mm",
                f"/score/quantity/{quantity} {quantity}",
                "/score/close",
            ]
            dump.append(f"/score/dumpQuantityToFile {mesh_name} {quantity} {mesh_name}_{quantity}.csv")
        return ("\n".join(define) + "\n" if define else ""), ("\n".join(dump) + "\n" if dump else "")

    def physvol_names(self, scene, names):
        """Volume name -> GDML physvol name; the first volume wins when names repeat."""
        physvols = {}
        for node in scene.nodes():
            if node is not scene.root and node.id in names:
                physvols.setdefault(node.name, f"{names[node.id]}_pv")
        return physvols

    def prepare_template_variables(self, scene, project_name, number_of_events, names):
        physics = scene.physics_config
        output = scene.output_config
        kinds = self._used_sd_kinds(scene)
        mesh_commands, mesh_dumps = self.generate_scoring_mesh_commands(scene, names)

        sd_summary = "".join(f", {SD_CLASSES[k][1]}" for k in kinds if k in SD_CLASSES)
        physics_summary = "\n".join(f"- {name}" for name in physics.constructors()) or "- (none)"
        output_summary = output.generate_output_code().replace("// ", "").strip()

        return {
            "project_name": project_name,
            "generation_date": datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "gdml_file": GDML_FILE,
            "world_name": names[scene.root.id],
            "number_of_events": str(int(number_of_events)),
            "physics_includes": physics.generate_includes(),
            "physics_constructors": physics.generate_physics_code(),
            "production_cuts": physics.generate_cuts_code(),
            "particle_gun_commands": scene.particle_gun_config.generate_macro_commands(
                self.physvol_names(scene, names)),
            "sensitive_detector_includes": self._sd_includes(kinds),
            "sensitive_detector_setup": self.generate_sensitive_detector_setup(scene, names),
            "sensitive_detector_summary": sd_summary,
            "material_definitions": self.generate_material_definitions(scene),
            "output_config": output.generate_output_code(),
            "run_action_output": output.generate_run_action_code(),
            "run_action_begin": output.generate_run_begin_code(),
            "run_action_end": output.generate_run_end_code(),
            "event_action_output": output.generate_event_action_code(),
            "stepping_action_output": output.generate_stepping_action_code(),
            "scoring_mesh_commands": mesh_commands,
            "scoring_dump_commands": mesh_dumps,
            "physics_summary": physics_summary,
            "output_summary": output_summary,
        }

    # --- Generation ---

    def _file_list(self, scene):
        files = list(PROJECT_FILES)
        for kind in self._used_sd_kinds(scene):
            for stem in SD_CLASSES.get(kind, ()):
                files.append((f"src/{stem}.cc", f"{stem}.cc.template"))
                files.append((f"include/{stem}.hh", f"{stem}.hh.template"))
        return files

    def _read_existing(self, path):
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise GenerateError(f"Could not read existing file '{path}': {e}") from e

    def _write_file(self, path, content):
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise GenerateError(f"Could not write '{path}': {e}") from e

    def write_project(self, scene, output_dir, project_name=DEFAULT_PROJECT_NAME,
                      number_of_events=DEFAULT_NUMBER_OF_EVENTS):
        """Generates the project; raises GenerateError. Returns the list of written paths."""
        project_name = sanitize_name(project_name or DEFAULT_PROJECT_NAME)
        try:
            for sub in ("", "src", "include", "macros"):
                os.makedirs(os.path.join(output_dir, sub), exist_ok=True)
        except OSError as e:
            raise GenerateError(f"Could not create project directories in '{output_dir}': {e}") from e

        template_base = self.locate_template_dir()
        names = GDMLWriter(scene).names
        variables = self.prepare_template_variables(scene, project_name, number_of_events, names)

        written = []
        for destination, template_name in self._file_list(scene):
            template = self._read_template(template_base, template_name)
            if template is None:
                continue
            path = os.path.join(output_dir, destination)
            existing = self._read_existing(path)
            self._write_file(path, self.engine.render_with_preservation(template, variables, existing))
            written.append(path)

        gdml_path = os.path.join(output_dir, GDML_FILE)
        try:
            self.gdml_exporter.write(scene, gdml_path)
        except ExportError as e:
            raise GenerateError(str(e)) from e
        written.append(gdml_path)

        logger.info("Generated project '%s' in %s (%d files)", project_name, output_dir, len(written))
        return written

    def generate(self, scene, output_dir, project_name=DEFAULT_PROJECT_NAME,
                 number_of_events=DEFAULT_NUMBER_OF_EVENTS):
        self.last_error = ""
        try:
            self.write_project(scene, output_dir, project_name, number_of_events)
        except GenerateError as e:
            self.last_error = str(e)
            logger.error(self.last_error)
            return False
        return True
