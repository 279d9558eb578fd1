# geantcad/simulation_config.py
"""
Scene-wide simulation settings: physics list, ntuple output and the primary
particle source. Each block round-trips through JSON and emits deterministic
C++ or macro text for the project generator.
"""
import os
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .errors import ValidationError
from .gdml_writer import sanitize_name
from .geometry_types import format_double


def _enum_from_json(enum_cls, value):
    """Accepts the enum value string or a legacy integer index."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        members = list(enum_cls)
        if 0 <= value < len(members):
            return members[value]
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {enum_cls.__name__} value {value!r}") from e


# --- Physics ---

class EmModel(Enum):
    STANDARD = "standard"
    OPTION1 = "opt1"
    OPTION2 = "opt2"
    OPTION3 = "opt3"
    OPTION4 = "opt4"
    PENELOPE = "penelope"
    LIVERMORE = "livermore"


class HadronicModel(Enum):
    FTFP_BERT = "ftfp_bert"
    QGSP_BERT = "qgsp_bert"
    QGSP_BIC = "qgsp_bic"
    FTFP_INCLXX = "ftfp_inclxx"


EM_CONSTRUCTORS = {
    EmModel.STANDARD: "G4EmStandardPhysics",
    EmModel.OPTION1: "G4EmStandardPhysics_option1",
    EmModel.OPTION2: "G4EmStandardPhysics_option2",
    EmModel.OPTION3: "G4EmStandardPhysics_option3",
    EmModel.OPTION4: "G4EmStandardPhysics_option4",
    EmModel.PENELOPE: "G4EmPenelopePhysics",
    EmModel.LIVERMORE: "G4EmLivermorePhysics",
}

HADRONIC_CONSTRUCTORS = {
    HadronicModel.FTFP_BERT: "G4HadronPhysicsFTFP_BERT",
    HadronicModel.QGSP_BERT: "G4HadronPhysicsQGSP_BERT",
    HadronicModel.QGSP_BIC: "G4HadronPhysicsQGSP_BIC",
    HadronicModel.FTFP_INCLXX: "G4HadronPhysicsINCLXX",
}


@dataclass
class PhysicsConfig:
    em_enabled: bool = True
    decay_enabled: bool = False
    optical_enabled: bool = False
    hadronic_enabled: bool = True
    ion_enabled: bool = False
    radioactive_decay_enabled: bool = False
    step_limiter_enabled: bool = False
    em_model: EmModel = EmModel.STANDARD
    hadronic_model: HadronicModel = HadronicModel.FTFP_BERT
    # Production cuts in mm
    gamma_cut: float = 0.1
    electron_cut: float = 0.1
    positron_cut: float = 0.1
    proton_cut: float = 0.1

    def __post_init__(self):
        self.em_model = _enum_from_json(EmModel, self.em_model)
        self.hadronic_model = _enum_from_json(HadronicModel, self.hadronic_model)

    def validate(self):
        for particle, cut in self.cuts().items():
            if not cut > 0:
                raise ValidationError(f"Production cut for {particle} must be > 0 mm, got {cut}")

    def cuts(self):
        """Cut values keyed by Geant4 particle name, in emission order."""
        return {"gamma": self.gamma_cut, "e-": self.electron_cut,
                "e+": self.positron_cut, "proton": self.proton_cut}

    def constructors(self):
        names = []
        if self.em_enabled:
            names.append(EM_CONSTRUCTORS[self.em_model])
        if self.decay_enabled:
            names.append("G4DecayPhysics")
        if self.radioactive_decay_enabled:
            names.append("G4RadioactiveDecayPhysics")
        if self.optical_enabled:
            names.append("G4OpticalPhysics")
        if self.hadronic_enabled:
            names.append("G4HadronElasticPhysics")
            names.append(HADRONIC_CONSTRUCTORS[self.hadronic_model])
            names.append("G4StoppingPhysics")
        if self.ion_enabled:
            names.append("G4IonPhysics")
        if self.step_limiter_enabled:
            names.append("G4StepLimiterPhysics")
        return names

    def generate_includes(self):
        return "".join(f'#include "{name}.hh"\n' for name in self.constructors())

    def generate_physics_code(self):
        lines = [f"  RegisterPhysics(new {name}());" for name in self.constructors()]
        if not lines:
            lines = ["  // No physics constructors selected"]
        return "\n".join(lines) + "\n"

    def generate_cuts_code(self):
        return "".join(f'  SetCutValue({format_double(cut)}*mm, "{particle}");\n'
                       for particle, cut in self.cuts().items())

    def to_dict(self):
        return {
            "em_enabled": self.em_enabled,
            "decay_enabled": self.decay_enabled,
            "optical_enabled": self.optical_enabled,
            "hadronic_enabled": self.hadronic_enabled,
            "ion_enabled": self.ion_enabled,
            "radioactive_decay_enabled": self.radioactive_decay_enabled,
            "step_limiter_enabled": self.step_limiter_enabled,
            "em_model": self.em_model.value,
            "hadronic_model": self.hadronic_model.value,
            "cuts": {"gamma": self.gamma_cut, "electron": self.electron_cut,
                     "positron": self.positron_cut, "proton": self.proton_cut},
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        cuts = data.get("cuts", {})
        defaults = cls()
        return cls(
            em_enabled=bool(data.get("em_enabled", defaults.em_enabled)),
            decay_enabled=bool(data.get("decay_enabled", defaults.decay_enabled)),
            optical_enabled=bool(data.get("optical_enabled", defaults.optical_enabled)),
            hadronic_enabled=bool(data.get("hadronic_enabled", defaults.hadronic_enabled)),
            ion_enabled=bool(data.get("ion_enabled", defaults.ion_enabled)),
            radioactive_decay_enabled=bool(data.get("radioactive_decay_enabled", defaults.radioactive_decay_enabled)),
            step_limiter_enabled=bool(data.get("step_limiter_enabled", defaults.step_limiter_enabled)),
            em_model=data.get("em_model", defaults.em_model),
            hadronic_model=data.get("hadronic_model", defaults.hadronic_model),
            gamma_cut=float(cuts.get("gamma", defaults.gamma_cut)),
            electron_cut=float(cuts.get("electron", defaults.electron_cut)),
            positron_cut=float(cuts.get("positron", defaults.positron_cut)),
            proton_cut=float(cuts.get("proton", defaults.proton_cut)),
        )


# --- Output ---

class OutputSchema(Enum):
    EVENT_SUMMARY = "event_summary"
    STEP_HITS = "step_hits"
    CUSTOM = "custom"


# Column order of the output ntuple, with the analysis-manager column type
OUTPUT_COLUMNS = (
    ("event_id", "I"),
    ("track_id", "I"),
    ("volume_name", "S"),
    ("x", "D"),
    ("y", "D"),
    ("z", "D"),
    ("edep", "D"),
    ("time", "D"),
    ("kinetic_energy", "D"),
)

DEFAULT_OUTPUT_FIELDS = {
    "x": True, "y": True, "z": True, "edep": True, "event_id": True, "track_id": True,
    "volume_name": False, "time": False, "kinetic_energy": False,
}

# Per-step values available in the stepping action
_STEP_VALUES = {
    "event_id": "eventID",
    "track_id": "step->GetTrack()->GetTrackID()",
    "volume_name": "prePoint->GetTouchableHandle()->GetVolume()->GetName()",
    "x": "position.x()/mm",
    "y": "position.y()/mm",
    "z": "position.z()/mm",
    "edep": "edep/MeV",
    "time": "prePoint->GetGlobalTime()/ns",
    "kinetic_energy": "prePoint->GetKineticEnergy()/MeV",
}

# Per-event values accumulated by the event action
_EVENT_VALUES = {
    "event_id": "eventID",
    "track_id": "1",
    "volume_name": "fFirstVolume",
    "x": "centroid.x()/mm",
    "y": "centroid.y()/mm",
    "z": "centroid.z()/mm",
    "edep": "fEdep/MeV",
    "time": "fFirstHitTime/ns",
    "kinetic_energy": "fPrimaryEnergy/MeV",
}


@dataclass
class OutputConfig:
    root_enabled: bool = False
    root_file_path: str = "output.root"
    schema: OutputSchema = OutputSchema.EVENT_SUMMARY
    per_event: bool = True
    save_frequency: int = 1
    csv_fallback: bool = True
    compression: bool = False
    fields: dict = field(default_factory=lambda: dict(DEFAULT_OUTPUT_FIELDS))

    def __post_init__(self):
        self.schema = _enum_from_json(OutputSchema, self.schema)
        merged = dict(DEFAULT_OUTPUT_FIELDS)
        merged.update({k: bool(v) for k, v in (self.fields or {}).items() if k in DEFAULT_OUTPUT_FIELDS})
        self.fields = merged

    def validate(self):
        if int(self.save_frequency) < 1:
            raise ValidationError(f"Save frequency must be >= 1, got {self.save_frequency}")
        if self.root_enabled and not self.root_file_path:
            raise ValidationError("ROOT output needs a file path")

    @property
    def effective_per_event(self):
        if self.schema is OutputSchema.EVENT_SUMMARY:
            return True
        if self.schema is OutputSchema.STEP_HITS:
            return False
        return self.per_event

    @property
    def file_type(self):
        """'root', 'csv', or None when no output is written."""
        if self.root_enabled:
            return "root"
        if self.csv_fallback:
            return "csv"
        return None

    def enabled_columns(self):
        return [(name, kind) for name, kind in OUTPUT_COLUMNS if self.fields.get(name)]

    # --- Emitters ---

    def generate_output_code(self):
        """Human-readable summary placed at the top of the run action."""
        file_type = self.file_type
        if file_type is None:
            return "// Output: disabled\n"
        columns = ", ".join(name for name, _ in self.enabled_columns()) or "(none)"
        mode = "per event" if self.effective_per_event else "per step"
        lines = [
            f"// Output: {file_type} file '{self._file_stem()}.{file_type}'",
            f"// Schema: {self.schema.value} ({mode}), every {int(self.save_frequency)} event(s)",
            f"// Columns: {columns}",
        ]
        return "\n".join(lines) + "\n"

    def _file_stem(self):
        return os.path.splitext(self.root_file_path or "output.root")[0]

    def _ntuple_name(self):
        return "events" if self.effective_per_event else "hits"

    def generate_run_action_code(self):
        """Ntuple booking, placed in the RunAction constructor."""
        file_type = self.file_type
        if file_type is None:
            return "  // Output disabled\n"
        lines = [
            "  auto analysisManager = G4AnalysisManager::Instance();",
            f'  analysisManager->SetDefaultFileType("{file_type}");',
            "  analysisManager->SetVerboseLevel(1);",
        ]
        if file_type == "root":
            lines.append("  analysisManager->SetNtupleMerging(true);")
            lines.append(f"  analysisManager->SetCompressionLevel({1 if self.compression else 0});")
        lines.append(f'  analysisManager->SetFileName("{self._file_stem()}");')
        title = "Per-event summary" if self.effective_per_event else "Per-step hits"
        lines.append(f'  analysisManager->CreateNtuple("{self._ntuple_name()}", "{title}");')
        for name, kind in self.enabled_columns():
            lines.append(f'  analysisManager->CreateNtuple{kind}Column("{name}");')
        lines.append("  // ==== USER CODE BEGIN OUTPUT_COLUMNS")
        lines.append("  // ==== USER CODE END OUTPUT_COLUMNS")
        lines.append("  analysisManager->FinishNtuple();")
        return "\n".join(lines) + "\n"

    def generate_run_begin_code(self):
        if self.file_type is None:
            return ""
        return "  G4AnalysisManager::Instance()->OpenFile();\n"

    def generate_run_end_code(self):
        if self.file_type is None:
            return ""
        return ("  auto analysisManager = G4AnalysisManager::Instance();\n"
                "  analysisManager->Write();\n"
                "  analysisManager->CloseFile();\n")

    def _fill_lines(self, values, indent):
        lines = []
        for column, (name, kind) in enumerate(self.enabled_columns()):
            lines.append(f"{indent}analysisManager->FillNtuple{kind}Column({column}, {values[name]});")
        return lines

    def _frequency_guard(self):
        frequency = int(self.save_frequency)
        return f"eventID % {frequency} == 0" if frequency > 1 else "true"

    def generate_event_action_code(self):
        """Fill code for EndOfEventAction; empty in per-step mode."""
        if self.file_type is None or not self.effective_per_event:
            return "  // No per-event output\n"
        lines = [
            "  auto analysisManager = G4AnalysisManager::Instance();",
            "  const G4int eventID = event->GetEventID();",
            f"  if ({self._frequency_guard()}) {{",
            "    const G4ThreeVector centroid = (fEdep > 0.) ? fWeightedPosition / fEdep : G4ThreeVector();",
        ]
        lines += self._fill_lines(_EVENT_VALUES, "    ")
        lines += [
            "    // ==== USER CODE BEGIN EVENT_OUTPUT",
            "    // ==== USER CODE END EVENT_OUTPUT",
            "    analysisManager->AddNtupleRow();",
            "  }",
        ]
        return "\n".join(lines) + "\n"

    def generate_stepping_action_code(self):
        """Fill code for UserSteppingAction; empty in per-event mode."""
        if self.file_type is None or self.effective_per_event:
            return "  // No per-step output\n"
        lines = [
            "  const G4int eventID = G4RunManager::GetRunManager()->GetCurrentEvent()->GetEventID();",
            "  const G4double edep = step->GetTotalEnergyDeposit();",
            f"  if (edep > 0. && {self._frequency_guard()}) {{",
            "    auto analysisManager = G4AnalysisManager::Instance();",
            "    const G4StepPoint* prePoint = step->GetPreStepPoint();",
            "    const G4ThreeVector position = prePoint->GetPosition();",
        ]
        lines += self._fill_lines(_STEP_VALUES, "    ")
        lines += [
            "    // ==== USER CODE BEGIN STEP_OUTPUT",
            "    // ==== USER CODE END STEP_OUTPUT",
            "    analysisManager->AddNtupleRow();",
            "  }",
        ]
        return "\n".join(lines) + "\n"

    def to_dict(self):
        return {
            "root_enabled": self.root_enabled,
            "root_file_path": self.root_file_path,
            "schema": self.schema.value,
            "per_event": self.per_event,
            "save_frequency": int(self.save_frequency),
            "csv_fallback": self.csv_fallback,
            "compression": self.compression,
            "fields": dict(self.fields),
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        defaults = cls()
        return cls(
            root_enabled=bool(data.get("root_enabled", defaults.root_enabled)),
            root_file_path=data.get("root_file_path", defaults.root_file_path),
            schema=data.get("schema", defaults.schema),
            per_event=bool(data.get("per_event", defaults.per_event)),
            save_frequency=int(data.get("save_frequency", defaults.save_frequency)),
            csv_fallback=bool(data.get("csv_fallback", defaults.csv_fallback)),
            compression=bool(data.get("compression", defaults.compression)),
            fields=data.get("fields", defaults.fields),
        )


# --- Particle gun ---

class EnergyMode(Enum):
    MONO = "mono"
    UNIFORM = "uniform"
    GAUSSIAN = "gaussian"


class PositionMode(Enum):
    POINT = "point"
    VOLUME = "volume"
    SURFACE = "surface"


class DirectionMode(Enum):
    ISOTROPIC = "isotropic"
    FIXED = "fixed"
    CONE = "cone"


def _cone_frame(direction):
    """
    Axes (rot1, rot2) of the GPS angular frame whose -z' axis is
    `direction`, so that a cone around -z' points along it.
    """
    d = np.asarray(direction, dtype=float)
    d = d / np.linalg.norm(d)
    z_prime = -d
    helper = np.array([1.0, 0.0, 0.0]) if abs(z_prime[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    x_prime = helper - np.dot(helper, z_prime) * z_prime
    x_prime /= np.linalg.norm(x_prime)
    y_prime = np.cross(z_prime, x_prime)
    return x_prime, y_prime


def _vec(values):
    return " ".join(format_double(v) for v in values)


@dataclass
class ParticleGunConfig:
    """Primary source. Energies in MeV, lengths in mm, angles in degrees."""
    particle_type: str = "gamma"
    energy_mode: EnergyMode = EnergyMode.MONO
    energy: float = 1.0
    energy_min: float = 0.5
    energy_max: float = 2.0
    energy_mean: float = 1.0
    energy_sigma: float = 0.1
    position_mode: PositionMode = PositionMode.POINT
    position_x: float = 0.0
    position_y: float = 0.0
    position_z: float = 0.0
    position_radius: float = 10.0
    position_volume: str = ""
    direction_mode: DirectionMode = DirectionMode.ISOTROPIC
    direction_x: float = 0.0
    direction_y: float = 0.0
    direction_z: float = 1.0
    cone_angle: float = 30.0
    number_of_particles: int = 1

    def __post_init__(self):
        self.energy_mode = _enum_from_json(EnergyMode, self.energy_mode)
        self.position_mode = _enum_from_json(PositionMode, self.position_mode)
        self.direction_mode = _enum_from_json(DirectionMode, self.direction_mode)

    @property
    def direction(self):
        return (self.direction_x, self.direction_y, self.direction_z)

    @property
    def position(self):
        return (self.position_x, self.position_y, self.position_z)

    def validate(self):
        if not self.particle_type:
            raise ValidationError("Particle type must not be empty")
        if int(self.number_of_particles) < 1:
            raise ValidationError(f"Number of particles must be >= 1, got {self.number_of_particles}")
        if self.energy_mode is EnergyMode.MONO and not self.energy > 0:
            raise ValidationError(f"Energy must be > 0 MeV, got {self.energy}")
        if self.energy_mode is EnergyMode.UNIFORM and not 0 <= self.energy_min < self.energy_max:
            raise ValidationError(f"Uniform energy needs 0 <= min < max, got [{self.energy_min}, {self.energy_max}]")
        if self.energy_mode is EnergyMode.GAUSSIAN and not (self.energy_mean > 0 and self.energy_sigma > 0):
            raise ValidationError("Gaussian energy needs a positive mean and sigma")
        if self.position_mode is not PositionMode.POINT and not self.position_radius > 0:
            raise ValidationError(f"Source radius must be > 0 mm, got {self.position_radius}")
        if self.direction_mode is not DirectionMode.ISOTROPIC and np.linalg.norm(self.direction) == 0:
            raise ValidationError("Direction vector must be non-zero")
        if self.direction_mode is DirectionMode.CONE and not 0 < self.cone_angle <= 180:
            raise ValidationError(f"Cone half-angle must be within (0, 180] deg, got {self.cone_angle}")

    def generate_macro_commands(self, physvol_names=None):
        """
        General Particle Source commands reproducing this configuration.
        `physvol_names` maps volume names to their GDML physvol names, used for
        volume confinement.
        """
        cmds = [
            f"/gps/particle {self.particle_type}",
            f"/gps/number {int(self.number_of_particles)}",
        ]

        if self.energy_mode is EnergyMode.MONO:
            cmds += ["/gps/ene/type Mono", f"/gps/ene/mono {format_double(self.energy)} MeV"]
        elif self.energy_mode is EnergyMode.UNIFORM:
            cmds += [
                "/gps/ene/type Lin",
                "/gps/ene/gradient 0",
                "/gps/ene/intercept 1",
                f"/gps/ene/min {format_double(self.energy_min)} MeV",
                f"/gps/ene/max {format_double(self.energy_max)} MeV",
            ]
        else:
            cmds += [
                "/gps/ene/type Gauss",
                f"/gps/ene/mono {format_double(self.energy_mean)} MeV",
                f"/gps/ene/sigma {format_double(self.energy_sigma)} MeV",
            ]

        if self.position_mode is PositionMode.POINT:
            cmds += ["/gps/pos/type Point", f"/gps/pos/centre {_vec(self.position)} mm"]
        else:
            pos_type = "Volume" if self.position_mode is PositionMode.VOLUME else "Surface"
            cmds += [
                f"/gps/pos/type {pos_type}",
                "/gps/pos/shape Sphere",
                f"/gps/pos/centre {_vec(self.position)} mm",
                f"/gps/pos/radius {format_double(self.position_radius)} mm",
            ]
            if self.position_mode is PositionMode.VOLUME and self.position_volume:
                physvol = (physvol_names or {}).get(self.position_volume)
                if physvol is None:
                    physvol = f"{sanitize_name(self.position_volume)}_pv"
                cmds.append(f"/gps/pos/confine {physvol}")

        if self.direction_mode is DirectionMode.ISOTROPIC:
            cmds.append("/gps/ang/type iso")
        elif self.direction_mode is DirectionMode.FIXED:
            d = np.asarray(self.direction, dtype=float)
            cmds.append(f"/gps/direction {_vec(d / np.linalg.norm(d))}")
        else:
            rot1, rot2 = _cone_frame(self.direction)
            cmds += [
                "/gps/ang/type iso",
                f"/gps/ang/rot1 {_vec(rot1)}",
                f"/gps/ang/rot2 {_vec(rot2)}",
                "/gps/ang/mintheta 0 deg",
                f"/gps/ang/maxtheta {format_double(self.cone_angle)} deg",
            ]
        return "\n".join(cmds) + "\n"

    def to_dict(self):
        return {
            "particleType": self.particle_type,
            "energyMode": self.energy_mode.value,
            "energy": self.energy,
            "energyMin": self.energy_min,
            "energyMax": self.energy_max,
            "energyMean": self.energy_mean,
            "energySigma": self.energy_sigma,
            "positionMode": self.position_mode.value,
            "positionX": self.position_x,
            "positionY": self.position_y,
            "positionZ": self.position_z,
            "positionRadius": self.position_radius,
            "positionVolume": self.position_volume,
            "directionMode": self.direction_mode.value,
            "directionX": self.direction_x,
            "directionY": self.direction_y,
            "directionZ": self.direction_z,
            "coneAngle": self.cone_angle,
            "numberOfParticles": int(self.number_of_particles),
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        defaults = cls().to_dict()
        merged = {**defaults, **{k: v for k, v in data.items() if k in defaults}}
        return cls(
            particle_type=str(merged["particleType"]),
            energy_mode=merged["energyMode"],
            energy=float(merged["energy"]),
            energy_min=float(merged["energyMin"]),
            energy_max=float(merged["energyMax"]),
            energy_mean=float(merged["energyMean"]),
            energy_sigma=float(merged["energySigma"]),
            position_mode=merged["positionMode"],
            position_x=float(merged["positionX"]),
            position_y=float(merged["positionY"]),
            position_z=float(merged["positionZ"]),
            position_radius=float(merged["positionRadius"]),
            position_volume=str(merged["positionVolume"]),
            direction_mode=merged["directionMode"],
            direction_x=float(merged["directionX"]),
            direction_y=float(merged["directionY"]),
            direction_z=float(merged["directionZ"]),
            cone_angle=float(merged["coneAngle"]),
            number_of_particles=int(merged["numberOfParticles"]),
        )
