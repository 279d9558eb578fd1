import pytest

from geantcad.errors import ValidationError
from geantcad.simulation_config import (
    DirectionMode, EmModel, EnergyMode, OutputConfig, OutputSchema,
    ParticleGunConfig, PhysicsConfig, PositionMode,
)


# --- Physics ---

def test_default_physics_constructors():
    physics = PhysicsConfig()
    assert physics.constructors() == [
        "G4EmStandardPhysics", "G4HadronElasticPhysics", "G4HadronPhysicsFTFP_BERT", "G4StoppingPhysics",
    ]
    assert '#include "G4EmStandardPhysics.hh"\n' in physics.generate_includes()


def test_physics_code_for_selected_models():
    physics = PhysicsConfig(hadronic_enabled=False, optical_enabled=True, em_model="livermore")
    code = physics.generate_physics_code()
    assert code == "  RegisterPhysics(new G4EmLivermorePhysics());\n  RegisterPhysics(new G4OpticalPhysics());\n"


def test_no_constructors_leaves_placeholder():
    physics = PhysicsConfig(em_enabled=False, hadronic_enabled=False)
    assert "No physics constructors" in physics.generate_physics_code()


def test_cuts_code():
    physics = PhysicsConfig(gamma_cut=0.5)
    code = physics.generate_cuts_code()
    assert '  SetCutValue(0.5*mm, "gamma");\n' in code
    assert '  SetCutValue(0.1*mm, "e-");\n' in code


def test_invalid_cut_rejected():
    with pytest.raises(ValidationError):
        PhysicsConfig(proton_cut=0).validate()


def test_physics_round_trip_and_legacy_enum_index():
    physics = PhysicsConfig(em_enabled=True, hadronic_enabled=False, gamma_cut=0.5, em_model=EmModel.OPTION4)
    assert PhysicsConfig.from_dict(physics.to_dict()) == physics
    assert PhysicsConfig.from_dict({"em_model": 1}).em_model is EmModel.OPTION1
    with pytest.raises(ValidationError):
        PhysicsConfig.from_dict({"em_model": "quantum"})


# --- Output ---

def test_output_file_type():
    assert OutputConfig().file_type == "csv"
    assert OutputConfig(root_enabled=True).file_type == "root"
    assert OutputConfig(csv_fallback=False).file_type is None


def test_schema_forces_granularity():
    assert OutputConfig(schema="step_hits", per_event=True).effective_per_event is False
    assert OutputConfig(schema="event_summary", per_event=False).effective_per_event is True
    assert OutputConfig(schema=OutputSchema.CUSTOM, per_event=False).effective_per_event is False


def test_run_action_books_enabled_columns():
    output = OutputConfig(root_enabled=True, root_file_path="results/run.root", compression=True)
    code = output.generate_run_action_code()
    assert 'SetDefaultFileType("root")' in code
    assert 'SetFileName("results/run")' in code
    assert "SetCompressionLevel(1)" in code
    assert 'CreateNtupleIColumn("event_id")' in code
    assert 'CreateNtupleDColumn("edep")' in code
    assert "volume_name" not in code
    assert code.index('"event_id"') < code.index('"x"') < code.index('"edep"')


def test_event_and_step_fill_code_are_exclusive():
    per_event = OutputConfig(save_frequency=10)
    assert "eventID % 10 == 0" in per_event.generate_event_action_code()
    assert "No per-step output" in per_event.generate_stepping_action_code()

    per_step = OutputConfig(schema="step_hits")
    assert "No per-event output" in per_step.generate_event_action_code()
    assert "FillNtupleDColumn" in per_step.generate_stepping_action_code()


def test_disabled_output_emits_nothing():
    output = OutputConfig(csv_fallback=False)
    assert output.generate_run_begin_code() == ""
    assert output.generate_run_end_code() == ""
    assert output.generate_output_code() == "// Output: disabled\n"


def test_output_validation():
    with pytest.raises(ValidationError):
        OutputConfig(save_frequency=0).validate()
    with pytest.raises(ValidationError):
        OutputConfig(root_enabled=True, root_file_path="").validate()


def test_output_round_trip_ignores_unknown_fields():
    output = OutputConfig(fields={"time": True, "bogus": True})
    assert "bogus" not in output.fields
    assert output.fields["time"] is True
    assert OutputConfig.from_dict(output.to_dict()) == output


# --- Particle gun ---

def test_mono_point_isotropic_macro():
    gun = ParticleGunConfig(particle_type="gamma", energy_mode=EnergyMode.MONO, energy=1.0)
    lines = gun.generate_macro_commands().splitlines()
    assert lines[:4] == ["/gps/particle gamma", "/gps/number 1", "/gps/ene/type Mono", "/gps/ene/mono 1 MeV"]
    assert "/gps/pos/type Point" in lines
    assert "/gps/pos/centre 0 0 0 mm" in lines
    assert lines[-1] == "/gps/ang/type iso"


def test_gaussian_volume_source():
    gun = ParticleGunConfig(energy_mode="gaussian", energy_mean=2.5, energy_sigma=0.2,
                            position_mode=PositionMode.VOLUME, position_radius=5, position_volume="Target")
    macro = gun.generate_macro_commands()
    assert "/gps/ene/type Gauss\n/gps/ene/mono 2.5 MeV\n/gps/ene/sigma 0.2 MeV" in macro
    assert "/gps/pos/type Volume" in macro
    assert "/gps/pos/radius 5 mm" in macro
    assert "/gps/pos/confine Target_pv" in macro


def test_fixed_direction_is_normalized():
    gun = ParticleGunConfig(direction_mode=DirectionMode.FIXED, direction_x=0, direction_y=0, direction_z=-4)
    assert "/gps/direction 0 0 -1" in gun.generate_macro_commands()


def test_cone_direction_frame():
    gun = ParticleGunConfig(direction_mode="cone", cone_angle=15)
    macro = gun.generate_macro_commands()
    assert "/gps/ang/rot1 1 0 0" in macro
    assert "/gps/ang/rot2 0 -1 0" in macro
    assert "/gps/ang/maxtheta 15 deg" in macro


@pytest.mark.parametrize("kwargs", [
    {"particle_type": ""},
    {"energy": 0},
    {"energy_mode": "uniform", "energy_min": 3, "energy_max": 1},
    {"number_of_particles": 0},
    {"direction_mode": "fixed", "direction_z": 0},
    {"direction_mode": "cone", "cone_angle": 0},
])
def test_invalid_gun_rejected(kwargs):
    with pytest.raises(ValidationError):
        ParticleGunConfig(**kwargs).validate()


def test_gun_round_trip_uses_camel_case():
    gun = ParticleGunConfig(particle_type="e-", energy=3.0, position_x=1.5)
    data = gun.to_dict()
    assert data["particleType"] == "e-"
    assert data["positionX"] == 1.5
    assert ParticleGunConfig.from_dict(data) == gun


def test_confine_uses_gdml_physvol_name():
    gun = ParticleGunConfig(position_mode=PositionMode.VOLUME, position_volume="Detector 1")
    assert "/gps/pos/confine Detector_1_pv" in gun.generate_macro_commands()
    macro = gun.generate_macro_commands({"Detector 1": "Detector_1_2_pv"})
    assert "/gps/pos/confine Detector_1_2_pv" in macro
