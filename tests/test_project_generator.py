import os

import pytest

from geantcad.errors import GenerateError
from geantcad.geometry_types import (
    Material, SDKind, ScorerConfig, ScorerKind, ScoringMeshConfig, make_box,
)
from geantcad.gdml_writer import GDMLWriter
from geantcad.project_generator import BUNDLED_TEMPLATE_DIR, ProjectGenerator
from geantcad.scene_graph import SceneGraph
from geantcad.simulation_config import PositionMode
from geantcad.transform import Transform


@pytest.fixture
def scene():
    scene = SceneGraph()
    det = scene.create_volume("Crystal 1")
    det.shape = make_box(5, 5, 20)
    det.material = Material.make_nist("G4_BGO")
    det.transform = Transform(translation=(0, 0, 100))
    det.sd_config.enabled = True
    det.sd_config.kind = SDKind.CALORIMETER
    return scene


@pytest.fixture
def generator():
    return ProjectGenerator(BUNDLED_TEMPLATE_DIR)


def read(path):
    with open(path, encoding="utf-8") as f:
        return f.read()


def test_writes_project_tree(scene, generator, tmp_path):
    written = generator.write_project(scene, str(tmp_path), "My Sim", number_of_events=250)
    for rel in ("CMakeLists.txt", "src/main.cc", "src/DetectorConstruction.cc", "include/PhysicsList.hh",
                "macros/run.mac", "macros/vis.mac", "scene.gdml",
                "src/CalorimeterSD.cc", "include/CalorimeterHit.hh"):
        assert os.path.join(str(tmp_path), rel) in written
        assert os.path.isfile(tmp_path / rel)
    assert not (tmp_path / "src" / "TrackerSD.cc").exists()

    run_mac = read(tmp_path / "macros" / "run.mac")
    assert "/run/beamOn 250" in run_mac
    assert "/gps/particle gamma" in run_mac
    assert "My_Sim" in read(tmp_path / "CMakeLists.txt")
    assert 'parser.Read("scene.gdml", false);' in read(tmp_path / "src" / "DetectorConstruction.cc")
    assert "{{" not in read(tmp_path / "src" / "DetectorConstruction.cc")


def test_sensitive_detector_setup(scene, generator):
    names = GDMLWriter(scene).names
    code = generator.generate_sensitive_detector_setup(scene, names)
    assert 'new CalorimeterSD("Crystal_1_SD", "Crystal_1HitsCollection")' in code
    assert 'GetVolume("Crystal_1", false)' in code
    assert "volume->SetSensitiveDetector(detector);" in code


def test_no_sensitive_detectors():
    scene = SceneGraph()
    generator = ProjectGenerator(BUNDLED_TEMPLATE_DIR)
    assert generator.generate_sensitive_detector_setup(scene, GDMLWriter(scene).names) == "  // No sensitive detectors\n"


def test_multifunctional_scorers(scene, generator):
    det = scene.find_by_name("Crystal 1")
    det.sd_config.kind = SDKind.MULTIFUNCTIONAL
    det.sd_config.scorers = [
        ScorerConfig("eDep"),
        ScorerConfig("gammaFlux", ScorerKind.FLUX, particle_filter="gamma", energy_min=0.1, energy_max=2.0),
    ]
    code = generator.generate_sensitive_detector_setup(scene, GDMLWriter(scene).names)
    assert 'new G4MultiFunctionalDetector("Crystal_1_SD")' in code
    assert 'new G4PSEnergyDeposit("eDep")' in code
    assert 'new G4PSCellFlux("gammaFlux")' in code
    assert 'new G4SDParticleWithEnergyFilter("gammaFlux_filter", 0.1*MeV, 2*MeV)' in code


def test_scoring_mesh_in_run_macro(scene, generator, tmp_path):
    det = scene.find_by_name("Crystal 1")
    det.sd_config.scoring_mesh = ScoringMeshConfig(10, 10, 40, 5, 5, 20, ScorerKind.DOSE)
    generator.write_project(scene, str(tmp_path))
    run_mac = read(tmp_path / "macros" / "run.mac")
    assert "/score/create/boxMesh Crystal_1_mesh" in run_mac
    assert "/score/mesh/nBin 5 5 20" in run_mac
    assert "/score/mesh/translate/xyz 0 0 100 mm" in run_mac
    assert run_mac.index("/score/close") < run_mac.index("/run/beamOn")
    assert run_mac.index("/run/beamOn") < run_mac.index("/score/dumpQuantityToFile Crystal_1_mesh doseDeposit")


def test_material_definitions(scene, generator):
    code = generator.generate_material_definitions(scene)
    assert 'FindOrBuildMaterial("G4_BGO")' in code
    assert 'FindOrBuildMaterial("G4_Galactic")' in code


def test_user_code_survives_regeneration(scene, generator, tmp_path):
    generator.write_project(scene, str(tmp_path))
    path = tmp_path / "src" / "DetectorConstruction.cc"
    edited = read(path).replace(
        "  // ==== USER CODE BEGIN CONSTRUCT\n",
        "  // ==== USER CODE BEGIN CONSTRUCT\n  worldPV->CheckOverlaps();\n")
    path.write_text(edited, encoding="utf-8")

    scene.physics_config.optical_enabled = True
    generator.write_project(scene, str(tmp_path))
    regenerated = read(path)
    assert "  worldPV->CheckOverlaps();\n  // ==== USER CODE END CONSTRUCT" in regenerated
    assert "G4OpticalPhysics" in read(tmp_path / "src" / "PhysicsList.cc")


def test_missing_template_dir_falls_back_to_bundled(scene, tmp_path):
    generator = ProjectGenerator(str(tmp_path / "no_such_templates"))
    assert generator.locate_template_dir() == BUNDLED_TEMPLATE_DIR
    assert generator.generate(scene, str(tmp_path / "out"))


def test_generate_reports_failure(scene, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    generator = ProjectGenerator(BUNDLED_TEMPLATE_DIR)
    assert not generator.generate(scene, str(blocker / "out"))
    assert generator.last_error
    with pytest.raises(GenerateError):
        generator.write_project(scene, str(blocker / "out"))


def test_confine_volume_matches_gdml_physvol(scene, generator, tmp_path):
    first = scene.create_volume("Detector 1")
    first.shape = make_box(1, 1, 1)
    second = scene.create_volume("Detector 1")
    second.shape = make_box(1, 1, 1)
    scene.particle_gun_config.position_mode = PositionMode.VOLUME
    scene.particle_gun_config.position_volume = "Crystal 1"
    generator.write_project(scene, str(tmp_path))
    assert "/gps/pos/confine Crystal_1_pv" in read(tmp_path / "macros" / "run.mac")
    assert 'name="Crystal_1_pv"' in read(tmp_path / "scene.gdml")

    names = GDMLWriter(scene).names
    assert names[second.id] == "Detector_1_1"
    assert generator.physvol_names(scene, names)["Detector 1"] == "Detector_1_pv"
