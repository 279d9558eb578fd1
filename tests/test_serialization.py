import json
import os

import pytest

from geantcad import serialization
from geantcad.errors import LoadError
from geantcad.geometry_types import Element, Material, make_box, make_sphere, make_tube
from geantcad.scene_graph import SceneGraph
from geantcad.simulation_config import EnergyMode


@pytest.fixture
def scene():
    scene = SceneGraph()
    a = scene.create_volume("A")
    a.shape = make_box(20, 20, 20)
    a.material = Material.make_water()
    b = scene.create_volume("B", a)
    b.shape = make_tube(0, 5, 10)
    b.material = Material.make_compound_by_atoms(
        "MyWater", 1.0, [(Element("Hydrogen", "H", 1, 1.008), 2), (Element("Oxygen", "O", 8, 16.0), 1)])
    c = scene.create_volume("C")
    c.shape = make_sphere(0, 3)
    c.material = b.material
    scene.set_selected(b)

    scene.physics_config.em_enabled = True
    scene.physics_config.hadronic_enabled = False
    scene.physics_config.gamma_cut = 0.5
    scene.particle_gun_config.particle_type = "gamma"
    scene.particle_gun_config.energy_mode = EnergyMode.MONO
    scene.particle_gun_config.energy = 1.0
    return scene


def test_save_load_round_trip(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj")
    assert path.endswith("proj.geantcad")
    for filename in ("version.json", "scene.json", "physics.json", "output.json",
                     "particleGun.json", "materials.json"):
        assert os.path.exists(os.path.join(path, filename))

    loaded = SceneGraph()
    assert serialization.load_project(loaded, path) == []

    assert [(n.id, n.name) for n in loaded.nodes()] == [(n.id, n.name) for n in scene.nodes()]
    assert loaded.selected.id == scene.selected.id
    assert loaded.physics_config == scene.physics_config
    assert loaded.physics_config.gamma_cut == 0.5
    assert loaded.physics_config.hadronic_enabled is False
    assert loaded.particle_gun_config == scene.particle_gun_config
    assert loaded.find_by_name("B").material is loaded.find_by_name("C").material
    assert loaded.find_by_name("B").shape == scene.find_by_name("B").shape


def test_only_custom_materials_written(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj.geantcad")
    with open(os.path.join(path, "materials.json")) as f:
        materials = json.load(f)
    assert [m["name"] for m in materials] == ["MyWater"]


def test_newer_version_warns(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj")
    with open(os.path.join(path, "version.json"), "w") as f:
        json.dump({"version": 7, "format": "geantcad"}, f)
    warnings = serialization.load_project(SceneGraph(), path)
    assert len(warnings) == 1
    assert "newer" in warnings[0]


def test_missing_scene_file_fails(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj")
    os.remove(os.path.join(path, "scene.json"))
    target = SceneGraph()
    target.create_volume("Keep")
    with pytest.raises(LoadError):
        serialization.load_project(target, path)
    assert target.find_by_name("Keep") is not None


def test_corrupt_json_fails(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj")
    with open(os.path.join(path, "scene.json"), "w") as f:
        f.write("{not json")
    with pytest.raises(LoadError):
        serialization.load_project(SceneGraph(), path)


def test_missing_config_files_use_defaults(scene, tmp_path):
    path = serialization.save_project(scene, tmp_path / "proj")
    os.remove(os.path.join(path, "physics.json"))
    loaded = SceneGraph()
    serialization.load_project(loaded, path)
    assert loaded.physics_config.gamma_cut == 0.1


def test_nonexistent_project_fails(tmp_path):
    with pytest.raises(LoadError):
        serialization.load_project(SceneGraph(), tmp_path / "missing.geantcad")


def test_legacy_single_file(scene, tmp_path):
    legacy = tmp_path / "old.json"
    legacy.write_text(json.dumps(scene.to_dict()))
    loaded = SceneGraph()
    assert serialization.load_project(loaded, legacy) == []
    assert [n.name for n in loaded.nodes()] == ["World", "A", "B", "C"]
