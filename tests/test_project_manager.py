import os

import pytest
import numpy as np

from geantcad.project_manager import ProjectManager
from geantcad.project_generator import BUNDLED_TEMPLATE_DIR


@pytest.fixture
def pm(tmp_path):
    pm = ProjectManager(template_dir=BUNDLED_TEMPLATE_DIR)
    pm.projects_dir = str(tmp_path)
    return pm


def add_box(pm, name="Box", parent_id=None, material="G4_AIR"):
    ok, volume_id = pm.add_volume(name, "box", {"x": 10, "y": 10, "z": 10}, material, parent_id)
    assert ok, volume_id
    return volume_id


def test_add_volume_evaluates_expressions(pm):
    pm.evaluator.define("half", 25.0)
    ok, volume_id = pm.add_volume("Pipe", "tube", {"rmin": "1*cm", "rmax": "2*cm", "dz": "half"}, "G4_Fe")
    assert ok
    node = pm.scene_graph.find_by_id(volume_id)
    assert (node.shape.params.rmin, node.shape.params.rmax, node.shape.params.dz) == (10.0, 20.0, 25.0)
    assert node.material.nist_name == "G4_Fe"
    assert pm.is_changed


@pytest.mark.parametrize("args", [
    ("Bad", "box", {"x": "nonsense + 1"}),
    ("Bad", "box", {"x": -5}),
    ("Bad", "torus", {}),
    ("Bad", "box", {}, "Unobtainium"),
    ("Bad", "box", {}, "G4_AIR", 123456789),
])
def test_add_volume_rejects_bad_input(pm, args):
    ok, message = pm.add_volume(*args)
    assert not ok
    assert isinstance(message, str)
    assert pm.scene_graph.nodes() == [pm.scene_graph.root]
    assert not pm.command_stack.can_undo


def test_edit_undo_redo(pm):
    volume_id = add_box(pm)
    assert pm.transform_volume(volume_id, {"x": "1*cm", "y": 0, "z": 0}, [0, 0, 90])[0]
    node = pm.scene_graph.find_by_id(volume_id)
    assert np.allclose(node.transform.translation, (10, 0, 0))
    assert np.allclose(node.transform.rotation_euler, (0, 0, 90))

    assert pm.undo() == (True, "Undo successful.")
    assert np.allclose(node.transform.translation, (0, 0, 0))
    assert pm.redo() == (True, "Redo successful.")
    assert np.allclose(node.transform.translation, (10, 0, 0))

    status = pm.get_history_status()
    assert status["cursor"] == 2
    assert [e["description"] for e in status["entries"]] == ["Create Box", "Transform Box"]


def test_angle_expressions_stored_in_degrees(pm):
    ok, volume_id = pm.add_volume("Arc", "tube", {"rmax": 10, "dz": 5, "sphi": 45, "dphi": "90*deg"})
    assert ok, volume_id
    node = pm.scene_graph.find_by_id(volume_id)
    assert np.isclose(node.shape.params.dphi, 90.0)
    assert np.isclose(node.shape.params.sphi, 45.0)
    assert pm.update_shape(volume_id, {"rmax": 10, "dz": 5, "dphi": "pi*rad"})[0]
    assert np.isclose(node.shape.params.dphi, 180.0)

    assert pm.transform_volume(volume_id, None, [0, 0, "90*deg"])[0]
    assert np.allclose(node.transform.rotation_euler, (0, 0, 90))
    assert pm.transform_volume(volume_id, [0, 0, "1*cm"])[0]
    assert np.allclose(node.transform.translation, (0, 0, 10))


def test_world_cannot_be_renamed_or_reshaped(pm):
    root = pm.scene_graph.root
    assert not pm.rename_volume(root.id, "Universe")[0]
    assert not pm.update_shape(root.id, {"rmax": 100, "dz": 100}, "tube")[0]
    assert root.name == "World"
    assert not pm.command_stack.can_undo


def test_nothing_to_undo(pm):
    assert pm.undo() == (False, "Nothing to undo.")
    assert pm.redo() == (False, "Nothing to redo.")


def test_delete_multiple_skips_descendants(pm):
    parent = add_box(pm, "Parent")
    child = add_box(pm, "Child", parent)
    other = add_box(pm, "Other")
    ok, _ = pm.delete_volumes([child, parent, other])
    assert ok
    assert [n.name for n in pm.scene_graph.nodes()] == ["World"]
    pm.undo()
    assert [n.name for n in pm.scene_graph.nodes()] == ["World", "Parent", "Child", "Other"]


def test_delete_world_rejected(pm):
    ok, _ = pm.delete_volumes([pm.scene_graph.root.id])
    assert not ok
    assert not pm.command_stack.can_undo


def test_duplicate_rename_and_material(pm):
    volume_id = add_box(pm)
    ok, copy_id = pm.duplicate_volume(volume_id)
    assert ok and copy_id != volume_id
    assert pm.rename_volume(copy_id, "Twin")[0]
    assert not pm.rename_volume(copy_id, "")[0]
    assert pm.set_volume_material([volume_id, copy_id], "G4_Pb")[0]
    a, b = pm.scene_graph.find_by_id(volume_id), pm.scene_graph.find_by_id(copy_id)
    assert b.name == "Twin"
    assert a.material is b.material
    pm.undo()
    assert a.material.nist_name == "G4_AIR"
    assert b.material.nist_name == "G4_AIR"


def test_update_shape_keeps_type(pm):
    volume_id = add_box(pm)
    assert pm.update_shape(volume_id, {"x": 1, "y": 2, "z": "3*mm"})[0]
    node = pm.scene_graph.find_by_id(volume_id)
    assert (node.shape.type.value, node.shape.params.z) == ("box", 3.0)
    assert pm.update_shape(volume_id, {"rmax": 4, "dz": 4}, "tube")[0]
    assert node.shape.type.value == "tube"
    pm.undo()
    assert node.shape.type.value == "box"


def test_sd_and_optical_updates(pm):
    volume_id = add_box(pm)
    assert pm.update_sd_config(volume_id, {"enabled": True, "type": "tracker"})[0]
    assert pm.update_optical_config(volume_id, {"enabled": True, "preset": "tyvek"})[0]
    node = pm.scene_graph.find_by_id(volume_id)
    assert node.sd_config.kind.value == "tracker"
    assert node.optical_config.reflectivity == 0.98
    assert not pm.update_optical_config(volume_id, {"preset": "glitter"})[0]
    assert not pm.update_sd_config(volume_id, {"type": "bolometer"})[0]


def test_visibility_and_reparent(pm):
    a = add_box(pm, "A")
    b = add_box(pm, "B", a)
    assert pm.set_visibility([a, b], False)[0]
    assert not pm.scene_graph.find_by_id(b).visible
    assert not pm.reparent_volume(a, b)[0]
    assert pm.reparent_volume(b, pm.scene_graph.root.id, 0)[0]
    assert pm.scene_graph.root.children[0].id == b


def test_selection(pm):
    a = add_box(pm, "A")
    b = add_box(pm, "B")
    assert pm.select_volume(a) == (True, [a])
    assert pm.select_volume(b, additive=True) == (True, [a, b])
    assert pm.select_volume(None)[0]
    assert pm.scene_graph.selected is None
    assert not pm.select_volume("abc")[0]


def test_config_updates_validate(pm):
    assert pm.update_physics_config({"em_enabled": True, "hadronic_enabled": False, "cuts": {"gamma": 0.5}})[0]
    assert pm.scene_graph.physics_config.gamma_cut == 0.5
    assert not pm.update_physics_config({"cuts": {"gamma": -1}})[0]
    assert pm.scene_graph.physics_config.gamma_cut == 0.5
    assert pm.update_particle_gun_config({"particleType": "e-", "energy": 2})[0]
    assert not pm.update_output_config({"save_frequency": 0})[0]


def test_custom_material_library(pm):
    data = {"name": "Steel", "type": "compound_mass", "density": 7.9,
            "components": [{"element": {"name": "Iron", "symbol": "Fe", "Z": 26, "A": 55.85}, "fraction": 1.0}]}
    ok, name = pm.define_material(data)
    assert ok and name == "Steel"
    volume_id = add_box(pm, material="Steel")
    assert pm.scene_graph.find_by_id(volume_id).material is pm.material_library["Steel"]
    assert not pm.define_material(data)[0]


def test_save_and_load(pm, tmp_path):
    volume_id = add_box(pm)
    pm.project_name = "demo"
    ok, path = pm.save_project()
    assert ok and path == os.path.join(str(tmp_path), "demo.geantcad")
    assert not pm.is_changed
    assert pm.list_projects() == ["demo"]

    other = ProjectManager()
    ok, message = other.load_project(path)
    assert ok, message
    assert other.project_name == "demo"
    assert other.scene_graph.find_by_id(volume_id).name == "Box"
    assert not other.command_stack.can_undo

    assert not other.load_project(str(tmp_path / "missing.geantcad"))[0]


def test_gdml_export_import_keeps_settings(pm, tmp_path):
    add_box(pm, "Detector 1")
    pm.update_particle_gun_config({"particleType": "neutron"})
    ok, gdml = pm.export_gdml_string()
    assert ok and "Detector_1" in gdml

    pm.create_empty_project()
    pm.update_particle_gun_config({"particleType": "proton"})
    ok, warnings = pm.import_gdml_string(gdml)
    assert ok and warnings == []
    assert pm.scene_graph.find_by_name("Detector_1") is not None
    assert pm.scene_graph.particle_gun_config.particle_type == "proton"
    assert not pm.command_stack.can_undo

    assert not pm.import_gdml_string("<gdml>")[0]
    assert pm.scene_graph.find_by_name("Detector_1") is not None

    ok, path = pm.export_gdml(str(tmp_path / "out.gdml"))
    assert ok and os.path.isfile(path)


def test_mesh_export(pm, tmp_path):
    assert not pm.export_mesh(str(tmp_path / "empty.stl"))[0]
    add_box(pm)
    ok, path = pm.export_mesh(str(tmp_path / "scene.obj"))
    assert ok and os.path.isfile(path)


def test_generate_project_default_location(pm, tmp_path):
    add_box(pm)
    pm.project_name = "demo"
    ok, output_dir = pm.generate_project(number_of_events=10)
    assert ok
    assert output_dir == os.path.join(str(tmp_path), "demo_geant4")
    with open(os.path.join(output_dir, "macros", "run.mac")) as f:
        assert "/run/beamOn 10" in f.read()


def test_views(pm):
    parent = add_box(pm, "P")
    child = add_box(pm, "C", parent)
    pm.transform_volume(parent, [5, 0, 0])
    details = pm.get_object_details(parent)
    assert details["children"] == [child]
    assert details["parentId"] == pm.scene_graph.root.id
    assert pm.get_object_details(-1) is None

    description = {d["name"]: d for d in pm.get_scene_description()}
    assert description["World"]["is_world"]
    assert np.allclose(np.array(description["C"]["world_matrix"])[:3, 3], (5, 0, 0))
    assert description["C"]["material"] == "G4_AIR"
