import pytest
import numpy as np
from unittest.mock import MagicMock

from geantcad.errors import CycleError, LoadError
from geantcad.geometry_types import Material, make_box, make_tube
from geantcad.scene_graph import WORLD_NAME, SceneGraph


@pytest.fixture
def scene():
    return SceneGraph()


def build_tree(scene):
    parent = scene.create_volume("P")
    parent.shape = make_box(50, 50, 50)
    c1 = scene.create_volume("C1", parent)
    c1.shape = make_tube(0, 5, 5)
    c2 = scene.create_volume("C2", parent)
    c2.shape = make_box(1, 2, 3)
    return parent, c1, c2


def test_new_scene_has_world(scene):
    assert scene.root.name == WORLD_NAME
    assert scene.root.shape is not None
    assert scene.root.material.nist_name == "G4_Galactic"
    assert scene.nodes() == [scene.root]


def test_parent_child_links(scene):
    parent, c1, c2 = build_tree(scene)
    assert parent.children == (c1, c2)
    assert c1.parent is parent
    for node in scene.nodes():
        if node is not scene.root:
            assert list(node.parent.children).count(node) == 1


def test_ids_are_unique(scene):
    build_tree(scene)
    ids = [n.id for n in scene.nodes()]
    assert len(ids) == len(set(ids))


def test_find_by_id_and_name(scene):
    parent, c1, _ = build_tree(scene)
    assert scene.find_by_id(c1.id) is c1
    assert scene.find_by_name("P") is parent
    assert scene.find_by_id(-1) is None
    assert scene.find_by_name("missing") is None


def test_traverse_is_preorder(scene):
    build_tree(scene)
    visited = []
    scene.traverse(lambda n: visited.append(n.name))
    assert visited == [WORLD_NAME, "P", "C1", "C2"]


def test_world_transform_is_product_of_ancestors(scene):
    parent, c1, _ = build_tree(scene)
    t = parent.transform
    t.set_translation((10, 0, 0))
    t.set_rotation_euler(0, 0, 90)
    parent.transform = t
    t = c1.transform
    t.set_translation((1, 0, 0))
    c1.transform = t
    world = c1.world_transform()
    assert np.allclose(world.matrix(), scene.root.transform.matrix() @ parent.transform.matrix() @ c1.transform.matrix())
    assert np.allclose(world.translation, (10, 1, 0))


def test_remove_root_is_noop(scene):
    build_tree(scene)
    before = len(scene.nodes())
    assert scene.remove_volume(scene.root) is False
    assert len(scene.nodes()) == before


def test_remove_subtree_clears_selection(scene):
    parent, c1, _ = build_tree(scene)
    scene.set_selected(c1)
    listener = MagicMock()
    scene.connect("selection_changed", listener)
    assert scene.remove_volume(parent)
    assert scene.selected is None
    listener.assert_called_with(None)
    assert scene.nodes() == [scene.root]


def test_reparent_rejects_cycles(scene):
    parent, c1, _ = build_tree(scene)
    with pytest.raises(CycleError):
        scene.reparent_volume(parent, c1)
    with pytest.raises(CycleError):
        scene.reparent_volume(parent, parent)
    assert c1.parent is parent
    assert parent.parent is scene.root


def test_reparent_moves_node(scene):
    parent, c1, c2 = build_tree(scene)
    scene.reparent_volume(c2, scene.root, 0)
    assert scene.root.children[0] is c2
    assert parent.children == (c1,)


def test_signals_fire_in_order(scene):
    events = []
    scene.connect("node_added", lambda n: events.append(("added", n.name)))
    scene.connect("graph_changed", lambda: events.append(("changed",)))
    scene.create_volume("A")
    assert events == [("added", "A"), ("changed",)]


def test_unknown_signal_rejected(scene):
    with pytest.raises(KeyError):
        scene.connect("on_everything", lambda: None)


def test_node_edits_raise_graph_changed(scene):
    assert set(scene.SIGNALS) == {"selection_changed", "node_added", "node_removed", "graph_changed"}
    node = scene.create_volume("A")
    events = []
    scene.connect("graph_changed", lambda: events.append("changed"))
    node.name = "B"
    scene.notify_graph_changed()
    assert events == ["changed"]


def test_multi_selection(scene):
    parent, c1, c2 = build_tree(scene)
    scene.set_selected(c1)
    scene.add_to_selection(c2)
    assert scene.multi_selection == [c1, c2]
    assert scene.selected is c2
    scene.toggle_selection(c2)
    assert scene.multi_selection == [c1]
    assert scene.selected is c1
    scene.clear_selection()
    assert scene.selected is None


def test_materials_are_shared_instances(scene):
    parent, c1, c2 = build_tree(scene)
    lead = Material.make_lead()
    c1.material = lead
    c2.material = lead
    names = [m.name for m in scene.materials()]
    assert names.count("G4_Pb") == 1


def test_json_round_trip_preserves_structure(scene):
    parent, c1, c2 = build_tree(scene)
    lead = Material.make_lead()
    c1.material = lead
    c2.material = lead
    scene.set_selected(c2)

    loaded = SceneGraph.from_dict(scene.to_dict())
    assert [n.name for n in loaded.nodes()] == [n.name for n in scene.nodes()]
    assert [n.id for n in loaded.nodes()] == [n.id for n in scene.nodes()]
    assert loaded.selected.id == c2.id
    lc1, lc2 = loaded.find_by_name("C1"), loaded.find_by_name("C2")
    assert lc1.material is lc2.material
    assert lc1.shape == c1.shape


def test_malformed_data_leaves_scene_unchanged(scene):
    build_tree(scene)
    before = [n.name for n in scene.nodes()]
    with pytest.raises(LoadError):
        scene.load_dict({"root": {"name": "World", "shape": {"type": "torus"}}})
    with pytest.raises(LoadError):
        scene.load_dict({"nothing": True})
    assert [n.name for n in scene.nodes()] == before
