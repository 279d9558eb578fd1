import pytest
import numpy as np
from unittest.mock import MagicMock

from geantcad.commands import (
    CommandStack, CompositeCommand, CreateVolumeCommand, DeleteVolumeCommand,
    DuplicateVolumeCommand, ModifyMaterialCommand, ModifyNameCommand,
    ModifyShapeCommand, ReparentVolumeCommand, SetVisibilityCommand,
    TransformVolumeCommand,
)
from geantcad.errors import CycleError, ValidationError
from geantcad.geometry_types import Material, make_box, make_sphere, make_tube
from geantcad.scene_graph import SceneGraph
from geantcad.transform import Transform


@pytest.fixture
def scene():
    return SceneGraph()


@pytest.fixture
def stack():
    return CommandStack()


def names(scene):
    return [n.name for n in scene.nodes()]


def create(scene, stack, name, shape=None, material=None, parent=None):
    cmd = CreateVolumeCommand(scene, name, shape or make_box(10, 10, 10), material or Material.make_air(), parent)
    stack.execute(cmd)
    return scene.find_by_id(cmd.created_id)


def test_create_undo_redo(scene, stack):
    stack.execute(CreateVolumeCommand(scene, "B1", make_box(10, 10, 10), Material.make_air()))
    assert names(scene) == ["World", "B1"]

    assert stack.undo()
    assert names(scene) == ["World"]

    assert stack.redo()
    b1 = scene.root.children[0]
    assert b1.name == "B1"
    assert b1.shape == make_box(10, 10, 10)
    assert b1.material.nist_name == "G4_AIR"


def test_delete_undo_restores_subtree(scene, stack):
    lead = Material.make_lead()
    p = create(scene, stack, "P", make_box(50, 50, 50))
    c1 = create(scene, stack, "C1", make_tube(0, 5, 5), lead, p)
    create(scene, stack, "C2", make_sphere(0, 3), lead, p)
    t = c1.transform
    t.set_translation((1, 2, 3))
    stack.execute(TransformVolumeCommand(scene, c1, t))
    before = scene.root.to_dict()

    stack.execute(DeleteVolumeCommand(scene, p))
    assert names(scene) == ["World"]

    stack.undo()
    assert names(scene) == ["World", "P", "C1", "C2"]
    restored = scene.find_by_name("P")
    assert [c.name for c in restored.children] == ["C1", "C2"]
    rc1, rc2 = restored.children
    assert np.allclose(rc1.transform.translation, (1, 2, 3))
    assert rc1.shape == make_tube(0, 5, 5)
    assert rc1.material is rc2.material
    assert rc1.material is lead
    assert scene.root.to_dict()["children"] == before["children"]


def test_delete_root_rejected(scene):
    with pytest.raises(ValidationError):
        DeleteVolumeCommand(scene, scene.root)


def test_world_keeps_name_and_box_shape(scene, stack):
    with pytest.raises(ValidationError):
        ModifyNameCommand(scene, scene.root, "Universe")
    with pytest.raises(ValidationError):
        ModifyShapeCommand(scene, scene.root, make_sphere(0, 500))
    stack.execute(ModifyShapeCommand(scene, scene.root, make_box(2000, 2000, 2000)))
    assert scene.root.name == "World"
    assert scene.root.shape.params.x == 2000
    assert stack.can_undo


def test_transform_undo_redo(scene, stack):
    n = create(scene, stack, "N")
    assert np.allclose(n.world_transform().translation, (0, 0, 0))
    stack.execute(TransformVolumeCommand(scene, n, Transform(translation=(10, 20, 30))))
    assert np.allclose(n.world_transform().translation, (10, 20, 30))
    stack.undo()
    assert np.allclose(n.world_transform().translation, (0, 0, 0))
    stack.redo()
    assert np.allclose(n.world_transform().translation, (10, 20, 30))


def test_commands_survive_rehydration(scene, stack):
    # Later commands look volumes up by id, so they keep working after a
    # delete/undo has rebuilt the node from its snapshot.
    n = create(scene, stack, "N")
    stack.execute(ModifyNameCommand(scene, n, "Renamed"))
    stack.execute(DeleteVolumeCommand(scene, n))
    stack.undo()
    stack.undo()
    assert scene.root.children[0].name == "N"
    stack.redo()
    assert scene.root.children[0].name == "Renamed"


def test_modify_shape_keeps_independent_copies(scene, stack):
    n = create(scene, stack, "N", make_box(1, 1, 1))
    new_shape = make_box(2, 2, 2)
    stack.execute(ModifyShapeCommand(scene, n, new_shape))
    new_shape.params.x = 99
    assert n.shape.params.x == 2
    stack.undo()
    assert n.shape.params.x == 1


def test_modify_name_rejects_empty(scene, stack):
    n = create(scene, stack, "N")
    with pytest.raises(ValidationError):
        ModifyNameCommand(scene, n, "  ")


def test_modify_material_and_visibility(scene, stack):
    n = create(scene, stack, "N")
    stack.execute(ModifyMaterialCommand(scene, n, Material.make_lead()))
    stack.execute(SetVisibilityCommand(scene, n, False))
    assert n.material.nist_name == "G4_Pb"
    assert n.visible is False
    stack.undo()
    stack.undo()
    assert n.material.nist_name == "G4_AIR"
    assert n.visible is True


def test_reparent_rejects_cycle(scene, stack):
    a = create(scene, stack, "A")
    b = create(scene, stack, "B", parent=a)
    with pytest.raises(CycleError):
        ReparentVolumeCommand(scene, a, b)


def test_reparent_undo_restores_position(scene, stack):
    a = create(scene, stack, "A")
    b = create(scene, stack, "B")
    c = create(scene, stack, "C")
    stack.execute(ReparentVolumeCommand(scene, c, a))
    assert c.parent is a
    stack.undo()
    assert scene.root.children == (a, b, c)


def test_duplicate_places_copy_after_original(scene, stack):
    lead = Material.make_lead()
    p = create(scene, stack, "P", material=lead)
    create(scene, stack, "C", parent=p)
    after = create(scene, stack, "After")
    cmd = DuplicateVolumeCommand(scene, p)
    stack.execute(cmd)
    copy = scene.find_by_id(cmd.copy_id)
    assert [n.name for n in scene.root.children] == ["P", "P_copy", "After"]
    assert copy.children[0].name == "C_copy"
    assert copy.id != p.id
    assert copy.material is lead
    stack.undo()
    assert scene.root.children == (p, after)
    stack.redo()
    assert scene.root.children[1].id == cmd.copy_id


def test_composite_undoes_in_reverse():
    order = []

    class Recorder:
        def __init__(self, tag):
            self.tag = tag

        def execute(self):
            order.append(("do", self.tag))

        def undo(self):
            order.append(("undo", self.tag))

        def describe(self):
            return self.tag

    stack = CommandStack()
    stack.execute(CompositeCommand("both", [Recorder("a"), Recorder("b")]))
    stack.undo()
    assert order == [("do", "a"), ("do", "b"), ("undo", "b"), ("undo", "a")]
    assert stack.redo_description == "both"


def test_composite_rolls_back_on_failure(scene):
    n = scene.create_volume("N")

    class Boom:
        def execute(self):
            raise ValidationError("boom")

        def undo(self):
            pass

    rename = ModifyNameCommand(scene, n, "Renamed")
    stack = CommandStack()
    with pytest.raises(ValidationError):
        stack.execute(CompositeCommand("bad", [rename, Boom()]))
    assert n.name == "N"
    assert len(stack) == 0


def test_execute_truncates_redo_tail(scene, stack):
    create(scene, stack, "A")
    create(scene, stack, "B")
    stack.undo()
    assert stack.can_redo
    create(scene, stack, "C")
    assert not stack.can_redo
    assert [desc for desc, _ in stack.history()] == ["Create A", "Create C"]


def test_capacity_drops_oldest(scene):
    stack = CommandStack(capacity=2)
    for name in ("A", "B", "C"):
        create(scene, stack, name)
    assert len(stack) == 2
    assert stack.undo() and stack.undo()
    assert not stack.undo()
    assert names(scene) == ["World", "A"]


def test_empty_history_is_noop(stack):
    assert stack.undo() is False
    assert stack.redo() is False
    assert stack.undo_description == ""
    assert stack.redo_description == ""


def test_go_to(scene, stack):
    for name in ("A", "B", "C"):
        create(scene, stack, name)
    stack.go_to(1)
    assert names(scene) == ["World", "A"]
    assert stack.history() == [("Create A", True), ("Create B", False), ("Create C", False)]
    stack.go_to(3)
    assert names(scene) == ["World", "A", "B", "C"]
    with pytest.raises(IndexError):
        stack.go_to(4)


def test_history_changed_signal(scene, stack):
    listener = MagicMock()
    stack.connect("history_changed", listener)
    create(scene, stack, "A")
    stack.undo()
    stack.undo()
    assert listener.call_count == 2
