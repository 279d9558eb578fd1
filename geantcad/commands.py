# geantcad/commands.py
"""
Reversible scene edits and the bounded history that records them.

Commands refer to volumes by id and look them up in the scene when they run,
so a command stays valid after an earlier command in the history has
rebuilt a subtree from its JSON snapshot.
"""
import logging

from .errors import CycleError, ValidationError
from .events import EventEmitter
from .geometry_types import ShapeType, VolumeNode

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 100


class Command:
    """Base class: `execute` and `undo` must be exact inverses on the scene."""

    def execute(self):
        raise NotImplementedError

    def undo(self):
        raise NotImplementedError

    def describe(self):
        return self.__class__.__name__


def _subtree_materials(node):
    """Materials of a subtree keyed by name, for re-sharing on rehydration."""
    return {n.material.name: n.material for n in node.iter_subtree() if n.material is not None}


class _NodeCommand(Command):
    def __init__(self, scene, node):
        self.scene = scene
        self.node_id = node.id
        self.node_name = node.name

    def _node(self):
        node = self.scene.find_by_id(self.node_id)
        if node is None:
            logger.warning("%s: volume id %s is no longer in the scene.", self.describe(), self.node_id)
        return node


class CreateVolumeCommand(Command):
    """
    Creates a volume holding `shape` and `material`. The shape is owned by the
    command until the first execute and by the node afterwards; undo keeps the
    detached node so redo puts the very same node back.
    """

    def __init__(self, scene, name, shape=None, material=None, parent=None):
        if shape is not None:
            shape.validate()
        self.scene = scene
        self.name = name
        self._shape = shape
        self._material = material
        self._parent_id = parent.id if parent is not None else None
        self._node = None
        self._index = None
        self.created_id = None

    def _parent(self):
        if self._parent_id is None:
            return self.scene.root
        return self.scene.find_by_id(self._parent_id) or self.scene.root

    def execute(self):
        if self._node is None:
            node = VolumeNode(self.name)
            node.shape = self._shape
            node.material = self._material
            self._shape = None
            self.created_id = node.id
        else:
            node = self._node
        self.scene.insert_volume(node, self._parent(), self._index)
        self._node = None

    def undo(self):
        node = self.scene.find_by_id(self.created_id)
        if node is None:
            logger.warning("Undo create: volume id %s not found.", self.created_id)
            return
        self._index = node.parent.child_index(node)
        self.scene.remove_volume(node)
        self._node = node

    def describe(self):
        return f"Create {self.name}"


class DeleteVolumeCommand(_NodeCommand):
    """Removes a subtree; undo rebuilds it from a JSON snapshot at its old position."""

    def __init__(self, scene, node):
        if node is scene.root:
            raise ValidationError("The World volume cannot be deleted")
        super().__init__(scene, node)
        self._snapshot = None
        self._materials = {}
        self._parent_id = node.parent.id if node.parent else None
        self._index = -1

    def execute(self):
        node = self._node()
        if node is None:
            return
        self._snapshot = node.to_dict()
        self._materials = _subtree_materials(node)
        self._parent_id = node.parent.id
        self._index = node.parent.child_index(node)
        self.scene.remove_volume(node)

    def undo(self):
        if self._snapshot is None:
            return
        parent = self.scene.find_by_id(self._parent_id) or self.scene.root
        node = VolumeNode.from_dict(self._snapshot, dict(self._materials), preserve_ids=True)
        self.scene.insert_volume(node, parent, self._index)

    def describe(self):
        return f"Delete {self.node_name}"


class TransformVolumeCommand(_NodeCommand):

    def __init__(self, scene, node, new_transform):
        super().__init__(scene, node)
        self._old = node.transform.copy()
        self._new = new_transform.copy()

    def _apply(self, transform):
        node = self._node()
        if node is None:
            return
        node.transform = transform
        self.scene.notify_graph_changed()

    def execute(self):
        self._apply(self._new)

    def undo(self):
        self._apply(self._old)

    def describe(self):
        return f"Transform {self.node_name}"


def _suffix_names(data, suffix):
    data["name"] = f"{data['name']}{suffix}"
    for child in data.get("children", []):
        _suffix_names(child, suffix)
    return data


class DuplicateVolumeCommand(_NodeCommand):
    """Deep copy placed right after the original: new ids, `_copy` names, shared materials."""
    SUFFIX = "_copy"

    def __init__(self, scene, node):
        if node is scene.root:
            raise ValidationError("The World volume cannot be duplicated")
        super().__init__(scene, node)
        self._copy = None
        self._parent_id = None
        self._index = None
        self.copy_id = None

    def execute(self):
        if self._copy is None and self.copy_id is None:
            source = self._node()
            if source is None:
                return
            data = _suffix_names(source.to_dict(), self.SUFFIX)
            copy = VolumeNode.from_dict(data, _subtree_materials(source), preserve_ids=False)
            self.copy_id = copy.id
            self._parent_id = source.parent.id
            self._index = source.parent.child_index(source) + 1
        else:
            copy = self._copy
            if copy is None:
                return
        parent = self.scene.find_by_id(self._parent_id) or self.scene.root
        self.scene.insert_volume(copy, parent, self._index)
        self._copy = None

    def undo(self):
        copy = self.scene.find_by_id(self.copy_id)
        if copy is None:
            return
        self._index = copy.parent.child_index(copy)
        self.scene.remove_volume(copy)
        self._copy = copy

    def describe(self):
        return f"Duplicate {self.node_name}"


class _ValueSwapCommand(_NodeCommand):
    """Flips one node attribute between an (old, new) pair."""

    def __init__(self, scene, node, new_value):
        super().__init__(scene, node)
        self._old = self._capture(node)
        self._new = new_value

    def _capture(self, node):
        raise NotImplementedError

    def _assign(self, node, value):
        raise NotImplementedError

    def _apply(self, value):
        node = self._node()
        if node is None:
            return
        self._assign(node, value)
        self.scene.notify_graph_changed()

    def execute(self):
        self._apply(self._new)

    def undo(self):
        self._apply(self._old)


class ModifyShapeCommand(_ValueSwapCommand):

    def __init__(self, scene, node, new_shape):
        if node is scene.root and new_shape.type is not ShapeType.BOX:
            raise ValidationError("The World volume must keep a box shape")
        new_shape.validate()
        super().__init__(scene, node, new_shape.clone())

    def _capture(self, node):
        return node.shape.clone() if node.shape is not None else None

    def _assign(self, node, value):
        # Clone on every apply so the stored pair is never aliased by the node
        node.shape = value.clone() if value is not None else None

    def describe(self):
        return f"Modify shape of {self.node_name}"


class ModifyNameCommand(_ValueSwapCommand):

    def __init__(self, scene, node, new_name):
        if node is scene.root:
            raise ValidationError("The World volume cannot be renamed")
        if not new_name or not str(new_name).strip():
            raise ValidationError("Volume name must not be empty")
        super().__init__(scene, node, str(new_name))

    def _capture(self, node):
        return node.name

    def _assign(self, node, value):
        node.name = value

    def describe(self):
        return f"Rename {self._old} to {self._new}"


class ModifyMaterialCommand(_ValueSwapCommand):

    def _capture(self, node):
        return node.material

    def _assign(self, node, value):
        node.material = value

    def describe(self):
        new_name = self._new.name if self._new is not None else "none"
        return f"Set material of {self.node_name} to {new_name}"


class ModifySDConfigCommand(_ValueSwapCommand):

    def __init__(self, scene, node, new_config):
        new_config.validate()
        super().__init__(scene, node, new_config.copy())

    def _capture(self, node):
        return node.sd_config.copy()

    def _assign(self, node, value):
        node.sd_config = value.copy()

    def describe(self):
        return f"Modify sensitive detector of {self.node_name}"


class ModifyOpticalConfigCommand(_ValueSwapCommand):

    def __init__(self, scene, node, new_config):
        new_config.validate()
        super().__init__(scene, node, new_config.copy())

    def _capture(self, node):
        return node.optical_config.copy()

    def _assign(self, node, value):
        node.optical_config = value.copy()

    def describe(self):
        return f"Modify optical surface of {self.node_name}"


class SetVisibilityCommand(_ValueSwapCommand):

    def _capture(self, node):
        return node.visible

    def _assign(self, node, value):
        node.visible = bool(value)

    def describe(self):
        return f"{'Show' if self._new else 'Hide'} {self.node_name}"


class ReparentVolumeCommand(_NodeCommand):

    def __init__(self, scene, node, new_parent, index=None):
        if node is scene.root:
            raise CycleError("The World volume cannot be reparented")
        if new_parent is node or new_parent.is_descendant_of(node):
            raise CycleError(f"Cannot move '{node.name}' under '{new_parent.name}': that would create a cycle")
        super().__init__(scene, node)
        self._old_parent_id = node.parent.id
        self._old_index = node.parent.child_index(node)
        self._new_parent_id = new_parent.id
        self._new_index = index
        self._new_parent_name = new_parent.name

    def _move(self, parent_id, index):
        node = self._node()
        parent = self.scene.find_by_id(parent_id)
        if node is None or parent is None:
            return
        self.scene.reparent_volume(node, parent, index)

    def execute(self):
        self._move(self._new_parent_id, self._new_index)

    def undo(self):
        self._move(self._old_parent_id, self._old_index)

    def describe(self):
        return f"Move {self.node_name} into {self._new_parent_name}"


class CompositeCommand(Command):
    """Runs several commands as one history entry; undo runs them in reverse."""

    def __init__(self, description, commands):
        self.description = description
        self.commands = list(commands)

    def execute(self):
        done = []
        try:
            for cmd in self.commands:
                cmd.execute()
                done.append(cmd)
        except Exception:
            for cmd in reversed(done):
                cmd.undo()
            raise

    def undo(self):
        for cmd in reversed(self.commands):
            cmd.undo()

    def describe(self):
        return self.description


class CommandStack(EventEmitter):
    """
    Linear undo history with a cursor. Entries before the cursor are applied,
    entries after it form the redo tail. Emits `history_changed()` after each
    state-changing call.
    """
    SIGNALS = ("history_changed",)

    def __init__(self, capacity=DEFAULT_HISTORY_CAPACITY):
        super().__init__()
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.capacity = capacity
        self._entries = []
        self._cursor = 0

    def execute(self, command):
        """Runs `command` and records it. If it raises, the history is left untouched."""
        command.execute()
        del self._entries[self._cursor:]
        self._entries.append(command)
        self._cursor = len(self._entries)
        if len(self._entries) > self.capacity:
            self._entries.pop(0)
            self._cursor -= 1
        self._emit("history_changed")
        return True

    def _step_back(self):
        self._cursor -= 1
        try:
            self._entries[self._cursor].undo()
        except Exception:
            self._cursor += 1
            raise

    def _step_forward(self):
        self._entries[self._cursor].execute()
        self._cursor += 1

    def undo(self):
        if not self.can_undo:
            return False
        self._step_back()
        self._emit("history_changed")
        return True

    def redo(self):
        if not self.can_redo:
            return False
        self._step_forward()
        self._emit("history_changed")
        return True

    def go_to(self, index):
        """Undoes or redoes until exactly `index` entries are applied."""
        if not 0 <= index <= len(self._entries):
            raise IndexError(f"History index {index} out of range 0..{len(self._entries)}")
        if index == self._cursor:
            return False
        while self._cursor > index:
            self._step_back()
        while self._cursor < index:
            self._step_forward()
        self._emit("history_changed")
        return True

    def clear(self):
        self._entries = []
        self._cursor = 0
        self._emit("history_changed")

    @property
    def can_undo(self):
        return self._cursor > 0

    @property
    def can_redo(self):
        return self._cursor < len(self._entries)

    @property
    def undo_description(self):
        return self._entries[self._cursor - 1].describe() if self.can_undo else ""

    @property
    def redo_description(self):
        return self._entries[self._cursor].describe() if self.can_redo else ""

    @property
    def cursor(self):
        return self._cursor

    def history(self):
        """(description, applied) for every entry, oldest first."""
        return [(cmd.describe(), i < self._cursor) for i, cmd in enumerate(self._entries)]

    def __len__(self):
        return len(self._entries)
