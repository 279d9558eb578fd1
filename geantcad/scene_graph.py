# geantcad/scene_graph.py
import logging

from .errors import CycleError, GeantCADError, LoadError
from .events import EventEmitter
from .geometry_types import Material, VolumeNode, make_box, volume_ids
from .simulation_config import OutputConfig, ParticleGunConfig, PhysicsConfig

logger = logging.getLogger(__name__)

WORLD_NAME = "World"
WORLD_HALF_LENGTH = 1000.0  # mm


def _make_world():
    world = VolumeNode(WORLD_NAME)
    world.shape = make_box(WORLD_HALF_LENGTH, WORLD_HALF_LENGTH, WORLD_HALF_LENGTH, name=WORLD_NAME)
    world.material = Material.make_vacuum()
    return world


class SceneGraph(EventEmitter):
    """
    Owns the World volume and everything below it, the selection, and the
    physics/output/particle-gun configuration.

    Signals (see EventEmitter.connect):
        selection_changed(node or None)
        node_added(node)
        node_removed(node)
        graph_changed()
    """
    SIGNALS = ("selection_changed", "node_added", "node_removed", "graph_changed")

    def __init__(self):
        super().__init__()
        self.root = _make_world()
        self._selected = None
        self._multi_selection = []
        self.physics_config = PhysicsConfig()
        self.output_config = OutputConfig()
        self.particle_gun_config = ParticleGunConfig()

    # --- Creation / removal ---

    def create_volume(self, name, parent=None, index=None):
        """Creates an empty volume under `parent` (the World by default)."""
        parent = parent or self.root
        node = VolumeNode(name)
        parent.add_child(node, index)
        self._emit("node_added", node)
        self._emit("graph_changed")
        return node

    def insert_volume(self, node, parent=None, index=None):
        """Attaches an existing detached subtree, e.g. one rebuilt from JSON."""
        parent = parent or self.root
        parent.add_child(node, index)
        self._emit("node_added", node)
        self._emit("graph_changed")
        return node

    def remove_volume(self, node):
        """Detaches `node` and its subtree. Returns False for the root or a detached node."""
        if node is None:
            return False
        if node is self.root:
            logger.warning("The World volume cannot be removed.")
            return False
        if node.parent is None or not self.contains(node):
            logger.warning("Volume '%s' is not part of this scene.", node.name)
            return False

        removed = set(n.id for n in node.iter_subtree())
        selection_changed = any(n.id in removed for n in self._multi_selection) or \
            (self._selected is not None and self._selected.id in removed)
        if selection_changed:
            self._multi_selection = [n for n in self._multi_selection if n.id not in removed]
            self._selected = self._multi_selection[-1] if self._multi_selection else None

        node.parent.remove_child(node)
        self._emit("node_removed", node)
        if selection_changed:
            self._emit("selection_changed", self._selected)
        self._emit("graph_changed")
        return True

    def reparent_volume(self, node, new_parent, index=None):
        """Moves `node` under `new_parent`. Raises CycleError without mutating on a cycle."""
        if node is self.root:
            raise CycleError("The World volume cannot be reparented")
        node.set_parent(new_parent, index)
        self._emit("graph_changed")

    def notify_graph_changed(self):
        """For edits made directly on a node (name, transform, shape...)."""
        self._emit("graph_changed")

    # --- Lookup / traversal ---

    def traverse(self, visitor):
        """Calls `visitor(node)` for every node, pre-order, starting at the World."""
        for node in self.root.iter_subtree():
            visitor(node)

    def nodes(self):
        return list(self.root.iter_subtree())

    def contains(self, node):
        return node is self.root or node.is_descendant_of(self.root)

    def find_by_id(self, node_id):
        for node in self.root.iter_subtree():
            if node.id == node_id:
                return node
        return None

    def find_by_name(self, name):
        for node in self.root.iter_subtree():
            if node.name == name:
                return node
        return None

    def materials(self):
        """Distinct material instances in use, in traversal order."""
        seen = {}
        for node in self.root.iter_subtree():
            if node.material is not None and id(node.material) not in seen:
                seen[id(node.material)] = node.material
        return list(seen.values())

    # --- Selection ---

    @property
    def selected(self):
        return self._selected

    @property
    def multi_selection(self):
        return list(self._multi_selection)

    def set_selected(self, node):
        if node is None:
            self.clear_selection()
            return
        self._selected = node
        self._multi_selection = [node]
        self._emit("selection_changed", node)

    def clear_selection(self):
        if self._selected is None and not self._multi_selection:
            return
        self._selected = None
        self._multi_selection = []
        self._emit("selection_changed", None)

    def clear_multi_selection(self):
        """Drops every selected node except the primary one."""
        self._multi_selection = [self._selected] if self._selected is not None else []
        self._emit("selection_changed", self._selected)

    def add_to_selection(self, node):
        if node in self._multi_selection:
            self._multi_selection.remove(node)
        self._multi_selection.append(node)
        self._selected = node
        self._emit("selection_changed", node)

    def remove_from_selection(self, node):
        if node not in self._multi_selection:
            return
        self._multi_selection.remove(node)
        self._selected = self._multi_selection[-1] if self._multi_selection else None
        self._emit("selection_changed", self._selected)

    def toggle_selection(self, node):
        if self.is_selected(node):
            self.remove_from_selection(node)
        else:
            self.add_to_selection(node)

    def is_selected(self, node):
        return node in self._multi_selection

    # --- JSON ---

    def to_dict(self):
        return {
            "root": self.root.to_dict(),
            "selectedId": self._selected.id if self._selected else None,
            "multiSelection": [n.id for n in self._multi_selection],
            "maxId": volume_ids.max_allocated,
            "physics": self.physics_config.to_dict(),
            "output": self.output_config.to_dict(),
            "particleGun": self.particle_gun_config.to_dict(),
        }

    def load_dict(self, data, material_cache=None):
        """
        Replaces this graph's contents from `data`. Everything is decoded
        before anything is swapped in, so a LoadError leaves the graph as it was.
        """
        try:
            if not isinstance(data, dict) or not isinstance(data.get("root"), dict):
                raise LoadError("Scene data has no 'root' volume")
            if data.get("maxId") is not None:
                volume_ids.observe(int(data["maxId"]))
            root = VolumeNode.from_dict(data["root"], material_cache)
            physics = PhysicsConfig.from_dict(data.get("physics"))
            output = OutputConfig.from_dict(data.get("output"))
            gun = ParticleGunConfig.from_dict(data.get("particleGun"))
        except LoadError:
            raise
        except (GeantCADError, KeyError, TypeError, ValueError, AttributeError, IndexError) as e:
            raise LoadError(f"Malformed scene data: {e}") from e

        if root.shape is None:
            logger.warning("Loaded World volume has no shape; using the default box.")
            root.shape = make_box(WORLD_HALF_LENGTH, WORLD_HALF_LENGTH, WORLD_HALF_LENGTH, name=WORLD_NAME)
        if root.material is None:
            root.material = Material.make_vacuum()

        all_nodes = list(root.iter_subtree())
        by_id = {n.id: n for n in all_nodes}
        if len(by_id) != len(all_nodes):
            raise LoadError("Scene data contains duplicate volume ids")
        multi = [by_id[i] for i in data.get("multiSelection", []) if i in by_id]
        selected = by_id.get(data.get("selectedId"))
        if selected is not None and selected not in multi:
            multi.append(selected)

        self.root = root
        self.physics_config = physics
        self.output_config = output
        self.particle_gun_config = gun
        self._selected = selected
        self._multi_selection = multi
        self._emit("graph_changed")
        self._emit("selection_changed", self._selected)

    @classmethod
    def from_dict(cls, data, material_cache=None):
        scene = cls()
        scene.load_dict(data, material_cache)
        return scene
