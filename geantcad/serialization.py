# geantcad/serialization.py
"""
Project persistence. A project is a directory ending in `.geantcad`:

    version.json      {"version": 1, "format": "geantcad"}
    scene.json        the full scene graph (ids, selection, children)
    physics.json      PhysicsConfig
    output.json       OutputConfig
    particleGun.json  ParticleGunConfig
    materials.json    custom (non-NIST) materials

A legacy single `.json` file holding the scene graph can still be loaded.
"""
import json
import logging
import os

from .errors import LoadError
from .geometry_types import Material

logger = logging.getLogger(__name__)

FORMAT_NAME = "geantcad"
FORMAT_VERSION = 1
PROJECT_EXTENSION = ".geantcad"

VERSION_FILE = "version.json"
SCENE_FILE = "scene.json"
PHYSICS_FILE = "physics.json"
OUTPUT_FILE = "output.json"
PARTICLE_GUN_FILE = "particleGun.json"
MATERIALS_FILE = "materials.json"


def project_path(path):
    """Appends the project extension if it is missing."""
    path = os.fspath(path).rstrip("/\\")
    if not path.endswith(PROJECT_EXTENSION):
        path += PROJECT_EXTENSION
    return path


def _write_json(path, data):
    # Write to a sibling temp file first so a crash never leaves half a file behind
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    os.replace(tmp_path, path)


def _read_json(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise LoadError(f"{os.path.basename(path)} is not valid JSON: {e}") from e
    except OSError as e:
        raise LoadError(f"Could not read {path}: {e}") from e


def save_project(scene, path):
    """
    Writes `scene` as a project directory and returns the directory path.
    OSError propagates to the caller.
    """
    path = project_path(path)
    os.makedirs(path, exist_ok=True)

    scene_data = scene.to_dict()
    custom_materials = [m.to_dict() for m in scene.materials() if not m.is_nist]

    _write_json(os.path.join(path, VERSION_FILE), {"version": FORMAT_VERSION, "format": FORMAT_NAME})
    _write_json(os.path.join(path, SCENE_FILE), scene_data)
    _write_json(os.path.join(path, PHYSICS_FILE), scene_data["physics"])
    _write_json(os.path.join(path, OUTPUT_FILE), scene_data["output"])
    _write_json(os.path.join(path, PARTICLE_GUN_FILE), scene_data["particleGun"])
    _write_json(os.path.join(path, MATERIALS_FILE), custom_materials)
    logger.info("Saved project to %s", path)
    return path


def load_project(scene, path):
    """
    Replaces the contents of `scene` with the project at `path`. Returns a
    list of warning strings; raises LoadError (leaving `scene` unchanged)
    when the project cannot be read.
    """
    path = os.fspath(path)
    if os.path.isfile(path):
        if not path.endswith(".json"):
            raise LoadError(f"Unsupported project file '{path}'")
        logger.info("Loading legacy single-file project %s", path)
        scene.load_dict(_read_json(path))
        return []
    if not os.path.isdir(path):
        raise LoadError(f"Project '{path}' does not exist")

    warnings = []
    version_path = os.path.join(path, VERSION_FILE)
    if not os.path.exists(version_path):
        raise LoadError(f"Project '{path}' has no {VERSION_FILE}")
    version_info = _read_json(version_path)
    if not isinstance(version_info, dict) or version_info.get("format") != FORMAT_NAME:
        raise LoadError(f"'{path}' is not a {FORMAT_NAME} project")
    version = version_info.get("version")
    if not isinstance(version, int):
        raise LoadError(f"Project version {version!r} is not an integer")
    if version > FORMAT_VERSION:
        message = (f"Project format version {version} is newer than supported version "
                   f"{FORMAT_VERSION}; some data may be ignored.")
        logger.warning(message)
        warnings.append(message)

    scene_path = os.path.join(path, SCENE_FILE)
    if not os.path.exists(scene_path):
        raise LoadError(f"Project '{path}' has no {SCENE_FILE}")
    scene_data = _read_json(scene_path)
    if not isinstance(scene_data, dict):
        raise LoadError(f"{SCENE_FILE} must contain an object")

    # The per-block files are authoritative; a missing one means defaults
    for key, filename in (("physics", PHYSICS_FILE), ("output", OUTPUT_FILE),
                          ("particleGun", PARTICLE_GUN_FILE)):
        block_path = os.path.join(path, filename)
        if os.path.exists(block_path):
            scene_data[key] = _read_json(block_path)
        else:
            logger.info("%s missing from %s; using defaults.", filename, path)
            scene_data[key] = None

    material_cache = {}
    materials_path = os.path.join(path, MATERIALS_FILE)
    if os.path.exists(materials_path):
        materials_data = _read_json(materials_path)
        if not isinstance(materials_data, list):
            raise LoadError(f"{MATERIALS_FILE} must contain a list")
        try:
            for mat_data in materials_data:
                material = Material.from_dict(mat_data)
                material_cache[material.name] = material
        except (KeyError, TypeError, ValueError) as e:
            raise LoadError(f"Invalid material in {MATERIALS_FILE}: {e}") from e

    scene.load_dict(scene_data, material_cache)
    logger.info("Loaded project %s", path)
    return warnings
