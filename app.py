# app.py

import logging
import os
import tempfile
import threading
import uuid

from flask import Flask, Response, jsonify, request, session
from flask_cors import CORS
from dotenv import load_dotenv

from geantcad import __version__
from geantcad.expression_evaluator import ExpressionEvaluator
from geantcad.gdml_writer import sanitize_name
from geantcad.logging_config import setup_logging
from geantcad.mesh_exporter import MESH_FORMATS
from geantcad.project_generator import DEFAULT_NUMBER_OF_EVENTS, DEFAULT_TEMPLATE_DIR
from geantcad.project_manager import ProjectManager
from geantcad.serialization import PROJECT_EXTENSION

# Load environment variables from .env file
load_dotenv()

setup_logging(getattr(logging, os.getenv("GEANTCAD_LOG_LEVEL", "INFO").upper(), logging.INFO))
logger = logging.getLogger("geantcad.app")

app = Flask(__name__)
app.secret_key = os.getenv("FLASK_SECRET_KEY", "a-default-secret-key-for-development")
CORS(app)

# --- Read server-wide config on startup ---
APP_MODE = os.getenv("APP_MODE", "local")  # Default to 'local' if not set
PROJECTS_BASE_DIR = os.getenv("GEANTCAD_PROJECTS_DIR", os.path.join(os.getcwd(), "projects"))
TEMPLATE_DIR = os.getenv("GEANTCAD_TEMPLATE_DIR", DEFAULT_TEMPLATE_DIR)

MESH_MIMETYPES = {"stl": "model/stl", "stl_ascii": "model/stl", "obj": "model/obj"}


# ------------------------------------------------------------------------------
# Session management

# One ProjectManager per user session, keyed by the session's user_id.
project_managers = {}

# The authoring core is single-threaded; every request touching a manager holds this lock.
PM_LOCK = threading.Lock()


def get_project_manager_for_session() -> ProjectManager:
    """
    Retrieves or creates the ProjectManager for the current user session.
    In 'local' mode every client shares one manager and the main projects
    directory; otherwise each session gets its own manager and directory.
    """
    if APP_MODE == 'local':
        if session.get('user_id') != 'local_user':
            session['user_id'] = 'local_user'
    elif 'user_id' not in session:
        session['user_id'] = str(uuid.uuid4())

    user_id = session['user_id']

    if user_id not in project_managers:
        logger.info("Creating new ProjectManager for user_id: %s", user_id)
        pm = ProjectManager(ExpressionEvaluator(), template_dir=TEMPLATE_DIR)
        if APP_MODE == 'local':
            pm.projects_dir = PROJECTS_BASE_DIR
        else:
            pm.projects_dir = os.path.join(PROJECTS_BASE_DIR, user_id)
        os.makedirs(pm.projects_dir, exist_ok=True)
        pm.create_empty_project()
        project_managers[user_id] = pm

    return project_managers[user_id]


# Function for Consistent API Responses
def create_success_response(project_manager, message="Success", result=None):
    """
    Standard success payload: the scene for the viewport, the project state
    and the undo/redo status.
    """
    return jsonify({
        "success": True,
        "message": message,
        "result": result,
        "project_name": project_manager.project_name,
        "project_state": project_manager.get_full_project_state_dict(),
        "scene_update": project_manager.get_scene_description(),
        "history_status": project_manager.get_history_status(),
        "is_changed": project_manager.is_changed,
    })


def error_response(message, status=400):
    return jsonify({"success": False, "error": message}), status


def _respond(pm, success, message_or_result, message):
    if success:
        return create_success_response(pm, message, message_or_result)
    return error_response(message_or_result)


# --- Main Application Routes ---

@app.route('/')
def index():
    return jsonify({"service": "geantcad", "version": __version__, "mode": APP_MODE})


@app.route('/new_project', methods=['POST'])
def new_project_route():
    """Clears the current project and starts over with an empty World."""
    with PM_LOCK:
        pm = get_project_manager_for_session()
        pm.create_empty_project()
        return create_success_response(pm, "New project created.")


@app.route('/get_project_state', methods=['GET'])
def get_project_state_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        return create_success_response(pm, "Project state.")


@app.route('/get_object_details', methods=['GET'])
def get_object_details_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        obj_id = request.args.get('id')
        if not obj_id:
            return error_response("Volume ID missing")
        details = pm.get_object_details(obj_id)
        if details:
            return jsonify(details)
        return error_response(f"Volume with ID '{obj_id}' not found", 404)


# --- Volume edits ---

@app.route('/add_volume', methods=['POST'])
def add_volume_route():
    data = request.get_json() or {}
    name = data.get('name')
    shape_type = data.get('shape_type')
    if not name or not shape_type:
        return error_response("A name and a shape type are required.")

    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.add_volume(name, shape_type, data.get('params'),
                                        data.get('material', 'G4_AIR'), data.get('parent_id'))
        return _respond(pm, success, result, f"Volume '{name}' created.")


@app.route('/api/delete_volumes', methods=['POST'])
def delete_volumes_route():
    data = request.get_json() or {}
    ids = data.get('ids')
    if not isinstance(ids, list):
        return error_response("Invalid request: 'ids' must be a list.")

    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.delete_volumes(ids)
        return _respond(pm, success, message, message)


@app.route('/duplicate_volume', methods=['POST'])
def duplicate_volume_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.duplicate_volume(data.get('id'))
        return _respond(pm, success, result, "Volume duplicated.")


@app.route('/update_object_transform', methods=['POST'])
def update_object_transform_route():
    data = request.get_json() or {}
    object_id = data.get('id')
    if object_id is None:
        return error_response("Object ID missing")

    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.transform_volume(object_id, data.get('position'),
                                               data.get('rotation'), data.get('scale'))
        return _respond(pm, success, message, message)


@app.route('/rename_volume', methods=['POST'])
def rename_volume_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.rename_volume(data.get('id'), data.get('name'))
        return _respond(pm, success, message, message)


@app.route('/set_material', methods=['POST'])
def set_material_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.set_volume_material(data.get('ids', data.get('id')), data.get('material'))
        return _respond(pm, success, message, message)


@app.route('/update_shape', methods=['POST'])
def update_shape_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_shape(data.get('id'), data.get('params'), data.get('shape_type'))
        return _respond(pm, success, message, message)


@app.route('/update_sensitive_detector', methods=['POST'])
def update_sensitive_detector_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_sd_config(data.get('id'), data.get('config') or {})
        return _respond(pm, success, message, message)


@app.route('/update_optical_surface', methods=['POST'])
def update_optical_surface_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_optical_config(data.get('id'), data.get('config') or {})
        return _respond(pm, success, message, message)


@app.route('/set_visibility', methods=['POST'])
def set_visibility_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.set_visibility(data.get('ids', data.get('id')), data.get('visible', True))
        return _respond(pm, success, message, message)


@app.route('/reparent_volume', methods=['POST'])
def reparent_volume_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.reparent_volume(data.get('id'), data.get('parent_id'), data.get('index'))
        return _respond(pm, success, message, message)


@app.route('/select', methods=['POST'])
def select_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.select_volume(data.get('id'), bool(data.get('additive', False)))
        return _respond(pm, success, result, "Selection updated.")


# --- History ---

@app.route('/api/undo', methods=['POST'])
def undo_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.undo()
        return _respond(pm, success, message, message)


@app.route('/api/redo', methods=['POST'])
def redo_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.redo()
        return _respond(pm, success, message, message)


@app.route('/api/history', methods=['GET'])
def history_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        return jsonify({"success": True, "history_status": pm.get_history_status()})


@app.route('/api/history/go_to', methods=['POST'])
def history_go_to_route():
    data = request.get_json() or {}
    if 'index' not in data:
        return error_response("History index missing")
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.go_to_history(data['index'])
        return _respond(pm, success, message, message)


# --- Materials and simulation settings ---

@app.route('/search_materials', methods=['GET'])
def search_materials_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        return jsonify({"success": True, "materials": pm.search_materials(request.args.get('q', ''))})


@app.route('/define_material', methods=['POST'])
def define_material_route():
    data = request.get_json() or {}
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.define_material(data)
        if success:
            return jsonify({"success": True, "message": f"Material '{result}' defined."})
        return error_response(result)


@app.route('/update_physics', methods=['POST'])
def update_physics_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_physics_config(request.get_json() or {})
        return _respond(pm, success, message, message)


@app.route('/update_output', methods=['POST'])
def update_output_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_output_config(request.get_json() or {})
        return _respond(pm, success, message, message)


@app.route('/update_particle_gun', methods=['POST'])
def update_particle_gun_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.update_particle_gun_config(request.get_json() or {})
        return _respond(pm, success, message, message)


# --- Projects on disk ---

def _project_dir(pm, name):
    return os.path.join(pm.projects_dir, sanitize_name(name) + PROJECT_EXTENSION)


@app.route('/rename_project', methods=['POST'])
def rename_project_route():
    data = request.get_json() or {}
    project_name = data.get('project_name')
    if not project_name:
        return error_response("Project name missing")
    with PM_LOCK:
        pm = get_project_manager_for_session()
        pm.project_name = sanitize_name(project_name)
        return jsonify({"success": True, "message": f"Project set to {pm.project_name}"})


@app.route('/save_project', methods=['POST'])
def save_project_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.save_project(_project_dir(pm, pm.project_name))
        if success:
            return jsonify({"success": True, "message": f"Project '{pm.project_name}' saved."})
        return error_response(result, 500)


@app.route('/load_project', methods=['POST'])
def load_project_route():
    data = request.get_json() or {}
    project_name = data.get('project_name')
    if not project_name:
        return error_response("Project name missing")
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, message = pm.load_project(_project_dir(pm, project_name))
        if success:
            return create_success_response(pm, message)
        return error_response(message, 404 if "does not exist" in message else 400)


@app.route('/api/get_project_list', methods=['GET'])
def get_project_list_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        try:
            return jsonify({"success": True, "projects": pm.list_projects()})
        except OSError as e:
            return error_response(f"Failed to read project directory: {e}", 500)


# --- Import / export ---

@app.route('/import_gdml', methods=['POST'])
def import_gdml_route():
    if 'gdmlFile' in request.files:
        file = request.files['gdmlFile']
        if file.filename == '':
            return error_response("No selected file")
        try:
            gdml_string = file.read().decode('utf-8')
        except UnicodeDecodeError:
            return error_response("GDML file is not valid UTF-8")
    else:
        gdml_string = (request.get_json(silent=True) or {}).get('gdml')
    if not gdml_string:
        return error_response("No GDML content")

    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.import_gdml_string(gdml_string)
        return _respond(pm, success, result, "GDML file processed successfully.")


@app.route('/export_gdml', methods=['GET'])
def export_gdml_route():
    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.export_gdml_string()
        if not success:
            return error_response(result, 500)
        filename = f"{sanitize_name(pm.project_name)}.gdml"
    return Response(
        result,
        mimetype="application/xml",
        headers={"Content-Disposition": f"attachment;filename={filename}"}
    )


@app.route('/export_mesh', methods=['GET'])
def export_mesh_route():
    file_format = request.args.get('format', 'stl').lower()
    if file_format not in MESH_FORMATS:
        return error_response(f"Unsupported mesh format '{file_format}'")
    extension = "stl" if file_format.startswith("stl") else file_format

    with PM_LOCK:
        pm = get_project_manager_for_session()
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, f"scene.{extension}")
            success, result = pm.export_mesh(path, file_format)
            if not success:
                return error_response(result)
            with open(path, "rb") as f:
                content = f.read()
        filename = f"{sanitize_name(pm.project_name)}.{extension}"
    return Response(
        content,
        mimetype=MESH_MIMETYPES[file_format],
        headers={"Content-Disposition": f"attachment;filename={filename}"}
    )


@app.route('/generate_project', methods=['POST'])
def generate_project_route():
    data = request.get_json() or {}
    try:
        number_of_events = int(data.get('number_of_events', DEFAULT_NUMBER_OF_EVENTS))
    except (TypeError, ValueError):
        return error_response("number_of_events must be an integer")
    if number_of_events < 1:
        return error_response("number_of_events must be >= 1")

    with PM_LOCK:
        pm = get_project_manager_for_session()
        success, result = pm.generate_project(number_of_events=number_of_events)
        if success:
            return jsonify({"success": True, "message": "Geant4 project generated.", "output_dir": result})
        return error_response(result, 500)


if __name__ == '__main__':
    app.run(debug=True, port=5003)
