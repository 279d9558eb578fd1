import os

import pytest

import app as server


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "PROJECTS_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(server, "APP_MODE", "local")
    server.project_managers.clear()
    server.app.config["TESTING"] = True
    with server.app.test_client() as client:
        yield client
    server.project_managers.clear()


def add_box(client, name="Box", **extra):
    payload = {"name": name, "shape_type": "box", "params": {"x": "1*cm", "y": 5, "z": 5}, **extra}
    response = client.post("/add_volume", json=payload)
    assert response.status_code == 200, response.get_json()
    return response.get_json()["result"]


def test_index(client):
    data = client.get("/").get_json()
    assert data["service"] == "geantcad"
    assert data["mode"] == "local"


def test_add_volume_returns_scene_update(client):
    response = client.post("/add_volume", json={"name": "Box", "shape_type": "box", "params": {"x": "1*cm"}})
    data = response.get_json()
    assert data["success"]
    names = [v["name"] for v in data["scene_update"]]
    assert names == ["World", "Box"]
    assert data["history_status"]["can_undo"]
    box = data["project_state"]["root"]["children"][0]
    assert box["shape"]["params"]["x"] == 10.0


def test_add_volume_validation(client):
    assert client.post("/add_volume", json={"name": "Box"}).status_code == 400
    response = client.post("/add_volume", json={"name": "Box", "shape_type": "box", "params": {"x": -1}})
    assert response.status_code == 400
    assert not response.get_json()["success"]


def test_edit_undo_redo_round_trip(client):
    volume_id = add_box(client)
    response = client.post("/update_object_transform", json={"id": volume_id, "position": {"x": 1, "y": 2, "z": 3}})
    assert response.get_json()["success"]

    details = client.get(f"/get_object_details?id={volume_id}").get_json()
    assert details["transform"]["translation"] == [1.0, 2.0, 3.0]

    assert client.post("/api/undo").get_json()["success"]
    details = client.get(f"/get_object_details?id={volume_id}").get_json()
    assert details["transform"]["translation"] == [0.0, 0.0, 0.0]

    assert client.post("/api/redo").get_json()["success"]
    history = client.get("/api/history").get_json()["history_status"]
    assert history["cursor"] == 2

    assert client.post("/api/history/go_to", json={"index": 0}).get_json()["success"]
    assert client.get(f"/get_object_details?id={volume_id}").status_code == 404


def test_delete_requires_list(client):
    volume_id = add_box(client)
    assert client.post("/api/delete_volumes", json={"ids": volume_id}).status_code == 400
    data = client.post("/api/delete_volumes", json={"ids": [volume_id]}).get_json()
    assert data["success"]
    assert [v["name"] for v in data["scene_update"]] == ["World"]


def test_material_and_settings_routes(client):
    volume_id = add_box(client)
    assert client.post("/set_material", json={"ids": [volume_id], "material": "G4_Pb"}).get_json()["success"]
    materials = client.get("/search_materials?q=lead").get_json()["materials"]
    assert any(m["nistName"] == "G4_Pb" for m in materials)

    response = client.post("/update_physics", json={"hadronic_enabled": False, "cuts": {"gamma": 0.5}})
    assert response.get_json()["project_state"]["physics"]["cuts"]["gamma"] == 0.5
    assert client.post("/update_particle_gun", json={"energy": -1}).status_code == 400


def test_save_list_load(client):
    add_box(client, "Kept")
    assert client.post("/rename_project", json={"project_name": "my run"}).get_json()["success"]
    assert client.post("/save_project").get_json()["success"]
    assert client.get("/api/get_project_list").get_json()["projects"] == ["my_run"]

    client.post("/new_project")
    data = client.post("/load_project", json={"project_name": "my_run"}).get_json()
    assert data["success"]
    assert "Kept" in [v["name"] for v in data["scene_update"]]
    assert client.post("/load_project", json={"project_name": "ghost"}).status_code == 404


def test_gdml_export_and_import(client):
    add_box(client, "Detector 1")
    response = client.get("/export_gdml")
    assert response.mimetype == "application/xml"
    gdml = response.get_data(as_text=True)
    assert 'name="Detector_1"' in gdml

    client.post("/new_project")
    data = client.post("/import_gdml", json={"gdml": gdml}).get_json()
    assert data["success"]
    assert "Detector_1" in [v["name"] for v in data["scene_update"]]
    assert client.post("/import_gdml", json={"gdml": "<gdml>"}).status_code == 400
    assert client.post("/import_gdml", json={}).status_code == 400


def test_export_mesh(client):
    assert client.get("/export_mesh?format=stl").status_code == 400
    add_box(client)
    response = client.get("/export_mesh?format=obj")
    assert response.status_code == 200
    assert response.mimetype == "model/obj"
    assert client.get("/export_mesh?format=ply").status_code == 400


def test_generate_project(client, tmp_path):
    add_box(client)
    assert client.post("/generate_project", json={"number_of_events": 0}).status_code == 400
    data = client.post("/generate_project", json={"number_of_events": 5}).get_json()
    assert data["success"]
    assert data["output_dir"].startswith(str(tmp_path))


def test_sessions_isolated_outside_local_mode(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "PROJECTS_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(server, "APP_MODE", "server")
    server.project_managers.clear()
    server.app.config["TESTING"] = True
    with server.app.test_client() as alice, server.app.test_client() as bob:
        add_box(alice, "AliceBox")
        add_box(alice, "AliceBox2")
        names = [v["name"] for v in bob.get("/get_project_state").get_json()["scene_update"]]
        assert names == ["World"]
    assert len(server.project_managers) == 2
    assert all(os.path.isdir(pm.projects_dir) for pm in server.project_managers.values())
    server.project_managers.clear()
