import json
from pathlib import Path

from stockledger.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_movement_write_routes_document_conflicts():
    paths = app.openapi()["paths"]
    assert "409" in paths["/movements"]["post"]["responses"]
    assert "409" in paths["/movements/{movement_id}/reverse"]["post"]["responses"]
    assert "200" in paths["/movements"]["post"]["responses"]
    assert "201" in paths["/movements"]["post"]["responses"]
