import json
from pathlib import Path

from ruleflow.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_action_union_is_documented_as_discriminated():
    schemas = app.openapi()["components"]["schemas"]
    create_schema = schemas["AutomationRuleCreateIn"]
    items = create_schema["properties"]["actions"]["items"]
    assert items["discriminator"]["propertyName"] == "type"
    assert "ConditionActionIn" in schemas
    assert "X-Ruleflow-Api-Key" in json.dumps(app.openapi()["paths"]["/automations/rules"]["get"]["parameters"])
