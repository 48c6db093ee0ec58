import uuid

from sqlalchemy import select

from ruleflow.models.automation import AutomationJob
from ruleflow.models.contact import Contact
from ruleflow.services.tenant_service import create_tenant, issue_api_key


def _create_contact(session_local, tenant_id: str, *, phone: str = "+2348030000010") -> str:
    db = session_local()
    try:
        contact = Contact(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name="Amaka",
            phone=phone,
            email="amaka@example.com",
            tags_json=[],
            custom_fields_json={},
        )
        db.add(contact)
        db.commit()
        return contact.id
    finally:
        db.close()


def _create_rule(client, headers: dict[str, str], **overrides):
    payload = {
        "name": "VIP on big orders",
        "trigger_type": "order_created",
        "status": "active",
        "conditions": [{"field": "total", "operator": "greater_than", "value": 5000}],
        "actions": [{"type": "add_tag", "tag": "vip"}],
    }
    payload.update(overrides)
    return client.post("/automations/rules", json=payload, headers=headers)


def test_requests_without_valid_api_key_are_rejected(test_context):
    client, _ = test_context

    missing = client.get("/automations/rules")
    assert missing.status_code == 401, missing.text
    assert "Missing API key" in missing.text

    invalid = client.get("/automations/rules", headers={"X-Ruleflow-Api-Key": "rfk_live_nope"})
    assert invalid.status_code == 401, invalid.text
    assert "Invalid API key" in invalid.text


def test_rule_crud_lifecycle(test_context, tenant_auth):
    client, _ = test_context
    _, headers = tenant_auth

    created = _create_rule(
        client,
        headers,
        status="draft",
        priority=5,
        delay_config={"type": "delay", "delay_seconds": 30},
        actions=[
            {"type": "add_tag", "tag": "vip"},
            {
                "type": "condition",
                "conditions": [{"field": "currency", "operator": "equals", "value": "NGN"}],
                "then_actions": [{"type": "send_message", "message": "Thanks {{contact.name}}"}],
            },
        ],
    )
    assert created.status_code == 200, created.text
    rule = created.json()
    assert rule["status"] == "draft"
    assert rule["version"] == 1
    assert rule["delay_config"] == {"type": "delay", "delay_seconds": 30}
    assert rule["actions"][1]["then_actions"][0] == {
        "type": "send_message",
        "channel": "whatsapp",
        "message": "Thanks {{contact.name}}",
    }

    duplicate = _create_rule(client, headers)
    assert duplicate.status_code == 409, duplicate.text

    fetched = client.get(f"/automations/rules/{rule['id']}", headers=headers)
    assert fetched.status_code == 200, fetched.text
    assert fetched.json()["name"] == "VIP on big orders"

    patched = client.patch(
        f"/automations/rules/{rule['id']}",
        json={"description": "Tag big spenders", "priority": 7},
        headers=headers,
    )
    assert patched.status_code == 200, patched.text
    assert patched.json()["description"] == "Tag big spenders"
    assert patched.json()["priority"] == 7
    assert patched.json()["version"] == 2

    activated = client.post(f"/automations/rules/{rule['id']}/activate", headers=headers)
    assert activated.status_code == 200, activated.text
    assert activated.json()["status"] == "active"

    listed = client.get("/automations/rules", params={"status": "active"}, headers=headers)
    assert listed.status_code == 200, listed.text
    assert listed.json()["pagination"]["total"] == 1
    assert listed.json()["items"][0]["id"] == rule["id"]

    paused = client.post(f"/automations/rules/{rule['id']}/pause", headers=headers)
    assert paused.json()["status"] == "paused"

    bad_filter = client.get("/automations/rules", params={"status": "archived"}, headers=headers)
    assert bad_filter.status_code == 422, bad_filter.text

    deleted = client.delete(f"/automations/rules/{rule['id']}", headers=headers)
    assert deleted.status_code == 204, deleted.text
    gone = client.get(f"/automations/rules/{rule['id']}", headers=headers)
    assert gone.status_code == 404, gone.text


def test_rule_payload_validation(test_context, tenant_auth):
    client, _ = test_context
    _, headers = tenant_auth

    unknown_trigger = _create_rule(client, headers, trigger_type="moon_phase")
    assert unknown_trigger.status_code == 422, unknown_trigger.text

    no_actions = _create_rule(client, headers, actions=[])
    assert no_actions.status_code == 422, no_actions.text

    unknown_action = _create_rule(client, headers, actions=[{"type": "teleport"}])
    assert unknown_action.status_code == 422, unknown_action.text

    empty_patch = client.patch(f"/automations/rules/{uuid.uuid4()}", json={}, headers=headers)
    assert empty_patch.status_code == 422, empty_patch.text


def test_unrecognised_operator_is_stored_and_matches(test_context, tenant_auth):
    client, session_local = test_context
    tenant_id, headers = tenant_auth
    contact_id = _create_contact(session_local, tenant_id)

    created = _create_rule(
        client,
        headers,
        conditions=[{"field": "total", "operator": "roughly", "value": 1}],
    )
    assert created.status_code == 200, created.text
    assert created.json()["conditions"] == [{"field": "total", "operator": "roughly", "value": 1}]

    dispatched = client.post(
        "/automations/events",
        json={"trigger_type": "order_created", "contact_id": contact_id, "event_data": {"total": 10}},
        headers=headers,
    )
    assert dispatched.status_code == 200, dispatched.text
    assert dispatched.json()["dispatched"] == 1


def test_rules_are_tenant_isolated(test_context, tenant_auth):
    client, session_local = test_context
    _, headers = tenant_auth
    rule = _create_rule(client, headers).json()

    db = session_local()
    try:
        other = create_tenant(db, name="Rival Store")
        _, other_key = issue_api_key(db, tenant_id=other.id)
        db.commit()
    finally:
        db.close()
    other_headers = {"X-Ruleflow-Api-Key": other_key}

    assert client.get(f"/automations/rules/{rule['id']}", headers=other_headers).status_code == 404
    assert client.get("/automations/rules", headers=other_headers).json()["pagination"]["total"] == 0


def test_event_dispatch_run_and_execution_logs(test_context, tenant_auth):
    client, session_local = test_context
    tenant_id, headers = tenant_auth
    contact_id = _create_contact(session_local, tenant_id)
    rule = _create_rule(client, headers).json()

    skipped = client.post(
        "/automations/events",
        json={"trigger_type": "order_created", "contact_id": contact_id, "event_data": {"total": 3000}},
        headers=headers,
    )
    assert skipped.status_code == 200, skipped.text
    assert skipped.json()["dispatched"] == 0
    assert skipped.json()["skipped"] == 1

    dispatched = client.post(
        "/automations/events",
        json={"trigger_type": "order_created", "contact_id": contact_id, "event_data": {"total": 6000}},
        headers=headers,
    )
    assert dispatched.status_code == 200, dispatched.text
    assert dispatched.json()["dispatched"] == 1
    execution_id = dispatched.json()["execution_ids"][0]

    ran = client.post("/automations/jobs/run", headers=headers)
    assert ran.status_code == 200, ran.text
    assert ran.json()["claimed"] == 1
    assert ran.json()["succeeded"] == 1

    detail = client.get(f"/automations/executions/{execution_id}", headers=headers)
    assert detail.status_code == 200, detail.text
    execution = detail.json()
    assert execution["status"] == "completed"
    assert execution["trigger_source"] == "api"
    assert [(step["action_type"], step["status"]) for step in execution["steps"]] == [("add_tag", "success")]

    logs = client.get(f"/automations/rules/{rule['id']}/executions", headers=headers)
    assert logs.status_code == 200, logs.text
    assert logs.json()["pagination"]["total"] == 1
    assert logs.json()["items"][0]["id"] == execution_id
    assert len(logs.json()["items"][0]["steps"]) == 1

    filtered = client.get(
        f"/automations/rules/{rule['id']}/executions",
        params={"status": "failed"},
        headers=headers,
    )
    assert filtered.json()["pagination"]["total"] == 0

    stats = client.get("/automations/stats", headers=headers)
    assert stats.status_code == 200, stats.text
    assert stats.json() == {
        "total": 1,
        "active": 1,
        "paused": 0,
        "draft": 0,
        "total_runs": 1,
        "total_successes": 1,
        "total_failures": 0,
        "success_rate": 100,
    }

    unknown_trigger = client.post("/automations/events", json={"trigger_type": "moon_phase"}, headers=headers)
    assert unknown_trigger.status_code == 422, unknown_trigger.text


def test_cancel_waiting_execution_via_api(test_context, tenant_auth):
    client, session_local = test_context
    tenant_id, headers = tenant_auth
    contact_id = _create_contact(session_local, tenant_id)
    _create_rule(
        client,
        headers,
        conditions=[],
        actions=[
            {"type": "add_tag", "tag": "first"},
            {"type": "wait", "duration": 2, "unit": "days"},
            {"type": "add_tag", "tag": "second"},
        ],
    )

    dispatched = client.post(
        "/automations/events",
        json={"trigger_type": "order_created", "contact_id": contact_id},
        headers=headers,
    )
    execution_id = dispatched.json()["execution_ids"][0]
    assert client.post("/automations/jobs/run", headers=headers).json()["succeeded"] == 1

    waiting = client.get(f"/automations/executions/{execution_id}", headers=headers).json()
    assert waiting["status"] == "waiting"
    assert waiting["current_step_index"] == 2

    cancelled = client.post(f"/automations/executions/{execution_id}/cancel", headers=headers)
    assert cancelled.status_code == 200, cancelled.text
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"/automations/executions/{execution_id}/cancel", headers=headers)
    assert again.status_code == 409, again.text

    missing = client.post(f"/automations/executions/{uuid.uuid4()}/cancel", headers=headers)
    assert missing.status_code == 404, missing.text

    db = session_local()
    try:
        jobs = db.execute(select(AutomationJob).where(AutomationJob.execution_id == execution_id)).scalars().all()
        assert {job.job_type for job in jobs} == {"execute-automation", "continue-automation"}
    finally:
        db.close()


def test_template_endpoints(test_context, tenant_auth):
    client, _ = test_context
    _, headers = tenant_auth

    catalog = client.get("/automations/templates", params={"category": "Payments"}, headers=headers)
    assert catalog.status_code == 200, catalog.text
    assert [item["template_key"] for item in catalog.json()["items"]] == ["payment_failed"]

    detail = client.get("/automations/templates/high_value_vip", headers=headers)
    assert detail.status_code == 200, detail.text
    assert detail.json()["trigger_config"] == {"min_order_value": 5000}

    missing = client.get("/automations/templates/nope", headers=headers)
    assert missing.status_code == 404, missing.text

    installed = client.post(
        "/automations/templates/install",
        json={"template_key": "high_value_vip"},
        headers=headers,
    )
    assert installed.status_code == 200, installed.text
    assert installed.json()["rule"]["status"] == "draft"
    assert installed.json()["rule"]["template_key"] == "high_value_vip"
    assert installed.json()["template"]["template_key"] == "high_value_vip"

    again = client.post(
        "/automations/templates/install",
        json={"template_key": "high_value_vip", "activate": True},
        headers=headers,
    )
    assert again.status_code == 200, again.text
    assert again.json()["rule"]["name"].endswith("(2)")
    assert again.json()["rule"]["status"] == "active"
