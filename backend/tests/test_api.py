from tocare.db.models import EscalationTask, ProtocolConfig
from tocare.db.seed import seed_protocols


def _enroll(client, **overrides):
    payload = {
        "patient": {"firstName": "Ana", "lastName": "Silva", "phone": "+15555550123"},
        "conditionCode": "hf",
        "riskLevel": "high",
        "dischargeAt": "2026-03-02T15:00:00Z",
        "facilityName": "Mercy General",
        "medications": [{"name": "Furosemide", "dose": "40 mg"}],
    }
    payload.update(overrides)
    return client.post("/toc/episodes", json=payload)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_enroll_creates_episode_and_plan(client, db):
    seed_protocols(db)

    response = _enroll(client)

    assert response.status_code == 200
    body = response.json()
    assert body["conditionCode"] == "HF"
    assert body["riskLevel"] == "HIGH"
    assert body["dischargeAt"] == "2026-03-02T15:00:00"
    assert body["outreachPlan"]["windowStartAt"] == "2026-03-03T15:00:00"
    assert body["outreachPlan"]["attempts"][0]["status"] == "SCHEDULED"
    assert client.get(f"/toc/episodes/{body['id']}").json()["id"] == body["id"]


def test_enroll_without_risk_level_has_no_plan(client, db):
    seed_protocols(db)
    body = _enroll(client, riskLevel=None).json()
    assert body["riskLevel"] is None
    assert body["outreachPlan"] is None


def test_enroll_validation(client, db):
    assert _enroll(client, conditionCode="FLU").status_code == 400
    assert _enroll(client, patient=None).status_code == 400
    assert _enroll(client, patient=None, patientId=77).status_code == 404
    bad_level = _enroll(client, patient={"firstName": "Ana", "educationLevel": "PHD"})
    assert bad_level.status_code == 400
    assert "Invalid education level" in bad_level.json()["detail"]
    assert client.post("/toc/episodes", json={"riskLevel": "HIGH"}).status_code == 422


def test_enroll_without_template_is_a_server_error(client, db):
    assert _enroll(client).status_code == 500


def test_risk_level_change(client, db):
    seed_protocols(db)
    episode_id = _enroll(client, riskLevel="LOW").json()["id"]

    response = client.post(f"/toc/episodes/{episode_id}/risk-level",
                           json={"riskLevel": "HIGH", "reason": "Weight up 4 lb"})

    assert response.status_code == 200
    assert response.json()["oldRiskLevel"] == "LOW"
    assert response.json()["immediateCheckinScheduled"] is True
    bad = client.post(f"/toc/episodes/{episode_id}/risk-level", json={"riskLevel": "SEVERE", "reason": "x"})
    assert bad.status_code == 400
    missing = client.post("/toc/episodes/999/risk-level", json={"riskLevel": "HIGH", "reason": "x"})
    assert missing.status_code == 404


def test_interaction_endpoint(client, db):
    seed_protocols(db)
    enrolled = _enroll(client).json()

    missing = client.post("/toc/agents/core/interaction", json={"patientId": enrolled["patientId"]})
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Patient ID, Episode ID, and patient input are required"

    response = client.post("/toc/agents/core/interaction", json={
        "patientId": enrolled["patientId"], "episodeId": enrolled["id"], "patientInput": "I have chest pain",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "ESCALATED"
    assert body["decisionHint"]["action"] == "FLAG"

    tasks = client.get("/toc/tasks", params={"episodeId": enrolled["id"]}).json()["tasks"]
    assert len(tasks) == 1
    assert tasks[0]["priority"] == "URGENT"


def test_interaction_without_risk_level_is_rejected(client, db):
    seed_protocols(db)
    enrolled = _enroll(client, riskLevel=None).json()
    response = client.post("/toc/agents/core/interaction", json={
        "patientId": enrolled["patientId"], "episodeId": enrolled["id"], "patientInput": "hello",
    })
    assert response.status_code == 400
    assert "missing risk_level" in response.json()["detail"]


def test_interaction_without_config_is_a_server_error(client, db):
    seed_protocols(db)
    enrolled = _enroll(client).json()
    db.query(ProtocolConfig).delete()
    db.commit()
    response = client.post("/toc/agents/core/interaction", json={
        "patientId": enrolled["patientId"], "episodeId": enrolled["id"], "patientInput": "hello",
    })
    assert response.status_code == 500


def test_checkin_and_analyze_endpoints(client, db):
    seed_protocols(db)
    enrolled = _enroll(client).json()

    checkin = client.post("/toc/agents/core/checkin", json={
        "patientId": enrolled["patientId"], "condition": "HF",
        "responses": [{"questionCode": "Q1", "responseText": "I feel dizzy"}],
    })
    assert checkin.status_code == 200
    assert checkin.json()["result"]["severity"] == "HIGH"

    assert client.post("/toc/agents/analyze-response", json={"condition": "HF"}).status_code == 400
    attempt_id = enrolled["outreachPlan"]["attempts"][0]["id"]
    analysis = client.post("/toc/agents/analyze-response", json={
        "outreachAttemptId": attempt_id, "condition": "HF",
        "responses": [{"questionCode": "Q1", "valueText": "doing fine"}],
    })
    assert analysis.status_code == 200
    assert analysis.json()["analysis"]["severity"] == "NONE"
    unknown = client.post("/toc/agents/analyze-response", json={
        "outreachAttemptId": 999, "condition": "HF", "responses": [{"valueText": "fine"}],
    })
    assert unknown.status_code == 404


def test_coded_responses_endpoint(client, db):
    seed_protocols(db)
    attempt_id = _enroll(client).json()["outreachPlan"]["attempts"][0]["id"]

    response = client.post(f"/toc/outreach/attempts/{attempt_id}/responses", json={"responses": [
        {"questionCode": "HF_SOB", "responseType": "CHOICE", "valueChoice": "yes"},
    ]})

    assert response.status_code == 200
    assert response.json()["reasonCodes"] == ["HF_SOB_YES"]
    listed = client.get(f"/toc/outreach/attempts/{attempt_id}/responses").json()["responses"]
    assert listed[0]["redFlagCode"] == "HF_SOB_YES"
    assert client.post("/toc/outreach/attempts/999/responses", json={"responses": []}).status_code == 404


def test_checklist_endpoint(client, db):
    seed_protocols(db)
    enrolled = _enroll(client).json()
    interaction_id = client.post("/toc/agents/core/interaction", json={
        "patientId": enrolled["patientId"], "episodeId": enrolled["id"], "patientInput": "just checking in",
    }).json()["interactionId"]

    assert client.post("/toc/conversation/checklist", json={"interactionId": interaction_id}).status_code == 400
    response = client.post("/toc/conversation/checklist", json={
        "interactionId": interaction_id, "patientInput": "hello", "conditionCode": "HF", "riskLevel": "HIGH",
    })
    assert response.status_code == 200
    assert response.json()["decision"]["action"] == "ask_question"
    missing = client.post("/toc/conversation/checklist", json={
        "interactionId": 999, "patientInput": "hello", "conditionCode": "HF", "riskLevel": "HIGH",
    })
    assert missing.status_code == 404


def test_task_lifecycle_endpoints(client, db):
    seed_protocols(db)
    enrolled = _enroll(client).json()
    client.post("/toc/agents/core/interaction", json={
        "patientId": enrolled["patientId"], "episodeId": enrolled["id"], "patientInput": "I have chest pain",
    })
    task_id = db.query(EscalationTask).one().id

    assert client.get(f"/toc/tasks/{task_id}").json()["status"] == "OPEN"
    assert client.post(f"/toc/tasks/{task_id}/pickup").json()["status"] == "IN_PROGRESS"
    assert client.post(f"/toc/tasks/{task_id}/pickup").status_code == 409
    resolved = client.post(f"/toc/tasks/{task_id}/resolve", json={"outcomeCode": "ED_REFERRAL", "notes": "Sent to ED"})
    assert resolved.json()["resolutionOutcomeCode"] == "ED_REFERRAL"
    assert client.post(f"/toc/tasks/{task_id}/status", json={"status": "OPEN"}).status_code == 409
    assert client.post(f"/toc/tasks/{task_id}/status", json={"status": "DONE"}).status_code == 400
    assert client.get("/toc/tasks/999").status_code == 404
    assert client.get("/toc/tasks/approaching-sla", params={"minutes": 60}).json() == {"tasks": []}


def test_admin_protocol_endpoints(client, db):
    seed_protocols(db)

    created = client.post("/toc/admin/protocol-rules", json={
        "conditionCode": "HF", "ruleCode": "HF_CONFUSION", "ruleType": "RED_FLAG", "severity": "high",
        "message": "New confusion", "textPatterns": ["confused"],
    })
    assert created.status_code == 201
    rule = created.json()
    assert rule["severity"] == "HIGH"

    no_severity = client.post("/toc/admin/protocol-rules", json={
        "conditionCode": "HF", "ruleCode": "HF_X", "ruleType": "RED_FLAG", "message": "x",
    })
    assert no_severity.status_code == 400

    patched = client.patch(f"/toc/admin/protocol-rules/{rule['id']}", json={"active": False})
    assert patched.json()["active"] is False
    listed = client.get("/toc/admin/protocol-rules", params={"condition": "HF", "ruleType": "CLOSURE"}).json()
    assert [r["ruleCode"] for r in listed["rules"]] == ["HF_DOING_WELL"]

    config_id = db.query(ProtocolConfig).first().id
    assert client.get(f"/toc/admin/protocol-config/{config_id}").json()["id"] == config_id
    updated = client.patch(f"/toc/admin/protocol-config/{config_id}", json={"vagueSymptoms": ["off", "blah"]})
    assert updated.json()["vagueSymptoms"] == ["off", "blah"]
    inverted = client.patch(f"/toc/admin/protocol-config/{config_id}", json={"lowConfidenceThreshold": 0.99})
    assert inverted.status_code == 400
    assert client.get("/toc/admin/protocol-config/999").status_code == 404


def test_admin_rejects_nulls_for_required_fields(client, db):
    seed_protocols(db)
    config_id = db.query(ProtocolConfig).first().id
    rule_id = client.get("/toc/admin/protocol-rules", params={"condition": "HF"}).json()["rules"][0]["id"]

    low = client.patch(f"/toc/admin/protocol-config/{config_id}", json={"lowConfidenceThreshold": None})
    assert low.status_code == 400
    assert low.json()["detail"] == "Fields cannot be null: lowConfidenceThreshold"
    both = client.patch(f"/toc/admin/protocol-config/{config_id}",
                        json={"criticalConfidenceThreshold": None, "vagueSymptoms": None})
    assert both.json()["detail"] == "Fields cannot be null: criticalConfidenceThreshold, vagueSymptoms"
    assert client.patch(f"/toc/admin/protocol-rules/{rule_id}", json={"active": None}).status_code == 400

    cleared = client.patch(f"/toc/admin/protocol-config/{config_id}", json={"distressedSeverityUpgrade": None})
    assert cleared.status_code == 200
    assert cleared.json()["distressedSeverityUpgrade"] is None
