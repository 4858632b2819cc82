"""API tests through FastAPI's TestClient against a SQLite database."""

import base64

import pytest

from fostercare.parsers import FileType, ParseError, ParsedDocument
from fostercare.pipelines import processing

pytestmark = pytest.mark.db

CARER = {
    "name": "Alex Smith",
    "email": "alex@example.org",
    "min_age": 5,
    "max_age": 16,
    "experience_with_sen": True,
    "preferred_location": "London",
    "capacity": 1,
}

REFERRAL = {
    "age": 12,
    "sen_needs": True,
    "preferred_locations": ["London"],
}


@pytest.fixture
def pdf_text(monkeypatch):
    def fake_parse(content, filename):
        return ParsedDocument(
            text="Age: 12. Special educational needs. Preferred: London.",
            file_type=FileType.PDF,
            metadata={"method": "native"},
        )

    monkeypatch.setattr(processing, "parse_pdf_bytes", fake_parse)


@pytest.fixture
def pdf_unreadable(monkeypatch):
    def fake_parse(content, filename):
        raise ParseError("No text could be extracted from PDF")

    monkeypatch.setattr(processing, "parse_pdf_bytes", fake_parse)


def create_carer(client, **overrides) -> dict:
    response = client.post("/carers", json={**CARER, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


def create_referral(client, **overrides) -> dict:
    response = client.post("/referrals", json={**REFERRAL, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:

    def test_health_is_public(self, client):
        response = client.get("/health", headers={"X-User-Id": ""})
        assert response.json() == {"status": "ok", "version": "1.0.0"}

    def test_missing_identity(self, client):
        response = client.get("/carers", headers={"X-User-Id": ""})
        assert response.status_code == 401

    def test_unknown_role(self, client):
        response = client.get("/carers", headers={"X-User-Role": "carer"})
        assert response.status_code == 403


class TestCarers:

    def test_create_and_get(self, client):
        carer = create_carer(client)

        response = client.get(f"/carers/{carer['id']}")

        assert response.status_code == 200
        assert response.json()["name"] == "Alex Smith"
        assert response.json()["status"] == "active"

    def test_inverted_age_range_rejected(self, client):
        response = client.post("/carers", json={**CARER, "min_age": 12, "max_age": 4})
        assert response.status_code == 422

    def test_update_is_partial_and_audited(self, client):
        carer = create_carer(client)

        response = client.put(f"/carers/{carer['id']}", json={"capacity": 3})

        assert response.status_code == 200
        assert response.json()["capacity"] == 3
        assert response.json()["preferred_location"] == "London"

        logs = client.get(f"/audit/carer/{carer['id']}").json()
        assert [log["action"] for log in logs] == ["updated", "created"]
        assert logs[0]["changes"] == {"capacity": {"from": 1, "to": 3}}

    def test_update_checks_resulting_age_range(self, client):
        carer = create_carer(client)
        response = client.put(f"/carers/{carer['id']}", json={"min_age": 17})
        assert response.status_code == 422

    def test_list_filters_by_status(self, client):
        create_carer(client)
        create_carer(client, name="Jo Brown", status="inactive")

        active = client.get("/carers", params={"status": "active"}).json()

        assert [c["name"] for c in active] == ["Alex Smith"]

    def test_missing_carer(self, client):
        assert client.get("/carers/nope").status_code == 404

    def test_import_spreadsheet(self, client):
        csv = (
            "Carer Name,Min Age,Max Age,SEN Experience,Preferred Location,Capacity\n"
            "Alex Smith,5,12,yes,London,1\n"
            ",3,9,no,Leeds,1\n"
        )

        response = client.post(
            "/carers/import",
            files={"file": ("carers.csv", csv.encode(), "text/csv")},
        )

        assert response.status_code == 201, response.text
        body = response.json()
        assert body["imported"] == 1
        assert body["errors"] == ["Row 3: missing carer name"]

        carer = client.get(f"/carers/{body['carer_ids'][0]}").json()
        assert carer["experience_with_sen"] is True
        assert carer["max_age"] == 12

    def test_import_rejects_unknown_file_type(self, client):
        response = client.post("/carers/import", files={"file": ("carers.txt", b"x", "text/plain")})
        assert response.status_code == 400


class TestReferrals:

    def test_manual_referral_matched(self, client):
        carer = create_carer(client)

        created = create_referral(client)

        assert created["referral_status"] == "matched"
        assert created["matches"] == 1

        referral = client.get(f"/referrals/{created['referral_id']}").json()
        [match] = referral["matched_carers"]
        assert match["carer_id"] == carer["id"]
        assert match["score"] == 60
        assert match["recommended"] is False
        assert [d["criterion"] for d in match["match_details"]][0] == "Age Range"

    def test_upload_success(self, client, pdf_text):
        create_carer(client)

        response = client.post(
            "/referrals/upload",
            files={"file": ("referral.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["extracted"] is True
        assert body["referral_status"] == "matched"
        assert "age" in body["fields_extracted"]

    def test_upload_unreadable_pdf_needs_review(self, client, pdf_unreadable):
        response = client.post(
            "/referrals/upload",
            files={"file": ("referral.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "needs_review"
        assert body["referral_status"] == "processing"
        assert body["matches"] == 0

        referral = client.get(f"/referrals/{body['referral_id']}").json()
        assert referral["status"] == "processing"
        assert referral["matched_carers"] == []

    def test_unreadable_upload_completed_by_hand(self, client, pdf_unreadable):
        carer = create_carer(client)
        uploaded = client.post(
            "/referrals/upload",
            files={"file": ("referral.pdf", b"%PDF-1.4", "application/pdf")},
        ).json()
        referral_id = uploaded["referral_id"]

        response = client.put(f"/referrals/{referral_id}", json=REFERRAL)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["age"] == 12
        assert body["status_history"][-1]["to_status"] == "pending"

        logs = client.get(f"/audit/referral/{referral_id}").json()
        assert logs[0]["action"] == "updated"
        assert logs[0]["changes"]["age"] == {"from": None, "to": 12}

        rematch = client.post(f"/referrals/{referral_id}/rematch")
        assert rematch.status_code == 200
        assert rematch.json()["matches"] == 1

        referral = client.get(f"/referrals/{referral_id}").json()
        assert referral["status"] == "matched"
        assert referral["matched_carers"][0]["carer_id"] == carer["id"]
        assert referral["matched_carers"][0]["score"] == 60

    def test_update_is_partial(self, client):
        created = create_referral(client)

        response = client.put(f"/referrals/{created['referral_id']}", json={"urgency": "high"})

        assert response.status_code == 200
        body = response.json()
        assert body["urgency"] == "high"
        assert body["age"] == 12
        assert body["status"] == "matched"

    def test_update_rejects_invalid_fields(self, client):
        created = create_referral(client)
        referral_id = created["referral_id"]

        assert client.put(f"/referrals/{referral_id}", json={"sibling_count": 0}).status_code == 422
        assert client.put(f"/referrals/{referral_id}", json={"ethnicity": None}).status_code == 422
        assert client.put("/referrals/nope", json={"age": 3}).status_code == 404

    def test_attachment_download(self, client, pdf_unreadable):
        uploaded = client.post(
            "/referrals/upload",
            files={"file": ("referral.pdf", b"%PDF-1.4 scanned", "application/pdf")},
        ).json()

        response = client.get(f"/referrals/{uploaded['referral_id']}/attachment")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 scanned"
        assert response.headers["content-type"] == "application/pdf"
        assert 'filename="referral.pdf"' in response.headers["content-disposition"]

    def test_manual_referral_has_no_attachment(self, client):
        created = create_referral(client)
        response = client.get(f"/referrals/{created['referral_id']}/attachment")
        assert response.status_code == 404

    def test_upload_rejects_non_pdf(self, client):
        response = client.post(
            "/referrals/upload",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert response.status_code == 400

    def test_list_filters(self, client):
        create_referral(client, urgency="high")
        create_referral(client, urgency="low")

        high = client.get("/referrals", params={"urgency": "high"}).json()

        assert [r["urgency"] for r in high] == ["high"]

    def test_status_change_recorded(self, client):
        created = create_referral(client)

        response = client.put(
            f"/referrals/{created['referral_id']}/status",
            json={"status": "closed", "reason": "Placed by another agency"},
        )

        assert response.status_code == 200
        history = response.json()["status_history"]
        assert history[-1]["to_status"] == "closed"
        assert history[-1]["changed_by"] == "user-42"

        logs = client.get(f"/audit/referral/{created['referral_id']}").json()
        assert logs[0]["action"] == "status_changed"

    def test_invalid_status_change(self, client):
        created = create_referral(client)
        client.put(f"/referrals/{created['referral_id']}/status", json={"status": "declined"})

        response = client.put(f"/referrals/{created['referral_id']}/status", json={"status": "pending"})

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    def test_assign_places_referral(self, client):
        carer = create_carer(client)
        created = create_referral(client)

        response = client.post(
            f"/referrals/{created['referral_id']}/assign",
            json={"carer_id": carer["id"]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "placed"
        assert body["assigned_carer_id"] == carer["id"]

        placed = client.get("/referrals", params={"assigned_carer_id": carer["id"]}).json()
        assert len(placed) == 1

    def test_assign_unknown_carer(self, client):
        created = create_referral(client)
        response = client.post(f"/referrals/{created['referral_id']}/assign", json={"carer_id": "nope"})
        assert response.status_code == 404

    def test_rematch(self, client):
        created = create_referral(client)
        create_carer(client)

        response = client.post(f"/referrals/{created['referral_id']}/rematch")

        assert response.status_code == 200
        assert response.json()["matches"] == 1

    def test_rematch_after_placement_rejected(self, client):
        carer = create_carer(client)
        created = create_referral(client)
        client.post(f"/referrals/{created['referral_id']}/assign", json={"carer_id": carer["id"]})

        response = client.post(f"/referrals/{created['referral_id']}/rematch")

        assert response.status_code == 409
        assert response.json()["error"] == "matching_error"

    def test_missing_referral(self, client):
        assert client.get("/referrals/nope").status_code == 404
        assert client.post("/referrals/nope/rematch").status_code == 404


class TestMatchingPreview:

    def test_default_criteria(self, client):
        create_carer(client)

        response = client.post("/matching/preview", json={"referral": REFERRAL})

        assert response.status_code == 200
        body = response.json()
        assert body["criteria"]["age_range"] == {"weight": 1.0, "points": 30}
        assert body["matches"][0]["score"] == 60

    def test_overridden_criteria(self, client):
        create_carer(client)

        response = client.post(
            "/matching/preview",
            json={"referral": REFERRAL, "criteria": {"sen": {"points": 40}}},
        )

        match = response.json()["matches"][0]
        assert match["score"] == 90
        assert match["max_possible_score"] == 130

    def test_unknown_criterion(self, client):
        response = client.post(
            "/matching/preview",
            json={"referral": REFERRAL, "criteria": {"height": {"points": 1}}},
        )
        assert response.status_code == 422


class TestWebhooks:

    def test_sendgrid(self, client, pdf_text):
        payload = {
            "from": "sw@council.gov.uk",
            "subject": "Referral",
            "attachments": [{
                "filename": "referral.pdf",
                "content": base64.b64encode(b"%PDF-1.4").decode(),
                "type": "application/pdf",
            }],
        }

        response = client.post("/webhooks/sendgrid", json=payload)

        assert response.status_code == 200
        assert len(response.json()["referral_ids"]) == 1

    def test_sendgrid_without_pdf(self, client):
        response = client.post("/webhooks/sendgrid", json={"from": "sw@council.gov.uk"})

        assert response.status_code == 400
        assert response.json()["error"] == "ingest_error"

    def test_mailgun(self, client, pdf_text):
        response = client.post(
            "/webhooks/mailgun",
            data={"sender": "sw@council.gov.uk", "subject": "Referral"},
            files={"attachment-1": ("referral.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 200
        referral_id = response.json()["referral_ids"][0]
        referral = client.get(f"/referrals/{referral_id}").json()
        assert referral["referral_source"] == "sw@council.gov.uk"


class TestDashboard:

    def test_stats(self, client):
        carer = create_carer(client)
        create_carer(client, name="Jo Brown", status="inactive")
        create_referral(client)
        placed = create_referral(client, urgency="emergency")
        client.post(f"/referrals/{placed['referral_id']}/assign", json={"carer_id": carer["id"]})

        stats = client.get("/dashboard/stats").json()

        assert stats == {
            "total_carers": 1,
            "total_referrals": 2,
            "active_referrals": 1,
            "placed_referrals": 1,
        }

    def test_daily_summary(self, client):
        create_referral(client, urgency="emergency")
        create_referral(client)

        summary = client.get("/dashboard/daily-summary").json()

        # referrals are matched on creation even with an empty carer pool
        assert summary == {"total_today": 2, "urgent_today": 1, "matched_today": 2}
