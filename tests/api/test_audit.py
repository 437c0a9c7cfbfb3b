"""
Tests for the /audit API endpoints.
"""
import pytest
import httpx

from src.tutor_ledger_backend.database import models as db_models


@pytest.mark.anyio
class TestAuditAPI:

    async def test_list_and_undo_status_change(
        self,
        client: httpx.AsyncClient,
        admin_headers: dict,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes]
    ):
        lesson = attended_classes[0]
        response = await client.patch(
            f"/classes/{lesson.id}/status",
            json={"status": "cancelled_by_admin", "reason": "Teacher ill"},
            headers=admin_headers
        )
        assert response.status_code == 200

        response = await client.get(
            "/audit/", params={"action": "class_status_change", "entity_id": str(lesson.id)}, headers=admin_headers
        )
        assert response.status_code == 200
        entries = response.json()
        assert len(entries) == 1
        assert entries[0]["reason"] == "Teacher ill"
        assert entries[0]["metadata"]["balance_delta"] == "1.000"

        response = await client.post(f"/audit/{entries[0]['id']}/undo", json={}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["action"] == "status_undo"
        assert response.json()["original_log_id"] == entries[0]["id"]

        response = await client.post(f"/audit/{entries[0]['id']}/undo", json={}, headers=admin_headers)
        assert response.status_code == 409

    async def test_audit_is_admin_only(self, client: httpx.AsyncClient, teacher_headers: dict):
        response = await client.get("/audit/", headers=teacher_headers)
        assert response.status_code == 403
