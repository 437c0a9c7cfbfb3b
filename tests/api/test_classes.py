"""
Tests for the /classes API endpoints.
"""
import pytest
from decimal import Decimal
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from src.tutor_ledger_backend.database import models as db_models


@pytest.mark.anyio
class TestClassesAPI:

    async def test_teacher_submits_report(
        self,
        client: httpx.AsyncClient,
        teacher_headers: dict,
        guardian: db_models.Guardians,
        two_scheduled_classes: list[db_models.Classes]
    ):
        lesson = two_scheduled_classes[0]
        response = await client.post(
            f"/classes/{lesson.id}/report", json={"attendance": "attended", "notes": "Fractions"}, headers=teacher_headers
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["class"]["status"] == "attended"
        assert Decimal(body["balance_change"]["after"]) == Decimal("-1")
        assert body["decision"]["blocked"] is False

        # re-submitting the same outcome is blocked
        response = await client.post(
            f"/classes/{lesson.id}/report", json={"attendance": "attended"}, headers=teacher_headers
        )
        assert response.json()["decision"]["blocked"] is True
        assert response.json()["balance_change"] is None

    async def test_teacher_cannot_change_status(
        self,
        client: httpx.AsyncClient,
        teacher_headers: dict,
        attended_classes: list[db_models.Classes]
    ):
        response = await client.patch(
            f"/classes/{attended_classes[0].id}/status", json={"status": "cancelled_by_admin"}, headers=teacher_headers
        )
        assert response.status_code == 403

    async def test_state_changed_hook(
        self,
        client: httpx.AsyncClient,
        system_headers: dict,
        db_session: AsyncSession,
        guardian: db_models.Guardians,
        two_scheduled_classes: list[db_models.Classes]
    ):
        lesson = two_scheduled_classes[1]
        previous = {
            "id": str(lesson.id),
            "guardian_id": str(guardian.id),
            "student_id": str(lesson.student_id),
            "status": "scheduled",
            "duration": 60,
            "charged_hours": "0",
        }
        lesson.status = "attended"
        await db_session.flush()
        current = {**previous, "status": "attended", "report_submitted": True}

        body = {"current": current, "previous": previous}
        response = await client.post(f"/classes/{lesson.id}/state-changed", json=body, headers=system_headers)
        assert response.status_code == 200, response.text
        assert Decimal(response.json()["balance_change"]["delta"]) == Decimal("-1")

        # a duplicate delivery moves nothing
        response = await client.post(f"/classes/{lesson.id}/state-changed", json=body, headers=system_headers)
        assert response.status_code == 200
        assert response.json()["balance_change"] is None

    async def test_state_changed_hook_refunds_a_teacher_cancellation(
        self,
        client: httpx.AsyncClient,
        system_headers: dict,
        db_session: AsyncSession,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes]
    ):
        lesson = attended_classes[0]
        previous = {
            "id": str(lesson.id),
            "guardian_id": str(guardian.id),
            "student_id": str(lesson.student_id),
            "status": "attended",
            "duration": 60,
            "report_submitted": True,
        }
        lesson.status = "cancelled_by_teacher"
        await db_session.flush()
        current = {**previous, "status": "cancelled_by_teacher"}

        response = await client.post(
            f"/classes/{lesson.id}/state-changed", json={"current": current, "previous": previous}, headers=system_headers
        )
        assert response.status_code == 200, response.text
        assert Decimal(response.json()["balance_change"]["before"]) == Decimal("-2")
        assert Decimal(response.json()["balance_change"]["after"]) == Decimal("-1")

    async def test_mismatched_snapshot_id(
        self,
        client: httpx.AsyncClient,
        system_headers: dict,
        two_scheduled_classes: list[db_models.Classes]
    ):
        lesson, other = two_scheduled_classes
        body = {"current": {"id": str(other.id), "guardian_id": str(other.guardian_id), "status": "attended", "duration": 60}}
        response = await client.post(f"/classes/{lesson.id}/state-changed", json=body, headers=system_headers)
        assert response.status_code == 422

    async def test_delete_class(
        self,
        client: httpx.AsyncClient,
        admin_headers: dict,
        attended_classes: list[db_models.Classes]
    ):
        lesson = attended_classes[0]
        response = await client.delete(f"/classes/{lesson.id}", params={"reason": "Duplicate"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["class"]["deleted"] is True
        assert Decimal(response.json()["balance_change"]["after"]) == Decimal("-1")

        response = await client.delete(f"/classes/{lesson.id}", headers=admin_headers)
        assert response.status_code == 409
