# tests/test_api.py — HTTP surface: routing, error bodies, auth wiring
from datetime import timedelta

import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


async def _workspace(client: AsyncClient, owner, name: str = "Acme") -> int:
    resp = await client.post("/api/v1/workspaces", json={"name": name}, headers=get_auth_headers(owner))
    assert resp.status_code == 201
    return resp.json()["id"]


async def _add_member(client: AsyncClient, admin, ws_id: int, member, role: str):
    resp = await client.post(
        f"/api/v1/workspaces/{ws_id}/members",
        json={"identity": member.id, "role": role},
        headers=get_auth_headers(admin),
    )
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
class TestWorkspaceEndpoints:
    async def test_create_and_get(self, client: AsyncClient, test_user):
        ws_id = await _workspace(client, test_user)
        resp = await client.get(f"/api/v1/workspaces/{ws_id}", headers=get_auth_headers(test_user))
        assert resp.status_code == 200
        data = resp.json()
        assert data["owner_id"] == test_user.id
        assert data["is_active"] is True

        members = await client.get(f"/api/v1/workspaces/{ws_id}/members", headers=get_auth_headers(test_user))
        assert [m["role"] for m in members.json()] == ["admin"]

    async def test_outsider_cannot_read(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        resp = await client.get(f"/api/v1/workspaces/{ws_id}", headers=get_auth_headers(other_user))
        assert resp.status_code == 403
        assert resp.json()["error"] == "unauthorized"

    async def test_missing_workspace(self, client: AsyncClient, test_user):
        resp = await client.get("/api/v1/workspaces/999", headers=get_auth_headers(test_user))
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "not_found"
        assert "request_id" in body

    async def test_duplicate_member_conflict(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        await _add_member(client, test_user, ws_id, other_user, "editor")
        resp = await client.post(
            f"/api/v1/workspaces/{ws_id}/members",
            json={"identity": other_user.id, "role": "viewer"},
            headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 409
        assert resp.json()["context"]["reason"] == "already_member"

    async def test_owner_removal_conflict(self, client: AsyncClient, test_user):
        ws_id = await _workspace(client, test_user)
        resp = await client.delete(
            f"/api/v1/workspaces/{ws_id}/members/{test_user.id}", headers=get_auth_headers(test_user)
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "owner_protected"

    async def test_role_update_and_listing(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        await _add_member(client, test_user, ws_id, other_user, "viewer")
        resp = await client.patch(
            f"/api/v1/workspaces/{ws_id}/members/{other_user.id}",
            json={"role": "editor"},
            headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 200
        assert resp.json()["previous_role"] == "viewer"

        mine = await client.get("/api/v1/workspaces", headers=get_auth_headers(other_user))
        assert [ws["id"] for ws in mine.json()] == [ws_id]

    async def test_negative_storage_rejected(self, client: AsyncClient, test_user):
        ws_id = await _workspace(client, test_user)
        resp = await client.put(
            f"/api/v1/workspaces/{ws_id}/storage", json={"used_bytes": -1}, headers=get_auth_headers(test_user)
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "validation_error"
        assert body["context"]["fields"][0]["field"] == "used_bytes"

    async def test_requires_authentication(self, client: AsyncClient):
        resp = await client.post("/api/v1/workspaces", json={"name": "Anon"})
        assert resp.status_code in (401, 403)


@pytest.mark.asyncio
class TestDocumentEndpoints:
    async def test_document_lifecycle(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        await _add_member(client, test_user, ws_id, other_user, "editor")
        owner, editor = get_auth_headers(test_user), get_auth_headers(other_user)

        resp = await client.post(
            "/api/v1/documents", json={"workspace_id": ws_id, "title": "Design", "content_ref": "cid1"}, headers=owner
        )
        assert resp.status_code == 201
        doc_id = resp.json()["id"]

        resp = await client.put(f"/api/v1/documents/{doc_id}", json={"content_ref": "cid2"}, headers=editor)
        assert resp.status_code == 200
        assert resp.json()["version"] == 2

        history = await client.get(f"/api/v1/documents/{doc_id}/history", headers=editor)
        assert [v["content_ref"] for v in history.json()] == ["cid1", "cid2"]

        level = await client.get(f"/api/v1/documents/{doc_id}/permissions/{other_user.id}", headers=editor)
        assert level.json()["level"] == "editor"

    async def test_expiring_grant(self, client: AsyncClient, clock, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        owner = get_auth_headers(test_user)
        doc = await client.post(
            "/api/v1/documents", json={"workspace_id": ws_id, "title": "Memo", "content_ref": "cid"}, headers=owner
        )
        doc_id = doc.json()["id"]
        expiry = clock.now() + timedelta(hours=2)
        resp = await client.put(
            f"/api/v1/documents/{doc_id}/permissions",
            json={"user_id": other_user.id, "level": "viewer", "expires_at": expiry.isoformat()},
            headers=owner,
        )
        assert resp.status_code == 200

        outsider = get_auth_headers(other_user)
        assert (await client.get(f"/api/v1/documents/{doc_id}", headers=outsider)).status_code == 200
        clock.advance(hours=2)
        assert (await client.get(f"/api/v1/documents/{doc_id}", headers=outsider)).status_code == 403

    async def test_revoke_owner_conflict(self, client: AsyncClient, test_user):
        ws_id = await _workspace(client, test_user)
        owner = get_auth_headers(test_user)
        doc = await client.post(
            "/api/v1/documents", json={"workspace_id": ws_id, "title": "Memo", "content_ref": "cid"}, headers=owner
        )
        resp = await client.delete(
            f"/api/v1/documents/{doc.json()['id']}/permissions/{test_user.id}", headers=owner
        )
        assert resp.status_code == 409


    async def test_verify_content_ref(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        owner = get_auth_headers(test_user)
        doc = await client.post(
            "/api/v1/documents", json={"workspace_id": ws_id, "title": "Deed", "content_ref": "sha256:aaa"}, headers=owner
        )
        doc_id = doc.json()["id"]
        await client.put(f"/api/v1/documents/{doc_id}", json={"content_ref": "sha256:bbb"}, headers=owner)

        resp = await client.get("/api/v1/documents/verify", params={"content_ref": "sha256:aaa"}, headers=owner)
        assert resp.status_code == 200
        body = resp.json()
        assert body["registered"] is True
        assert [(m["document_id"], m["version"], m["is_current"]) for m in body["matches"]] == [(doc_id, 1, False)]

        current = await client.get("/api/v1/documents/verify", params={"content_ref": "sha256:bbb"}, headers=owner)
        assert current.json()["matches"][0]["is_current"] is True

        # Documents the caller cannot view are not disclosed
        hidden = await client.get(
            "/api/v1/documents/verify", params={"content_ref": "sha256:aaa"}, headers=get_auth_headers(other_user)
        )
        assert hidden.json() == {"content_ref": "sha256:aaa", "registered": False, "matches": []}


@pytest.mark.asyncio
class TestTaskEndpoints:
    async def test_dependency_gate_over_http(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        ws_id = await _workspace(client, test_user)
        project = await client.post("/api/v1/projects", json={"workspace_id": ws_id, "name": "P"}, headers=headers)
        project_id = project.json()["id"]

        t1 = (await client.post("/api/v1/tasks", json={"project_id": project_id, "title": "T1"}, headers=headers)).json()
        t2 = (await client.post("/api/v1/tasks", json={"project_id": project_id, "title": "T2"}, headers=headers)).json()
        resp = await client.post(f"/api/v1/tasks/{t1['id']}/dependencies", json={"dependency_id": t2["id"]}, headers=headers)
        assert resp.json()["dependency_ids"] == [t2["id"]]

        resp = await client.post(f"/api/v1/tasks/{t1['id']}/status", json={"status": "done"}, headers=headers)
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "dependencies_unmet"
        assert body["context"]["unmet_dependencies"] == [t2["id"]]

        unmet = await client.get(f"/api/v1/tasks/{t1['id']}/unmet-dependencies", headers=headers)
        assert unmet.json()["unmet_dependencies"] == [t2["id"]]

        await client.post(f"/api/v1/tasks/{t2['id']}/status", json={"status": "done"}, headers=headers)
        resp = await client.post(f"/api/v1/tasks/{t1['id']}/status", json={"status": "done"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["completed_at"] is not None

        done = await client.get("/api/v1/tasks", params={"project_id": project_id, "status": "done"}, headers=headers)
        assert len(done.json()) == 2

    async def test_outsider_cannot_create_task(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        project = await client.post(
            "/api/v1/projects", json={"workspace_id": ws_id, "name": "P"}, headers=get_auth_headers(test_user)
        )
        resp = await client.post(
            "/api/v1/tasks",
            json={"project_id": project.json()["id"], "title": "Sneaky"},
            headers=get_auth_headers(other_user),
        )
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestSubscriptionEndpoints:
    async def test_plan_and_subscription_flow(self, client: AsyncClient, clock, test_user, super_admin):
        plan = await client.post(
            "/api/v1/subscriptions/plans",
            json={"name": "Pro", "storage_limit_gb": 500, "price_per_month": 1500, "price_per_gb": 3},
            headers=get_auth_headers(super_admin),
        )
        assert plan.status_code == 201
        plan_id = plan.json()["id"]

        ws_id = await _workspace(client, test_user)
        headers = get_auth_headers(test_user)
        resp = await client.post(
            "/api/v1/subscriptions", json={"workspace_id": ws_id, "plan_id": plan_id, "payment": 1000}, headers=headers
        )
        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_payment"

        resp = await client.post(
            "/api/v1/subscriptions", json={"workspace_id": ws_id, "plan_id": plan_id, "payment": 1500}, headers=headers
        )
        assert resp.status_code == 201
        first_expiry = resp.json()["expires_at"]
        assert resp.json()["is_current"] is True

        resp = await client.post(f"/api/v1/subscriptions/{ws_id}/renew", json={"payment": 1500}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["expires_at"] != first_expiry

        active = await client.get(f"/api/v1/subscriptions/{ws_id}/active", headers=headers)
        assert active.json()["active"] is True

    async def test_regular_user_cannot_create_plan(self, client: AsyncClient, test_user):
        resp = await client.post(
            "/api/v1/subscriptions/plans",
            json={"name": "Free", "storage_limit_gb": 1, "price_per_month": 0},
            headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestEventEndpoints:
    async def test_members_read_workspace_events(self, client: AsyncClient, test_user, other_user):
        ws_id = await _workspace(client, test_user)
        await _add_member(client, test_user, ws_id, other_user, "viewer")
        resp = await client.get("/api/v1/events", params={"workspace_id": ws_id}, headers=get_auth_headers(other_user))
        assert resp.status_code == 200
        kinds = [e["kind"] for e in resp.json()]
        assert kinds == ["workspace.created", "workspace.member.added"]

    async def test_global_event_log_is_admin_only(self, client: AsyncClient, test_user, super_admin):
        await _workspace(client, test_user)
        assert (await client.get("/api/v1/events", headers=get_auth_headers(test_user))).status_code == 403
        resp = await client.get("/api/v1/events", headers=get_auth_headers(super_admin))
        assert resp.status_code == 200
        assert len(resp.json()) == 1


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["treasury"] == "ledger"
    assert body["subscription_period_days"] == 30
    assert body["last_event_id"] is None
