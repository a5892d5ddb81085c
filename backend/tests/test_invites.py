# tests/test_invites.py — Organisation invite tests
import pytest
from httpx import AsyncClient

from routers import invites as invites_router
from tests.conftest import get_auth_headers, create_board


@pytest.mark.asyncio
async def test_create_and_list_invites(client: AsyncClient, admin_user, monkeypatch):
    sent = []

    async def capture(to_addr, org_name, inviter_name, signup_url):
        sent.append((to_addr, org_name, inviter_name))
        return True

    monkeypatch.setattr(invites_router, "send_invitation", capture)
    board = await create_board(client, admin_user)
    headers = get_auth_headers(admin_user)

    res = await client.post("/api/v1/invites", json={
        "email": "New.Hire@PrintNow.dev",
        "role": "ADMIN",
        "board_ids": [board["id"]],
    }, headers=headers)
    assert res.status_code == 201
    data = res.json()
    assert data["email"] == "new.hire@printnow.dev"
    assert data["role"] == "ADMIN"
    assert data["invited_by"]["email"] == "admin@printnow.dev"
    assert [b["id"] for b in data["boards"]] == [board["id"]]
    assert sent == [("new.hire@printnow.dev", "Test Organisation", "Adam Admin")]

    listed = await client.get("/api/v1/invites", headers=headers)
    assert listed.status_code == 200
    assert [i["id"] for i in listed.json()] == [data["id"]]


@pytest.mark.asyncio
async def test_member_cannot_invite(client: AsyncClient, member_user):
    res = await client.post(
        "/api/v1/invites",
        json={"email": "friend@printnow.dev"},
        headers=get_auth_headers(member_user),
    )
    assert res.status_code == 403
    assert res.json()["detail"] == "Only admins can manage invites"


@pytest.mark.asyncio
async def test_invite_existing_member_conflict(client: AsyncClient, admin_user, member_user):
    res = await client.post(
        "/api/v1/invites",
        json={"email": "member@printnow.dev"},
        headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 409
    assert res.json()["detail"] == "This email is already a member of your organization"


@pytest.mark.asyncio
async def test_duplicate_invite_conflict(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    first = await client.post("/api/v1/invites", json={"email": "twice@printnow.dev"}, headers=headers)
    assert first.status_code == 201
    second = await client.post("/api/v1/invites", json={"email": "twice@printnow.dev"}, headers=headers)
    assert second.status_code == 409
    assert second.json()["detail"] == "An invite has already been sent to this email"


@pytest.mark.asyncio
async def test_owner_role_cannot_be_invited(client: AsyncClient, admin_user):
    res = await client.post(
        "/api/v1/invites",
        json={"email": "boss@printnow.dev", "role": "OWNER"},
        headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_foreign_board_rejected(client: AsyncClient, admin_user, other_org_user):
    foreign = await create_board(client, other_org_user, "Not Yours")
    res = await client.post(
        "/api/v1/invites",
        json={"email": "someone@printnow.dev", "board_ids": [foreign["id"]]},
        headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_delete_invite(client: AsyncClient, admin_user, other_org_user):
    headers = get_auth_headers(admin_user)
    created = await client.post("/api/v1/invites", json={"email": "gone@printnow.dev"}, headers=headers)
    invite_id = created.json()["id"]

    foreign = await client.delete(f"/api/v1/invites/{invite_id}", headers=get_auth_headers(other_org_user))
    assert foreign.status_code == 404

    res = await client.delete(f"/api/v1/invites/{invite_id}", headers=headers)
    assert res.status_code == 200
    again = await client.delete(f"/api/v1/invites/{invite_id}", headers=headers)
    assert again.status_code == 404
    assert again.json()["detail"] == "Invite not found"
