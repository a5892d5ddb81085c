# tests/test_customers.py — Customer, contact and board sharing tests
import pytest
from httpx import AsyncClient

from routers import customers
from routers.customers import ACCESS_CODE_ALPHABET, ACCESS_CODE_LENGTH, generate_access_code
from tests.conftest import get_auth_headers, create_board


async def _create_customer(client: AsyncClient, user, name="Acme Bakery", email="orders@acme.dev") -> dict:
    res = await client.post("/api/v1/customers", json={"name": name, "email": email}, headers=get_auth_headers(user))
    assert res.status_code == 201, res.text
    return res.json()


def test_access_code_alphabet():
    code = generate_access_code()
    assert len(code) == ACCESS_CODE_LENGTH
    assert all(ch in ACCESS_CODE_ALPHABET for ch in code)
    for ambiguous in "01IO":
        assert ambiguous not in ACCESS_CODE_ALPHABET


@pytest.mark.asyncio
async def test_create_customer(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    assert customer["name"] == "Acme Bakery"
    assert len(customer["access_code"]) == 8
    assert customer["boards"] == []
    assert customer["contact_count"] == 0


@pytest.mark.asyncio
async def test_member_can_list_but_not_create(client: AsyncClient, admin_user, member_user):
    await _create_customer(client, admin_user)
    listed = await client.get("/api/v1/customers", headers=get_auth_headers(member_user))
    assert listed.status_code == 200
    assert len(listed.json()) == 1

    res = await client.post("/api/v1/customers", json={"name": "Nope"}, headers=get_auth_headers(member_user))
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_customers_scoped_to_org(client: AsyncClient, admin_user, other_org_user):
    customer = await _create_customer(client, admin_user)
    listed = await client.get("/api/v1/customers", headers=get_auth_headers(other_org_user))
    assert listed.json() == []
    res = await client.patch(
        f"/api/v1/customers/{customer['id']}", json={"name": "Stolen"}, headers=get_auth_headers(other_org_user),
    )
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_update_and_delete_customer(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    headers = get_auth_headers(admin_user)
    res = await client.patch(f"/api/v1/customers/{customer['id']}", json={"name": "Acme Bakery Ltd"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["name"] == "Acme Bakery Ltd"
    assert res.json()["email"] == "orders@acme.dev"

    res = await client.delete(f"/api/v1/customers/{customer['id']}", headers=headers)
    assert res.status_code == 200
    assert (await client.get("/api/v1/customers", headers=headers)).json() == []


@pytest.mark.asyncio
async def test_regenerate_code_invalidates_old(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    old_code = customer["access_code"]
    res = await client.post(
        f"/api/v1/customers/{customer['id']}/regenerate-code", headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 200
    new_code = res.json()["access_code"]
    assert new_code != old_code

    assert (await client.get(f"/api/v1/portal/{old_code}")).status_code == 404
    assert (await client.get(f"/api/v1/portal/{new_code}")).status_code == 200


@pytest.mark.asyncio
async def test_share_and_unshare_board(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    board = await create_board(client, admin_user)
    headers = get_auth_headers(admin_user)
    url = f"/api/v1/customers/{customer['id']}/boards/{board['id']}"

    res = await client.post(url, headers=headers)
    assert res.status_code == 200
    assert [b["id"] for b in res.json()["boards"]] == [board["id"]]
    again = await client.post(url, headers=headers)
    assert len(again.json()["boards"]) == 1

    board_view = await client.get(f"/api/v1/boards/{board['id']}", headers=headers)
    assert [c["id"] for c in board_view.json()["customers"]] == [customer["id"]]

    res = await client.delete(url, headers=headers)
    assert res.status_code == 200
    assert res.json()["boards"] == []


@pytest.mark.asyncio
async def test_cannot_share_foreign_board(client: AsyncClient, admin_user, other_org_user):
    customer = await _create_customer(client, admin_user)
    foreign = await create_board(client, other_org_user)
    res = await client.post(
        f"/api/v1/customers/{customer['id']}/boards/{foreign['id']}", headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_contacts_crud(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    headers = get_auth_headers(admin_user)
    base = f"/api/v1/customers/{customer['id']}/contacts"

    created = await client.post(base, json={"name": "Carla", "email": "carla@acme.dev"}, headers=headers)
    assert created.status_code == 201
    contact = created.json()
    assert contact["is_active"] is True

    updated = await client.patch(f"{base}/{contact['id']}", json={"is_active": False}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False
    assert updated.json()["name"] == "Carla"

    listed = await client.get(base, headers=headers)
    assert [c["id"] for c in listed.json()] == [contact["id"]]

    deleted = await client.delete(f"{base}/{contact['id']}", headers=headers)
    assert deleted.status_code == 200
    missing = await client.delete(f"{base}/{contact['id']}", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_deleting_board_unshares_it(client: AsyncClient, admin_user):
    customer = await _create_customer(client, admin_user)
    board = await create_board(client, admin_user)
    headers = get_auth_headers(admin_user)
    await client.post(f"/api/v1/customers/{customer['id']}/boards/{board['id']}", headers=headers)
    await client.delete(f"/api/v1/boards/{board['id']}", headers=headers)

    listed = await client.get("/api/v1/customers", headers=headers)
    assert listed.json()[0]["boards"] == []


@pytest.mark.asyncio
async def test_access_code_race_is_conflict(client: AsyncClient, admin_user, monkeypatch):
    """Another insert claimed the code between our check and our commit"""
    first = await _create_customer(client, admin_user)

    async def stale_code(db):
        return first["access_code"]

    monkeypatch.setattr(customers, "_unique_access_code", stale_code)
    headers = get_auth_headers(admin_user)

    res = await client.post("/api/v1/customers", json={"name": "Second Bakery"}, headers=headers)
    assert res.status_code == 409

    listed = await client.get("/api/v1/customers", headers=headers)
    assert [c["name"] for c in listed.json()] == ["Acme Bakery"]
