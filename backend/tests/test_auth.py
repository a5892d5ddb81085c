# tests/test_auth.py — Magic-link sign-in, provisioning and token tests
from datetime import timedelta
from urllib.parse import urlparse, parse_qs

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from auth import AuthService, safe_next_path
from models import MagicLinkToken, Invite, BoardMember, Member, utcnow
from routers import auth as auth_router
from tests.conftest import get_auth_headers, create_board


@pytest.mark.asyncio
class TestCheckEmail:
    async def test_known_email_allowed(self, client: AsyncClient, member_user):
        res = await client.post("/api/v1/auth/check-email", json={"email": " Member@PrintNow.dev "})
        assert res.status_code == 200
        assert res.json() == {"allowed": True}

    async def test_unknown_email_not_allowed(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/check-email", json={"email": "stranger@nowhere.dev"})
        assert res.status_code == 200
        assert res.json() == {"allowed": False}

    async def test_empty_email_rejected(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/check-email", json={"email": "   "})
        assert res.status_code == 400
        assert res.json() == {"allowed": False}


@pytest.mark.asyncio
class TestMagicLink:
    async def test_request_sends_link(self, client: AsyncClient, member_user, monkeypatch):
        sent = []

        async def capture(to_addr, link):
            sent.append((to_addr, link))
            return True

        monkeypatch.setattr(auth_router, "send_magic_link", capture)
        res = await client.post("/api/v1/auth/magic-link", json={
            "email": "member@printnow.dev",
            "next": "/boards/abc",
        })
        assert res.status_code == 202
        assert len(sent) == 1
        to_addr, link = sent[0]
        assert to_addr == "member@printnow.dev"
        query = parse_qs(urlparse(link).query)
        assert query["next"] == ["/boards/abc"]

        verify = await client.post("/api/v1/auth/verify", json={"token": query["token"][0]})
        assert verify.status_code == 200
        data = verify.json()
        assert data["user"]["email"] == "member@printnow.dev"
        assert data["user"]["role"] == "MEMBER"
        assert data["access_token"] and data["refresh_token"]

    async def test_unknown_email_forbidden(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/magic-link", json={"email": "stranger@nowhere.dev"})
        assert res.status_code == 403

    async def test_invalid_email_rejected(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/magic-link", json={"email": "not-an-email"})
        assert res.status_code == 422

    async def test_stored_token_is_hashed(self, client: AsyncClient, db_session, member_user):
        raw = await AuthService.create_magic_link("member@printnow.dev", db_session)
        stored = (await db_session.execute(select(MagicLinkToken))).scalars().all()
        assert len(stored) == 1
        assert stored[0].token_hash == AuthService.hash_token(raw)
        assert stored[0].token_hash != raw

    async def test_link_is_single_use(self, client: AsyncClient, db_session, member_user):
        raw = await AuthService.create_magic_link("member@printnow.dev", db_session)
        first = await client.post("/api/v1/auth/verify", json={"token": raw})
        assert first.status_code == 200
        second = await client.post("/api/v1/auth/verify", json={"token": raw})
        assert second.status_code == 401

    async def test_expired_link_rejected(self, client: AsyncClient, db_session, member_user):
        db_session.add(MagicLinkToken(
            token_hash=AuthService.hash_token("stale-token"),
            email="member@printnow.dev",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        await db_session.commit()
        res = await client.post("/api/v1/auth/verify", json={"token": "stale-token"})
        assert res.status_code == 401

    async def test_unknown_token_rejected(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/verify", json={"token": "made-up"})
        assert res.status_code == 401


@pytest.mark.asyncio
class TestProvisioning:
    async def test_open_signup_creates_owned_org(self, client: AsyncClient, db_session, monkeypatch):
        monkeypatch.setattr(auth_router, "OPEN_SIGNUP", True)
        res = await client.post("/api/v1/auth/magic-link", json={"email": "founder@newco.dev", "name": "Fay"})
        assert res.status_code == 202

        link = (await db_session.execute(select(MagicLinkToken))).scalar_one()
        assert link.display_name == "Fay"
        raw = await AuthService.create_magic_link("founder@newco.dev", db_session, display_name="Fay")
        verify = await client.post("/api/v1/auth/verify", json={"token": raw})
        assert verify.status_code == 200
        user = verify.json()["user"]
        assert user["role"] == "OWNER"
        assert user["display_name"] == "Fay"

        headers = {"Authorization": f"Bearer {verify.json()['access_token']}"}
        org = await client.get("/api/v1/organisations/current", headers=headers)
        assert org.json()["name"] == "My Organization"

    async def test_invite_places_user_in_org(self, client: AsyncClient, db_session, admin_user, test_org):
        board = await create_board(client, admin_user)
        res = await client.post("/api/v1/invites", json={
            "email": "invitee@printnow.dev",
            "role": "MEMBER",
            "board_ids": [board["id"]],
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 201

        check = await client.post("/api/v1/auth/check-email", json={"email": "invitee@printnow.dev"})
        assert check.json() == {"allowed": True}

        raw = await AuthService.create_magic_link("invitee@printnow.dev", db_session)
        verify = await client.post("/api/v1/auth/verify", json={"token": raw})
        assert verify.status_code == 200
        user = verify.json()["user"]
        assert user["organisation_id"] == test_org.id
        assert user["role"] == "MEMBER"

        invites = (await db_session.execute(select(Invite))).scalars().all()
        assert invites == []
        board_members = (await db_session.execute(
            select(BoardMember).where(BoardMember.user_id == user["id"])
        )).scalars().all()
        assert [bm.board_id for bm in board_members] == [board["id"]]

        headers = {"Authorization": f"Bearer {verify.json()['access_token']}"}
        boards = await client.get("/api/v1/boards", headers=headers)
        assert [b["id"] for b in boards.json()] == [board["id"]]

    async def test_returning_user_keeps_membership(self, client: AsyncClient, db_session, member_user, test_org):
        raw = await AuthService.create_magic_link("member@printnow.dev", db_session)
        verify = await client.post("/api/v1/auth/verify", json={"token": raw})
        assert verify.json()["user"]["organisation_id"] == test_org.id

        members = (await db_session.execute(
            select(Member).where(Member.user_id == member_user.id)
        )).scalars().all()
        assert len(members) == 1


@pytest.mark.asyncio
class TestCallback:
    async def test_callback_redirects_with_tokens(self, client: AsyncClient, db_session, member_user):
        raw = await AuthService.create_magic_link("member@printnow.dev", db_session, next_path="/boards/xyz")
        res = await client.get("/api/v1/auth/callback", params={"token": raw})
        assert res.status_code in (302, 307)
        location = res.headers["location"]
        assert "/boards/xyz#" in location
        assert "access_token=" in location and "refresh_token=" in location

    async def test_callback_failure_redirects_to_login(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/callback", params={"token": "bogus"})
        assert res.status_code in (302, 307)
        assert res.headers["location"].endswith("/login?error=auth_failed")

    async def test_unsafe_next_falls_back(self):
        assert safe_next_path("//evil.example") == "/boards"
        assert safe_next_path("https://evil.example") == "/boards"
        assert safe_next_path("/boards/1") == "/boards/1"


@pytest.mark.asyncio
class TestTokens:
    async def test_me(self, client: AsyncClient, admin_user, test_org):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        data = res.json()
        assert data["email"] == "admin@printnow.dev"
        assert data["role"] == "ADMIN"
        assert data["organisation_id"] == test_org.id

    async def test_refresh(self, client: AsyncClient, admin_user):
        refresh = AuthService.create_refresh_token(AuthService.token_data(admin_user, admin_user.membership))
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh})
        assert res.status_code == 200
        assert "access_token" in res.json()

    async def test_refresh_rejects_access_token(self, client: AsyncClient, admin_user):
        access = AuthService.create_access_token(AuthService.token_data(admin_user, admin_user.membership))
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": access})
        assert res.status_code == 401

    async def test_logout_revokes_token(self, client: AsyncClient, admin_user):
        headers = get_auth_headers(admin_user)
        res = await client.post("/api/v1/auth/logout", headers=headers)
        assert res.status_code == 200
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401

    async def test_removed_member_is_forbidden(self, client: AsyncClient, owner_user, member_user):
        headers = get_auth_headers(member_user)
        members = (await client.get("/api/v1/organisations/current", headers=get_auth_headers(owner_user))).json()["members"]
        member_id = next(m["id"] for m in members if m["user_id"] == member_user.id)
        res = await client.delete(f"/api/v1/organisations/current/members/{member_id}", headers=get_auth_headers(owner_user))
        assert res.status_code == 200

        res = await client.get("/api/v1/boards", headers=headers)
        assert res.status_code == 403
