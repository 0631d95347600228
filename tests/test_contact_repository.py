"""Integration tests for ContactRepository on SQLite (aiosqlite).

Exercises the real INSERT ... ON CONFLICT upserts and unique constraints,
including the concurrent organization resolve and email collision paths.
"""

from __future__ import annotations

import asyncio

import pytest

from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.errors import EmailTakenError
from src.contact_sync.contacts.identity import IdentityResolver
from src.contact_sync.contacts.repository import ContactRepository
from src.contact_sync.contacts.schemas import RemoteContact, UserUpsert


@pytest.fixture
def repo(session_factory) -> ContactRepository:
    return ContactRepository(session_factory=session_factory)


def _contact(remote_id: str, email: str, company: str | None = None) -> RemoteContact:
    return RemoteContact.model_validate(
        {
            "id": remote_id,
            "first_name": "Test",
            "last_name": remote_id,
            "email_addresses": [{"email": email, "primary": True}],
            "company_name": company,
        }
    )


# ── Organizations ──────────────────────────────────────────────────────────


class TestOrganizations:
    async def test_upsert_returns_same_row_for_same_name(self, repo):
        first = await repo.upsert_organization("Acme")
        second = await repo.upsert_organization("Acme")

        assert first.id == second.id
        assert [o.name for o in await repo.list_organizations()] == ["Acme"]

    async def test_concurrent_upserts_converge_on_one_row(self, repo):
        results = await asyncio.gather(*(repo.upsert_organization("Acme") for _ in range(5)))

        assert len({r.id for r in results}) == 1
        organizations = await repo.list_organizations()
        assert len(organizations) == 1

    async def test_names_are_case_sensitive(self, repo):
        await repo.upsert_organization("Acme")
        await repo.upsert_organization("ACME")
        assert len(await repo.list_organizations()) == 2

    async def test_list_includes_user_counts(self, repo):
        acme = await repo.upsert_organization("Acme")
        await repo.upsert_organization("Empty Co")
        await repo.upsert_user(UserUpsert(remote_id="1", email="a@acme.com", organization_id=acme.id))
        await repo.upsert_user(UserUpsert(remote_id="2", email="b@acme.com", organization_id=acme.id))

        counts = {o.name: o.user_count for o in await repo.list_organizations()}
        assert counts == {"Acme": 2, "Empty Co": 0}

    async def test_get_organization_with_count(self, repo):
        acme = await repo.upsert_organization("Acme")
        await repo.upsert_user(UserUpsert(remote_id="1", email="a@acme.com", organization_id=acme.id))

        found = await repo.get_organization(acme.id)

        assert found is not None
        assert (found.name, found.user_count) == ("Acme", 1)
        assert await repo.get_organization(acme.id + 100) is None

    async def test_organization_users_are_not_capped(self, repo):
        acme = await repo.upsert_organization("Acme")
        for index in range(120):
            await repo.upsert_user(
                UserUpsert(
                    remote_id=str(index),
                    first_name=f"U{index:03d}",
                    email=f"u{index}@acme.com",
                    organization_id=acme.id,
                )
            )
        await repo.upsert_user(UserUpsert(remote_id="other", email="o@else.com"))

        users = await repo.list_organization_users(acme.id)

        assert len(users) == 120
        assert users[0].first_name == "U000"
        assert {u.organization_name for u in users} == {"Acme"}


# ── Users ──────────────────────────────────────────────────────────────────


class TestUsers:
    async def test_insert_then_update_keeps_one_row(self, repo):
        created = await repo.upsert_user(
            UserUpsert(remote_id="1", first_name="Ada", last_name="L", email="ada@example.com")
        )
        updated = await repo.upsert_user(
            UserUpsert(remote_id="1", first_name="Augusta", last_name="L", email="ada@example.com")
        )

        assert updated.id == created.id
        assert updated.first_name == "Augusta"
        page = await repo.list_users()
        assert page.total == 1

    async def test_identical_upsert_is_a_no_op(self, repo):
        data = UserUpsert(remote_id="1", first_name="Ada", last_name="L", email="ada@example.com")
        first = await repo.upsert_user(data)
        second = await repo.upsert_user(data)

        assert second.id == first.id
        assert second.updated_at == first.updated_at
        assert second.model_dump() == first.model_dump()

    async def test_upsert_returns_organization_name(self, repo):
        org = await repo.upsert_organization("Acme")
        user = await repo.upsert_user(
            UserUpsert(remote_id="1", email="a@acme.com", organization_id=org.id)
        )
        assert user.organization_name == "Acme"

    async def test_duplicate_email_for_other_remote_id_is_rejected(self, repo):
        await repo.upsert_user(UserUpsert(remote_id="1", email="x@y.com"))
        with pytest.raises(EmailTakenError):
            await repo.upsert_user(UserUpsert(remote_id="2", email="x@y.com"))

        assert (await repo.find_user_by_email("x@y.com")).remote_id == "1"
        assert await repo.find_user_by_remote_id("2") is None

    async def test_delete_existing_and_absent(self, repo):
        await repo.upsert_user(UserUpsert(remote_id="1", email="x@y.com"))

        assert await repo.delete_user("1") is True
        assert await repo.delete_user("1") is False
        assert await repo.find_user_by_remote_id("1") is None

    async def test_find_by_email_and_remote_id(self, repo):
        await repo.upsert_user(UserUpsert(remote_id="7", email="seven@example.com"))

        by_email = await repo.find_user_by_email("seven@example.com")
        by_remote = await repo.find_user_by_remote_id("7")
        assert by_email is not None and by_remote is not None
        assert by_email.id == by_remote.id
        assert await repo.find_user_by_email("nobody@example.com") is None

    async def test_list_users_paginates_and_searches(self, repo):
        names = ["Carol", "alice", "Bob", "Dave", "Erin"]
        for index, name in enumerate(names):
            await repo.upsert_user(
                UserUpsert(remote_id=str(index), first_name=name, email=f"{name.lower()}@example.com")
            )

        page = await repo.list_users(page=2, limit=2)
        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.users) == 2

        found = await repo.list_users(search="ALI")
        assert [u.first_name for u in found.users] == ["alice"]

    async def test_list_users_by_organization(self, repo):
        acme = await repo.upsert_organization("Acme")
        await repo.upsert_user(UserUpsert(remote_id="1", email="a@acme.com", organization_id=acme.id))
        await repo.upsert_user(UserUpsert(remote_id="2", email="b@other.com"))

        page = await repo.list_users(organization_id=acme.id)
        assert [u.remote_id for u in page.users] == ["1"]


# ── End to End ─────────────────────────────────────────────────────────────


class TestReconciliationOnDatabase:
    async def test_email_collision_keeps_first_owner(self, repo):
        resolver = IdentityResolver(repo)

        first = await repo.upsert_user(await resolver.resolve(_contact("1", "x@y.com")))
        second = await repo.upsert_user(await resolver.resolve(_contact("2", "x@y.com")))

        assert second.email == "x+2@y.com"
        owner = await repo.find_user_by_remote_id("1")
        assert owner == first

    async def test_full_sync_twice_is_stable(self, repo, source_factory):
        contacts = [_contact(str(i), f"u{i}@example.com", company="Acme") for i in range(1, 6)]
        engine = ReconciliationEngine(
            client=source_factory(contacts),
            resolver=IdentityResolver(repo),
            store=repo,
            concurrency=5,
        )

        first = await engine.full_sync()
        before = await repo.list_users(limit=100)
        second = await engine.full_sync()
        after = await repo.list_users(limit=100)

        assert first.succeeded == second.succeeded == 5
        assert [u.model_dump() for u in after.users] == [u.model_dump() for u in before.users]
        assert len(await repo.list_organizations()) == 1

    async def test_shared_email_in_one_batch_is_disambiguated(self, repo, source_factory):
        contacts = [_contact("1", "x@y.com"), _contact("2", "x@y.com")]
        engine = ReconciliationEngine(
            client=source_factory(contacts),
            resolver=IdentityResolver(repo),
            store=repo,
            concurrency=10,
        )

        report = await engine.full_sync()

        assert (report.total, report.succeeded, report.failed) == (2, 2, 0)
        assert (await repo.find_user_by_remote_id("1")).email == "x@y.com"
        assert (await repo.find_user_by_remote_id("2")).email == "x+2@y.com"

    async def test_timestamped_email_survives_resync(self, repo):
        ticks = iter([1000.0, 2000.0])
        resolver = IdentityResolver(repo, clock=lambda: next(ticks))
        await repo.upsert_user(UserUpsert(remote_id="1", email="x@y.com"))
        await repo.upsert_user(UserUpsert(remote_id="3", email="x+2@y.com"))
        contact = _contact("2", "x@y.com")

        first = await repo.upsert_user(await resolver.resolve(contact))
        second = await repo.upsert_user(await resolver.resolve(contact))

        assert first.email == "x+2.1000@y.com"
        assert second.updated_at == first.updated_at
        assert second.email == first.email
