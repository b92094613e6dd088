import asyncio

import pytest
from sqlalchemy import func, select

from lotoemploi.model.db import User
from lotoemploi.model.users import UserStore, make_unique_key


def test_unique_key_normalizes_identity():
    a = make_unique_key("Aïssatou", "Ndiaye", "77 123 45 67", "1 234 567")
    b = make_unique_key(" AISSATOU ", "ndiaye", "771234567", "1234567")
    assert a == b == "aissatou|ndiaye|771234567|1234567"


def test_unique_key_distinguishes_people():
    assert make_unique_key("Awa", "Diop", "770000000", "1") != \
        make_unique_key("Awa", "Diop", "770000000", "2")


@pytest.mark.anyio
async def test_find_or_create_is_idempotent(sql):
    async with sql.SessionAsync() as db:
        users = UserStore(db=db, gated=sql.gated)
        first, created = await users.find_or_create(
            name="Élodie", surname="Faye", phone="+221 77 000 00 01",
            id_number="SN-42", email="elodie@example.com",
        )
        assert created is True
        again, created = await users.find_or_create(
            name="elodie", surname="FAYE ", phone="+22177 0000001",
            id_number="sn-42", email="other@example.com",
        )
        assert created is False
        assert again.id == first.id
        assert again.email == "elodie@example.com"

        count = (await db.execute(select(func.count(User.id)))).scalar_one()
        assert count == 1


@pytest.mark.anyio
async def test_concurrent_registrations_create_one_row(sql):
    async def register():
        async with sql.SessionAsync() as db:
            users = UserStore(db=db, gated=sql.gated)
            user, _ = await users.find_or_create(
                name="Moussa", surname="Sow", phone="780000000",
                id_number="99",
            )
            return user.id

    ids = await asyncio.gather(*(register() for _ in range(4)))
    assert len(set(ids)) == 1

    async with sql.SessionAsync() as db:
        count = (await db.execute(select(func.count(User.id)))).scalar_one()
    assert count == 1
