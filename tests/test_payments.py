import pytest

from lotoemploi.model.payments import (
    IllegalTransition, PaymentStatus, PaymentStore, can_transition,
    check_transition,
)
from lotoemploi.model.users import UserStore

P = PaymentStatus


@pytest.mark.parametrize("current, target", [
    (P.PENDING, P.ISSUING),
    (P.ISSUING, P.PAID),
    (P.ISSUING, P.INTEGRITY_FAILED),
])
def test_legal_transitions(current, target):
    assert can_transition(current, target)
    check_transition(current, target)


@pytest.mark.parametrize("current, target", [
    (P.PAID, P.PENDING),
    (P.PAID, P.ISSUING),
    (P.PAID, P.PAID),
    (P.PENDING, P.PAID),
    (P.PENDING, P.PENDING),
    (P.ISSUING, P.PENDING),
    (P.INTEGRITY_FAILED, P.PAID),
    (P.INTEGRITY_FAILED, P.PENDING),
])
def test_illegal_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(IllegalTransition):
        check_transition(current, target)


async def _user(sql):
    async with sql.SessionAsync() as db:
        user, _ = await UserStore(db=db, gated=sql.gated).find_or_create(
            name="Fatou", surname="Ba", phone="770000002", id_number="7",
        )
    return user


@pytest.mark.anyio
async def test_create_payment_is_pending_with_token(sql):
    user = await _user(sql)
    async with sql.SessionAsync() as db:
        payments = PaymentStore(db=db, gated=sql.gated)
        p = await payments.create(user_id=user.id, amount=3000,
                                  provider="wave-senegal", numtickets=3)
        assert p.status == "pending"
        assert p.tickets == []
        assert p.invoice_token is None
        ms, uid, suffix = p.payment_token.split("-")
        assert ms.isdigit() and uid == user.id and len(suffix) == 8

        other = await payments.create(user_id=user.id, amount=1000,
                                      provider="wave-senegal", numtickets=1)
        assert other.payment_token != p.payment_token

        await payments.set_invoice_token(p.id, "inv_1")
        found = await payments.get_by_invoice("inv_1")
        assert found.id == p.id
        assert found.user.phone == "770000002"
        assert (await payments.get_by_token(p.payment_token)).id == p.id
        assert await payments.get_by_token("nope") is None


@pytest.mark.anyio
async def test_conditional_transition_has_one_winner(sql):
    user = await _user(sql)
    async with sql.SessionAsync() as db:
        payments = PaymentStore(db=db, gated=sql.gated)
        p = await payments.create(user_id=user.id, amount=1000,
                                  provider="orange-money-senegal",
                                  numtickets=1)
        assert await payments.transition(p.id, P.PENDING, P.ISSUING)
        assert not await payments.transition(p.id, P.PENDING, P.ISSUING)

        assert await payments.transition(p.id, P.ISSUING, P.PAID,
                                         tickets=["A001"], paid_at=1.0)
        paid = await payments.get_by_token(p.payment_token)
        assert paid.status == "paid"
        assert paid.tickets == ["A001"]

        with pytest.raises(IllegalTransition):
            await payments.transition(p.id, P.PAID, P.PENDING)

        assert [x.id for x in await payments.list_by_status(P.PAID)] == [p.id]
        assert await payments.list_by_status(P.PENDING) == []
