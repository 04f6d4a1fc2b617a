from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.models import (
    AuditLog,
    Donation,
    DonationStatus,
    DonationTarget,
    GuardianshipDonation,
    GuardianshipStatus,
    SubscriptionScope,
    SubscriptionStatus,
)
from app.services import donations as donation_service
from app.services import guardianships as guardianship_service
from app.services import subscriptions as subscription_service
from app.utils.errors import InvalidRequestError, NotFoundError
from app.utils.time import ensure_utc

T0 = datetime(2026, 4, 10, 8, 0, tzinfo=UTC)


@pytest.fixture
def guardianship(db_session, make_user, make_animal):
    user = make_user()
    return guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, now=T0)


def test_successful_guardianship_charge_activates(db_session, guardianship, payment_method):
    donation = donation_service.record_charge_success(
        db_session,
        provider="LiqPay",
        transaction_id="liq-1",
        amount=Decimal("200"),
        currency="uah",
        target_entity=DonationTarget.GUARDIANSHIP,
        target_entity_id=guardianship.id,
        user_id=guardianship.user_id,
        now=T0,
    )

    assert donation.status == DonationStatus.COMPLETED
    assert donation.currency == "UAH"
    assert donation.payment_method_id == payment_method.id
    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.ACTIVE
    links = db_session.scalars(
        select(GuardianshipDonation).where(GuardianshipDonation.guardianship_id == guardianship.id)
    ).all()
    assert [link.donation_id for link in links] == [donation.id]
    actions = db_session.scalars(
        select(AuditLog.action).where(AuditLog.entity == "Donation", AuditLog.entity_id == donation.id)
    ).all()
    assert actions == ["DONATION_COMPLETED"]


def test_failed_charge_moves_active_guardianship_to_grace(db_session, guardianship, payment_method):
    donation_service.record_charge_success(
        db_session,
        provider="LiqPay",
        transaction_id="liq-ok",
        amount=Decimal("200"),
        currency="UAH",
        target_entity=DonationTarget.GUARDIANSHIP,
        target_entity_id=guardianship.id,
        user_id=guardianship.user_id,
        now=T0,
    )
    failed_at = T0 + timedelta(days=31)

    failed = donation_service.record_charge_failed(
        db_session,
        provider="LiqPay",
        transaction_id="liq-ko",
        amount=Decimal("200"),
        currency="UAH",
        target_entity=DonationTarget.GUARDIANSHIP,
        target_entity_id=guardianship.id,
        user_id=guardianship.user_id,
        now=failed_at,
    )

    assert failed.status == DonationStatus.FAILED
    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT
    assert ensure_utc(guardianship.grace_until) == failed_at + timedelta(days=3)


def test_failed_charge_leaves_pending_guardianship_alone(db_session, guardianship, payment_method):
    donation_service.record_charge_failed(
        db_session,
        provider="LiqPay",
        transaction_id="liq-ko",
        amount=Decimal("200"),
        currency="UAH",
        target_entity=DonationTarget.GUARDIANSHIP,
        target_entity_id=guardianship.id,
        now=T0 + timedelta(days=1),
    )

    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT
    assert ensure_utc(guardianship.grace_until) == T0 + timedelta(days=3)


def test_failed_charge_for_unknown_guardianship_is_recorded(db_session, payment_method):
    donation = donation_service.record_charge_failed(
        db_session,
        provider="LiqPay",
        transaction_id="liq-ghost",
        amount=Decimal("10"),
        currency="UAH",
        target_entity=DonationTarget.GUARDIANSHIP,
        target_entity_id=999_999,
        now=T0,
    )

    assert donation.id is not None
    assert donation.status == DonationStatus.FAILED


def test_recurring_charge_registers_and_advances_subscription(db_session, make_user, payment_method):
    user = make_user()
    first = T0
    second = T0 + timedelta(days=30)

    for when, tx in ((first, "liq-rec-1"), (second, "liq-rec-2")):
        donation_service.record_charge_success(
            db_session,
            provider="LiqPay",
            transaction_id=tx,
            amount=Decimal("100"),
            currency="UAH",
            target_entity=DonationTarget.AID_REQUEST,
            target_entity_id=12,
            recurring=True,
            user_id=user.id,
            now=when,
        )

    subscriptions = subscription_service.list_user_subscriptions(db_session, user.id)
    assert len(subscriptions) == 1
    subscription = subscriptions[0]
    assert subscription.scope_type == SubscriptionScope.AID_REQUEST
    assert subscription.scope_id == 12
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.provider_subscription_id == "liq-rec-1"
    assert ensure_utc(subscription.next_charge_at) == second + timedelta(days=30)


def test_retried_callbacks_append_rows(db_session, make_user, payment_method):
    user = make_user()
    for _ in range(2):
        donation_service.record_charge_success(
            db_session,
            provider="LiqPay",
            transaction_id="liq-dup",
            amount=Decimal("15"),
            currency="UAH",
            user_id=user.id,
            now=T0,
        )

    count = db_session.scalar(select(func.count(Donation.id)).where(Donation.transaction_id == "liq-dup"))
    assert count == 2


def test_charge_validation(db_session, payment_method):
    with pytest.raises(InvalidRequestError):
        donation_service.record_charge_success(
            db_session, provider="LiqPay", transaction_id="liq-zero", amount=Decimal("0"), currency="UAH"
        )
    with pytest.raises(NotFoundError):
        donation_service.record_charge_success(
            db_session, provider="Unknown", transaction_id="liq-x", amount=Decimal("5"), currency="UAH"
        )


def test_link_donation_is_idempotent(db_session, guardianship, payment_method):
    donation = donation_service.record_charge_success(
        db_session,
        provider="LiqPay",
        transaction_id="liq-link",
        amount=Decimal("40"),
        currency="UAH",
        user_id=guardianship.user_id,
        now=T0,
    )

    link, created = donation_service.link_donation(db_session, guardianship.id, donation.id)
    again, created_again = donation_service.link_donation(db_session, guardianship.id, donation.id)

    assert created is True
    assert created_again is False
    assert again.id == link.id

    with pytest.raises(NotFoundError):
        donation_service.link_donation(db_session, guardianship.id, 999_999)
    with pytest.raises(NotFoundError):
        donation_service.link_donation(db_session, 999_999, donation.id)


def test_listing_queries(db_session, make_user, payment_method):
    user = make_user()
    older = donation_service.record_charge_success(
        db_session,
        provider="LiqPay",
        transaction_id="liq-a",
        amount=Decimal("10"),
        currency="UAH",
        target_entity=DonationTarget.AID_REQUEST,
        target_entity_id=5,
        user_id=user.id,
        now=T0,
    )
    newer = donation_service.record_charge_failed(
        db_session,
        provider="LiqPay",
        transaction_id="liq-b",
        amount=Decimal("10"),
        currency="UAH",
        user_id=user.id,
        now=T0 + timedelta(hours=1),
    )

    assert [d.id for d in donation_service.list_user_donations(db_session, user.id)] == [newer.id, older.id]
    assert [d.id for d in donation_service.list_aid_request_donations(db_session, 5)] == [older.id]
    failed = donation_service.list_all_donations(db_session, status=DonationStatus.FAILED)
    assert newer.id in {d.id for d in failed}
    assert older.id not in {d.id for d in failed}


@pytest.mark.anyio
async def test_donation_routes(client, auth_headers, donor_headers, db_session, make_user, payment_method):
    user = make_user()
    donation = donation_service.record_charge_success(
        db_session,
        provider="LiqPay",
        transaction_id="liq-http",
        amount=Decimal("12.5"),
        currency="UAH",
        user_id=user.id,
        now=T0,
    )

    response = await client.get(f"/donations/users/{user.id}", headers=donor_headers)
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [donation.id]

    response = await client.get("/donations", headers=donor_headers)
    assert response.status_code == 403

    response = await client.get("/donations", params={"status": "COMPLETED", "limit": 500}, headers=auth_headers)
    assert response.status_code == 200
    assert donation.id in {item["id"] for item in response.json()}
