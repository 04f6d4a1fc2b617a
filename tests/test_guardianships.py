"""Guardianship lifecycle tests."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.sql.dml import Update

from app.models import (
    AuditLog,
    Donation,
    DonationStatus,
    DonationTarget,
    Guardianship,
    GuardianshipDonation,
    GuardianshipStatus,
    SubscriptionStatus,
)
from app.services import guardianships as guardianship_service
from app.services import subscriptions as subscription_service
from app.utils.errors import (
    ConflictError,
    ExternalProviderError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from app.utils.time import ensure_utc

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _donation(db_session, payment_method, user, *, status=DonationStatus.COMPLETED, guardianship_id=None):
    donation = Donation(
        user_id=user.id,
        payment_method_id=payment_method.id,
        amount=Decimal("250.00"),
        currency="UAH",
        status=status,
        transaction_id=f"tx-{user.id}-{status.value}",
        target_entity=DonationTarget.GUARDIANSHIP if guardianship_id else None,
        target_entity_id=guardianship_id,
        donation_date=T0,
    )
    db_session.add(donation)
    db_session.flush()
    return donation


def _link_count(db_session, guardianship_id: int) -> int:
    return db_session.scalar(
        select(func.count(GuardianshipDonation.id)).where(GuardianshipDonation.guardianship_id == guardianship_id)
    )


@pytest.fixture
def pair(make_user, make_animal):
    return make_user(), make_animal()


def test_create_starts_in_requires_payment_with_grace_deadline(db_session, pair):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, grace_days=3, now=T0)

    assert guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT
    assert ensure_utc(guardianship.start_date) == T0
    assert ensure_utc(guardianship.grace_until) == T0 + timedelta(days=3)
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.entity == "Guardianship", AuditLog.entity_id == guardianship.id)
    ).all()
    assert [entry.action for entry in audit] == ["GUARDIANSHIP_CREATED"]


def test_create_uses_configured_default_grace(db_session, pair):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)

    assert ensure_utc(guardianship.grace_until) == T0 + timedelta(days=3)


def test_create_rejects_negative_grace(db_session, pair):
    user, animal = pair
    with pytest.raises(InvalidRequestError):
        guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, grace_days=-1, now=T0)


def test_create_requires_existing_user_and_animal(db_session, make_user, make_animal):
    user = make_user()
    animal = make_animal()
    with pytest.raises(NotFoundError) as exc:
        guardianship_service.create(db_session, user_id=999_999, animal_id=animal.id, now=T0)
    assert exc.value.code == "USER_NOT_FOUND"
    with pytest.raises(NotFoundError) as exc:
        guardianship_service.create(db_session, user_id=user.id, animal_id=999_999, now=T0)
    assert exc.value.code == "ANIMAL_NOT_FOUND"


def test_second_guardianship_conflicts_while_first_is_active(db_session, pair, payment_method):
    user, animal = pair
    first = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    donation = _donation(db_session, payment_method, user)
    guardianship_service.activate_with_first_payment(db_session, first.id, donation.id, now=T0)

    with pytest.raises(ConflictError) as exc:
        guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    assert exc.value.status_code == 409

    active = db_session.scalar(
        select(func.count(Guardianship.id)).where(
            Guardianship.user_id == user.id,
            Guardianship.animal_id == animal.id,
            Guardianship.status == GuardianshipStatus.ACTIVE,
        )
    )
    assert active == 1


def test_activation_is_idempotent_for_the_same_donation(db_session, pair, payment_method):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    donation = _donation(db_session, payment_method, user)

    guardianship_service.activate_with_first_payment(db_session, guardianship.id, donation.id, now=T0)
    again = guardianship_service.activate_with_first_payment(db_session, guardianship.id, donation.id, now=T0)

    assert again.status == GuardianshipStatus.ACTIVE
    assert again.grace_until is None
    assert _link_count(db_session, guardianship.id) == 1
    db_session.refresh(animal)
    assert animal.is_under_care is True


def test_lapse_and_reactivation_keeps_every_link(db_session, pair, payment_method):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    first = _donation(db_session, payment_method, user)
    guardianship_service.activate_with_first_payment(db_session, guardianship.id, first.id, now=T0)

    later = T0 + timedelta(days=30)
    lapsed = guardianship_service.require_payment(db_session, guardianship.id, grace_days=5, now=later)
    assert lapsed.status == GuardianshipStatus.REQUIRES_PAYMENT
    assert ensure_utc(lapsed.grace_until) == later + timedelta(days=5)

    second = Donation(
        user_id=user.id,
        payment_method_id=payment_method.id,
        amount=Decimal("250.00"),
        currency="UAH",
        status=DonationStatus.COMPLETED,
        transaction_id="tx-renewal",
        donation_date=later,
    )
    db_session.add(second)
    db_session.flush()
    reactivated = guardianship_service.activate_with_first_payment(db_session, guardianship.id, second.id, now=later)

    assert reactivated.status == GuardianshipStatus.ACTIVE
    assert reactivated.grace_until is None
    detail = guardianship_service.get_guardianship(db_session, guardianship.id)
    assert sorted(link.donation_id for link in detail.donations) == sorted([first.id, second.id])


def test_activation_rejects_unfinished_donation(db_session, pair, payment_method):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    failed = _donation(db_session, payment_method, user, status=DonationStatus.FAILED)

    with pytest.raises(InvalidStateError) as exc:
        guardianship_service.activate_with_first_payment(db_session, guardianship.id, failed.id, now=T0)
    assert exc.value.code == "DONATION_NOT_COMPLETED"
    assert _link_count(db_session, guardianship.id) == 0


def test_activation_conflicts_with_another_active_guardianship(db_session, pair, payment_method):
    user, animal = pair
    first = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    second = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    donation = _donation(db_session, payment_method, user)
    guardianship_service.activate_with_first_payment(db_session, first.id, donation.id, now=T0)

    with pytest.raises(ConflictError):
        guardianship_service.activate_with_first_payment(db_session, second.id, donation.id, now=T0)
    db_session.refresh(second)
    assert second.status == GuardianshipStatus.REQUIRES_PAYMENT


def test_missing_guardianship_raises_not_found(db_session):
    with pytest.raises(NotFoundError):
        guardianship_service.activate_with_first_payment(db_session, 999_999, 1, now=T0)
    with pytest.raises(NotFoundError):
        guardianship_service.require_payment(db_session, 999_999, now=T0)
    with pytest.raises(NotFoundError):
        guardianship_service.complete(db_session, 999_999, now=T0)


def test_completed_guardianship_is_terminal(db_session, pair, payment_method):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    guardianship_service.complete(db_session, guardianship.id, now=T0)
    donation = _donation(db_session, payment_method, user)

    with pytest.raises(InvalidStateError):
        guardianship_service.activate_with_first_payment(db_session, guardianship.id, donation.id, now=T0)
    with pytest.raises(InvalidStateError):
        guardianship_service.require_payment(db_session, guardianship.id, now=T0)

    again = guardianship_service.complete(db_session, guardianship.id, now=T0)
    assert again.status == GuardianshipStatus.COMPLETED
    completions = db_session.scalar(
        select(func.count(AuditLog.id)).where(
            AuditLog.entity == "Guardianship",
            AuditLog.entity_id == guardianship.id,
            AuditLog.action == "GUARDIANSHIP_COMPLETED",
        )
    )
    assert completions == 1


def test_complete_releases_animal(db_session, pair, payment_method):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    donation = _donation(db_session, payment_method, user)
    guardianship_service.activate_with_first_payment(db_session, guardianship.id, donation.id, now=T0)

    completed = guardianship_service.complete(db_session, guardianship.id, now=T0)

    assert completed.status == GuardianshipStatus.COMPLETED
    assert completed.grace_until is None
    db_session.refresh(animal)
    assert animal.is_under_care is False


def test_complete_with_subscription_cancellation(db_session, pair, payment_method, gateway):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    subscription = subscription_service.create_for_guardianship(
        db_session, gateway, user_id=user.id, guardianship_id=guardianship.id, amount=Decimal("300"), now=T0
    )

    guardianship_service.complete(db_session, guardianship.id, cancel_subscription=True, gateway=gateway, now=T0)

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.CANCELED
    assert ensure_utc(subscription.canceled_at) == T0
    assert subscription.next_charge_at is None
    assert gateway.canceled == [subscription.provider_subscription_id]


def test_complete_keeps_guardianship_when_provider_cancel_fails(
    db_session, pair, payment_method, gateway, monkeypatch
):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    guardianship_service.activate_with_first_payment(
        db_session, guardianship.id, _donation(db_session, payment_method, user).id, now=T0
    )
    subscription = subscription_service.create_for_guardianship(
        db_session, gateway, user_id=user.id, guardianship_id=guardianship.id, amount=Decimal("300"), now=T0
    )

    def _boom(provider_subscription_id: str) -> None:
        raise ExternalProviderError("PAYMENT_PROVIDER_ERROR", "provider down")

    monkeypatch.setattr(gateway, "cancel_recurring_charge", _boom)

    with pytest.raises(ExternalProviderError):
        guardianship_service.complete(db_session, guardianship.id, cancel_subscription=True, gateway=gateway, now=T0)

    db_session.refresh(guardianship)
    db_session.refresh(subscription)
    db_session.refresh(animal)
    assert guardianship.status == GuardianshipStatus.ACTIVE
    assert animal.is_under_care is True
    assert subscription.status == SubscriptionStatus.ACTIVE
    completed = db_session.scalar(
        select(func.count(AuditLog.id)).where(
            AuditLog.action == "GUARDIANSHIP_COMPLETED",
            AuditLog.entity_id == guardianship.id,
        )
    )
    assert completed == 0


def test_complete_without_subscription_is_not_an_error(db_session, pair, gateway):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)

    completed = guardianship_service.complete(
        db_session, guardianship.id, cancel_subscription=True, gateway=gateway, now=T0
    )

    assert completed.status == GuardianshipStatus.COMPLETED
    assert gateway.canceled == []


def test_auto_complete_respects_grace_deadline(db_session, pair):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, grace_days=3, now=T0)

    assert guardianship_service.auto_complete_expired(db_session, T0 + timedelta(days=1)) == 0
    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT

    assert guardianship_service.auto_complete_expired(db_session, T0 + timedelta(days=4)) == 1
    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.COMPLETED
    assert guardianship.grace_until is None

    assert guardianship_service.auto_complete_expired(db_session, T0 + timedelta(days=4)) == 0


def test_auto_complete_skips_activated_guardianships(db_session, make_user, make_animal, payment_method):
    user = make_user()
    paid = guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, now=T0)
    unpaid = guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, now=T0)
    donation = _donation(db_session, payment_method, user)
    guardianship_service.activate_with_first_payment(db_session, paid.id, donation.id, now=T0)

    assert guardianship_service.auto_complete_expired(db_session, T0 + timedelta(days=10)) == 1

    db_session.refresh(paid)
    db_session.refresh(unpaid)
    assert paid.status == GuardianshipStatus.ACTIVE
    assert unpaid.status == GuardianshipStatus.COMPLETED


def test_auto_complete_skips_row_activated_after_selection(db_session, make_user, make_animal, monkeypatch):
    user = make_user()
    raced = guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, now=T0)
    unpaid = guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, now=T0)
    original_execute = db_session.execute
    activated = []

    def _execute_after_concurrent_payment(statement, *args, **kwargs):
        # A payment lands on the first candidate between the select and its update
        if isinstance(statement, Update) and not activated:
            activated.append(raced.id)
            original_execute(
                update(Guardianship)
                .where(Guardianship.id == raced.id)
                .values(status=GuardianshipStatus.ACTIVE, grace_until=None)
            )
        return original_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", _execute_after_concurrent_payment)

    assert guardianship_service.auto_complete_expired(db_session, T0 + timedelta(days=10)) == 1

    db_session.refresh(raced)
    db_session.refresh(unpaid)
    assert activated == [raced.id]
    assert raced.status == GuardianshipStatus.ACTIVE
    assert unpaid.status == GuardianshipStatus.COMPLETED
    expired = db_session.scalars(select(AuditLog.entity_id).where(AuditLog.action == "GUARDIANSHIP_EXPIRED")).all()
    assert expired == [unpaid.id]


def test_queries_by_user_animal_and_grace_window(db_session, make_user, make_animal):
    user = make_user()
    animal = make_animal()
    soon = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, grace_days=1, now=T0)
    later = guardianship_service.create(
        db_session, user_id=user.id, animal_id=make_animal().id, grace_days=10, now=T0
    )
    guardianship_service.complete(db_session, later.id, now=T0)

    assert {g.id for g in guardianship_service.list_by_user(db_session, user.id)} == {soon.id, later.id}
    assert [
        g.id
        for g in guardianship_service.list_by_user(
            db_session, user.id, status=GuardianshipStatus.COMPLETED
        )
    ] == [later.id]
    assert [g.id for g in guardianship_service.list_by_animal(db_session, animal.id)] == [soon.id]

    window = guardianship_service.list_requires_payment_within(db_session, T0, T0 + timedelta(days=2))
    assert [g.id for g in window] == [soon.id]


def test_cancel_by_provider_subscription_completes_guardianship(db_session, pair, payment_method, gateway):
    user, animal = pair
    guardianship = guardianship_service.create(db_session, user_id=user.id, animal_id=animal.id, now=T0)
    subscription = subscription_service.create_for_guardianship(
        db_session, gateway, user_id=user.id, guardianship_id=guardianship.id, amount=Decimal("100"), now=T0
    )

    result = guardianship_service.cancel_by_provider_subscription(
        db_session, gateway, subscription.provider_subscription_id, now=T0
    )

    assert result.status == SubscriptionStatus.CANCELED
    db_session.refresh(guardianship)
    assert guardianship.status == GuardianshipStatus.COMPLETED


@pytest.mark.anyio
async def test_guardianship_http_flow(client, auth_headers, db_session, pair, payment_method):
    user, animal = pair
    db_session.commit()

    response = await client.post(
        "/guardianships",
        json={"user_id": user.id, "animal_id": animal.id, "grace_days": 2},
        headers=auth_headers,
    )
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "REQUIRES_PAYMENT"

    donation = _donation(db_session, payment_method, user)
    db_session.commit()
    response = await client.post(
        f"/guardianships/{created['id']}/activate",
        json={"donation_id": donation.id},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ACTIVE"

    response = await client.post(
        "/guardianships",
        json={"user_id": user.id, "animal_id": animal.id},
        headers=auth_headers,
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "GUARDIANSHIP_ALREADY_ACTIVE"

    response = await client.get(f"/guardianships/{created['id']}", headers=auth_headers)
    assert response.status_code == 200
    assert [link["donation_id"] for link in response.json()["donations"]] == [donation.id]

    response = await client.get("/guardianships", params={"user_id": user.id}, headers=auth_headers)
    assert [item["id"] for item in response.json()] == [created["id"]]


@pytest.mark.anyio
async def test_guardianship_http_errors(client, auth_headers):
    response = await client.get("/guardianships/999999", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "GUARDIANSHIP_NOT_FOUND"

    response = await client.get("/guardianships", headers=auth_headers)
    assert response.status_code == 400

    response = await client.post("/guardianships", json={"user_id": 1, "animal_id": 1})
    assert response.status_code == 401


@pytest.mark.anyio
async def test_requires_payment_window_accepts_offset_bounds(client, auth_headers, db_session, make_user, make_animal):
    user = make_user()
    due = guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, grace_days=1, now=T0)
    guardianship_service.create(db_session, user_id=user.id, animal_id=make_animal().id, grace_days=5, now=T0)
    db_session.commit()

    # grace_until is 2026-03-02T12:00Z, i.e. 15:00 at +03:00
    response = await client.get(
        "/guardianships/requires-payment",
        params={"start": "2026-03-02T14:30:00+03:00", "end": "2026-03-02T15:30:00+03:00"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [due.id]

    response = await client.get(
        "/guardianships/requires-payment",
        params={"start": "2026-03-02T15:30:00+03:00", "end": "2026-03-02T16:30:00+03:00"},
        headers=auth_headers,
    )
    assert response.json() == []
