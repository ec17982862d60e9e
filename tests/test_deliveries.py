"""Tests for the delivery lifecycle and the deferred points award.

Test Categories:
1. Transition table
2. Creation: validation, concurrent claims on one donation or one request
3. Full pickup/delivery path with cascades to donation and request
4. Receipt confirmation: exactly-once points award
5. Cancellation and failure cascades
6. Location updates, issue reports, reads
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from tests.factories import actor_for, create_delivery, create_donation, create_request, create_user
from wastewarden.db.models import Delivery, Donation, Request, User
from wastewarden.db.models.base import (
    DeliveryPriority,
    DeliveryStatus,
    DonationStatus,
    FoodCondition,
    IssueType,
    RequestStatus,
    Urgency,
    UserRole,
)
from wastewarden.db.models.requests import AcceptedByNgo, Unaccepted
from wastewarden.services.deliveries import DeliveryLifecycleService


async def _bind(delivery_service, store, donor, requester, ngo, clock, *, urgency=Urgency.HIGH):
    """Seed an active donation and a pending request and bind them to ``ngo``."""
    donation = store.put(create_donation(donor.user_id, clock.now))
    request = store.put(create_request(requester.user_id, clock.now, urgency=urgency))
    result = await delivery_service.create(actor_for(ngo), donation.donation_id, request.request_id)
    assert result.success, result.error
    return result.entity.delivery_id, donation, request


async def _drive_to_in_progress(delivery_service, delivery_id, ngo):
    assert (await delivery_service.start_pickup(delivery_id, actor_for(ngo))).success
    assert (
        await delivery_service.complete_pickup(delivery_id, actor_for(ngo), FoodCondition.GOOD)
    ).success


# =============================================================================
# Transition table
# =============================================================================


class TestDeliveryTransitionTable:
    def test_failed_only_from_delivery_in_progress(self):
        assert DeliveryLifecycleService.sources_of(DeliveryStatus.FAILED) == {
            DeliveryStatus.DELIVERY_IN_PROGRESS
        }

    def test_every_open_status_can_be_cancelled(self, delivery_service):
        for status in (
            DeliveryStatus.ASSIGNED,
            DeliveryStatus.PICKUP_IN_PROGRESS,
            DeliveryStatus.PICKED_UP,
            DeliveryStatus.DELIVERY_IN_PROGRESS,
        ):
            assert delivery_service.is_valid_transition(status, DeliveryStatus.CANCELLED)

    def test_terminal_statuses(self, delivery_service):
        for status in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED):
            assert delivery_service.is_terminal_status(status)


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_claims_donation_and_request(
        self, delivery_service, store, donor, requester, ngo, clock, sink, dispatcher
    ):
        delivery_id, donation, request = await _bind(
            delivery_service, store, donor, requester, ngo, clock
        )

        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.status == DeliveryStatus.ASSIGNED
        assert delivery.priority == DeliveryPriority.HIGH
        assert delivery.assigned_at == clock.now
        assert delivery.estimated_completion_at == clock.now + timedelta(minutes=60)
        assert delivery.points_awarded is False
        assert delivery.requester_confirmed is False

        stored_donation = store.snapshot(Donation, donation.donation_id)
        assert stored_donation.status == DonationStatus.ASSIGNED_TO_NGO
        assert stored_donation.assigned_ngo_id == ngo.user_id
        assert stored_donation.assigned_requester_id == requester.user_id

        stored_request = store.snapshot(Request, request.request_id)
        assert stored_request.status == RequestStatus.ACCEPTED_BY_NGO
        assert stored_request.acceptance == AcceptedByNgo(ngo.user_id)
        assert stored_request.assigned_donation_id == donation.donation_id

        assert store.snapshot(User, ngo.user_id).total_deliveries == 1
        await dispatcher.drain()
        for party in (donor, requester, ngo):
            assert sink.events_for(party.user_id) == ["delivery_created"]

    @pytest.mark.parametrize(
        ("urgency", "priority"),
        [
            (Urgency.CRITICAL, DeliveryPriority.URGENT),
            (Urgency.HIGH, DeliveryPriority.HIGH),
            (Urgency.MEDIUM, DeliveryPriority.MEDIUM),
            (Urgency.LOW, DeliveryPriority.MEDIUM),
        ],
    )
    @pytest.mark.asyncio
    async def test_priority_follows_request_urgency(
        self, delivery_service, store, donor, requester, ngo, clock, urgency, priority
    ):
        delivery_id, _, _ = await _bind(
            delivery_service, store, donor, requester, ngo, clock, urgency=urgency
        )

        assert store.snapshot(Delivery, delivery_id).priority == priority

    @pytest.mark.asyncio
    async def test_unapproved_ngo_cannot_create(
        self, delivery_service, store, donor, requester, clock
    ):
        pending_ngo = store.put(create_user(UserRole.NGO, is_approved=False))
        donation = store.put(create_donation(donor.user_id, clock.now))
        request = store.put(create_request(requester.user_id, clock.now))

        result = await delivery_service.create(
            actor_for(pending_ngo), donation.donation_id, request.request_id
        )

        assert result.code == "not_approved"
        assert store.snapshot(Donation, donation.donation_id).status == DonationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_only_ngos_create(
        self, delivery_service, store, donor, donor_actor, requester, clock
    ):
        donation = store.put(create_donation(donor.user_id, clock.now))
        request = store.put(create_request(requester.user_id, clock.now))

        result = await delivery_service.create(
            donor_actor, donation.donation_id, request.request_id
        )

        assert result.code == "forbidden"

    @pytest.mark.asyncio
    async def test_missing_donation_is_invalid_reference(
        self, delivery_service, store, requester, ngo_actor, clock
    ):
        request = store.put(create_request(requester.user_id, clock.now))

        result = await delivery_service.create(ngo_actor, uuid4(), request.request_id)

        assert result.code == "invalid_reference"
        assert result.error.entity_type == "donation"

    @pytest.mark.asyncio
    async def test_closed_request_is_conflict(
        self, delivery_service, store, donor, requester, ngo_actor, clock
    ):
        donation = store.put(create_donation(donor.user_id, clock.now))
        request = store.put(
            create_request(requester.user_id, clock.now, status=RequestStatus.CANCELLED)
        )

        result = await delivery_service.create(ngo_actor, donation.donation_id, request.request_id)

        assert result.code == "conflict"
        assert result.error.entity_type == "request"
        assert result.error.current_status == "cancelled"

    @pytest.mark.asyncio
    async def test_overdue_request_expires_and_donation_stays_free(
        self, delivery_service, store, donor, requester, ngo_actor, clock
    ):
        donation = store.put(create_donation(donor.user_id, clock.now))
        request = store.put(create_request(requester.user_id, clock.now))
        clock.advance(minutes=6)

        result = await delivery_service.create(ngo_actor, donation.donation_id, request.request_id)

        assert result.code == "expired"
        assert store.snapshot(Request, request.request_id).status == RequestStatus.EXPIRED
        assert store.snapshot(Donation, donation.donation_id).status == DonationStatus.ACTIVE
        assert store.all(Delivery) == []

    @pytest.mark.asyncio
    async def test_overdue_donation_expires_and_request_stays_pending(
        self, delivery_service, store, donor, requester, ngo_actor, clock
    ):
        donation = store.put(
            create_donation(donor.user_id, clock.now, expires_in=timedelta(minutes=1))
        )
        request = store.put(create_request(requester.user_id, clock.now))
        clock.advance(minutes=2)

        result = await delivery_service.create(ngo_actor, donation.donation_id, request.request_id)

        assert result.code == "expired"
        assert result.error.entity_type == "donation"
        assert store.snapshot(Request, request.request_id).status == RequestStatus.PENDING


class TestConcurrentCreate:
    """Two NGOs racing for the same donation or the same request."""

    @pytest.mark.asyncio
    async def test_same_request_one_winner_and_loser_releases_donation(
        self, delivery_service, store, donor, other_donor, requester, ngo, other_ngo, clock
    ):
        first_donation = store.put(create_donation(donor.user_id, clock.now))
        second_donation = store.put(create_donation(other_donor.user_id, clock.now))
        request = store.put(create_request(requester.user_id, clock.now))

        results = await asyncio.gather(
            delivery_service.create(
                actor_for(ngo), first_donation.donation_id, request.request_id
            ),
            delivery_service.create(
                actor_for(other_ngo), second_donation.donation_id, request.request_id
            ),
        )

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.code == "conflict"
        assert len(store.all(Delivery)) == 1

        statuses = {
            store.snapshot(Donation, d.donation_id).status
            for d in (first_donation, second_donation)
        }
        assert statuses == {DonationStatus.ASSIGNED_TO_NGO, DonationStatus.ACTIVE}
        for donation in (first_donation, second_donation):
            stored = store.snapshot(Donation, donation.donation_id)
            if stored.status == DonationStatus.ACTIVE:
                assert stored.assigned_ngo_id is None

    @pytest.mark.asyncio
    async def test_same_donation_one_winner_and_other_request_stays_pending(
        self, delivery_service, store, donor, requester, ngo, other_ngo, clock
    ):
        donation = store.put(create_donation(donor.user_id, clock.now))
        first_request = store.put(create_request(requester.user_id, clock.now))
        second_request = store.put(create_request(requester.user_id, clock.now))

        results = await asyncio.gather(
            delivery_service.create(
                actor_for(ngo), donation.donation_id, first_request.request_id
            ),
            delivery_service.create(
                actor_for(other_ngo), donation.donation_id, second_request.request_id
            ),
        )

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.code == "conflict"
        assert loser.error.entity_type == "donation"

        statuses = sorted(
            store.snapshot(Request, r.request_id).status.value
            for r in (first_request, second_request)
        )
        assert statuses == ["accepted_by_ngo", "pending"]
        for request in (first_request, second_request):
            stored = store.snapshot(Request, request.request_id)
            if stored.status == RequestStatus.PENDING:
                assert stored.acceptance == Unaccepted()


# =============================================================================
# Pickup and delivery
# =============================================================================


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_full_delivery_and_deferred_award(
        self,
        delivery_service,
        store,
        donor,
        requester,
        requester_actor,
        ngo,
        clock,
        sink,
        dispatcher,
    ):
        """High priority, delivered in good condition within the estimate: 35 points."""
        delivery_id, donation, request = await _bind(
            delivery_service, store, donor, requester, ngo, clock
        )

        clock.advance(minutes=10)
        started = await delivery_service.start_pickup(delivery_id, actor_for(ngo))
        assert started.new_status == DeliveryStatus.PICKUP_IN_PROGRESS

        clock.advance(minutes=10)
        picked = await delivery_service.complete_pickup(
            delivery_id, actor_for(ngo), FoodCondition.GOOD, notes="Sealed containers"
        )
        assert picked.new_status == DeliveryStatus.DELIVERY_IN_PROGRESS
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.food_condition_at_pickup == FoodCondition.GOOD
        assert delivery.pickup_actual_at == clock.now
        assert delivery.pickup_confirmation["notes"] == "Sealed containers"
        assert store.snapshot(Donation, donation.donation_id).status == DonationStatus.PICKED_UP
        assert store.snapshot(Request, request.request_id).status == RequestStatus.IN_TRANSIT

        clock.advance(minutes=20)
        completed = await delivery_service.complete_delivery(
            delivery_id, actor_for(ngo), FoodCondition.GOOD
        )
        assert completed.success
        assert completed.data["points_earned"] == 35
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.actual_completion_at == clock.now
        assert delivery.points_earned == 35
        assert delivery.points_awarded is False
        assert store.snapshot(Donation, donation.donation_id).status == DonationStatus.DELIVERED
        assert store.snapshot(Request, request.request_id).status == RequestStatus.DELIVERED
        # Nothing is credited until the requester confirms
        assert store.snapshot(User, ngo.user_id).points == 0

        confirmed = await delivery_service.confirm_receipt(delivery_id, requester_actor)
        assert confirmed.success
        assert confirmed.data == {"already_confirmed": False, "points_awarded": 35}
        assert store.snapshot(User, ngo.user_id).points == 35
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.requester_confirmed is True
        assert delivery.requester_confirmed_at == clock.now
        assert delivery.points_awarded is True

        await dispatcher.drain()
        assert sink.events_for(ngo.user_id)[-1] == "receipt_confirmed"
        assert "delivery_started" in sink.events_for(requester.user_id)
        assert "pickup_completed" in sink.events_for(donor.user_id)

    @pytest.mark.asyncio
    async def test_late_delivery_loses_on_time_bonus(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)
        clock.advance(minutes=61)

        result = await delivery_service.complete_delivery(
            delivery_id, actor_for(ngo), FoodCondition.GOOD
        )

        assert result.data["points_earned"] == 25

    @pytest.mark.asyncio
    async def test_reported_issue_reduces_points(
        self, delivery_service, store, donor, requester, requester_actor, ngo, clock
    ):
        delivery_id, _, _ = await _bind(
            delivery_service, store, donor, requester, ngo, clock, urgency=Urgency.CRITICAL
        )
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)
        await delivery_service.report_issue(
            delivery_id, requester_actor, IssueType.DELIVERY_DELAY, "Driver took a detour"
        )

        result = await delivery_service.complete_delivery(
            delivery_id, actor_for(ngo), FoodCondition.EXCELLENT
        )

        assert result.data["points_earned"] == 43

    @pytest.mark.asyncio
    async def test_issues_after_completion_do_not_change_points(
        self, delivery_service, store, donor, requester, requester_actor, ngo, clock
    ):
        """Points are fixed at completion; later issues are logged but cost nothing."""
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)
        completed = await delivery_service.complete_delivery(
            delivery_id, actor_for(ngo), FoodCondition.GOOD
        )
        assert completed.data["points_earned"] == 35

        clock.advance(minutes=5)
        first = await delivery_service.report_issue(
            delivery_id, requester_actor, IssueType.FOOD_QUALITY, "Rice was cold"
        )
        clock.advance(minutes=5)
        second = await delivery_service.report_issue(
            delivery_id, requester_actor, IssueType.OTHER, "Missing one container"
        )

        assert first.success
        assert second.success
        assert second.new_status == DeliveryStatus.DELIVERED
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.points_earned == 35
        assert [issue["type"] for issue in delivery.issues] == ["food_quality", "other"]
        assert delivery.issues[0]["description"] == "Rice was cold"
        assert delivery.issues[0]["reported_at"] == (clock.now - timedelta(minutes=5)).isoformat()

        confirmed = await delivery_service.confirm_receipt(delivery_id, requester_actor)

        assert confirmed.data["points_awarded"] == 35
        assert store.snapshot(User, ngo.user_id).points == 35
        assert len(store.snapshot(Delivery, delivery_id).issues) == 2

    @pytest.mark.asyncio
    async def test_pickup_before_start_is_conflict(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.complete_pickup(
            delivery_id, actor_for(ngo), FoodCondition.GOOD
        )

        assert result.code == "conflict"
        assert result.error.current_status == "assigned"

    @pytest.mark.asyncio
    async def test_complete_delivery_twice_is_conflict(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)
        await delivery_service.complete_delivery(delivery_id, actor_for(ngo), FoodCondition.GOOD)

        result = await delivery_service.complete_delivery(
            delivery_id, actor_for(ngo), FoodCondition.EXCELLENT
        )

        assert result.code == "conflict"
        assert store.snapshot(Delivery, delivery_id).points_earned == 35

    @pytest.mark.asyncio
    async def test_other_ngo_cannot_drive_delivery(
        self, delivery_service, store, donor, requester, ngo, other_ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.start_pickup(delivery_id, actor_for(other_ngo))

        assert result.code == "forbidden"
        assert store.snapshot(Delivery, delivery_id).status == DeliveryStatus.ASSIGNED


# =============================================================================
# Receipt confirmation
# =============================================================================


class TestConfirmReceipt:
    @pytest.fixture
    def delivered(self, store, donor, requester, ngo, clock):
        donation = store.put(
            create_donation(donor.user_id, clock.now, status=DonationStatus.DELIVERED)
        )
        request = store.put(
            create_request(requester.user_id, clock.now, status=RequestStatus.DELIVERED)
        )
        return store.put(
            create_delivery(
                ngo.user_id,
                donation,
                request,
                clock.now,
                status=DeliveryStatus.DELIVERED,
                points_earned=30,
            )
        )

    @pytest.mark.asyncio
    async def test_second_confirmation_awards_nothing(
        self, delivery_service, store, delivered, requester_actor, ngo
    ):
        first = await delivery_service.confirm_receipt(delivered.delivery_id, requester_actor)
        second = await delivery_service.confirm_receipt(delivered.delivery_id, requester_actor)

        assert first.data["points_awarded"] == 30
        assert second.success
        assert second.data == {"already_confirmed": True, "points_awarded": 0}
        assert store.snapshot(User, ngo.user_id).points == 30

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_award_once(
        self, delivery_service, store, delivered, requester_actor, ngo, sink, dispatcher
    ):
        results = await asyncio.gather(
            *(
                delivery_service.confirm_receipt(delivered.delivery_id, requester_actor)
                for _ in range(3)
            )
        )

        assert all(r.success for r in results)
        assert sorted(r.data["points_awarded"] for r in results) == [0, 0, 30]
        assert store.snapshot(User, ngo.user_id).points == 30
        await dispatcher.drain()
        assert sink.events_for(ngo.user_id) == ["receipt_confirmed"]

    @pytest.mark.asyncio
    async def test_only_bound_requester_confirms(
        self, delivery_service, store, delivered, donor_actor, ngo
    ):
        result = await delivery_service.confirm_receipt(delivered.delivery_id, donor_actor)

        assert result.code == "forbidden"
        assert store.snapshot(User, ngo.user_id).points == 0

    @pytest.mark.asyncio
    async def test_confirm_before_delivered_is_conflict(
        self, delivery_service, store, donor, requester, requester_actor, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.confirm_receipt(delivery_id, requester_actor)

        assert result.code == "conflict"
        assert result.error.current_status == "assigned"

    @pytest.mark.asyncio
    async def test_half_latched_delivery_still_awards(
        self, delivery_service, store, donor, requester, requester_actor, ngo, clock
    ):
        """A confirmation recorded without its award is completed on retry."""
        donation = store.put(create_donation(donor.user_id, clock.now))
        request = store.put(create_request(requester.user_id, clock.now))
        delivery = store.put(
            create_delivery(
                ngo.user_id,
                donation,
                request,
                clock.now,
                status=DeliveryStatus.DELIVERED,
                points_earned=20,
                requester_confirmed=True,
                requester_confirmed_at=clock.now - timedelta(minutes=5),
            )
        )

        result = await delivery_service.confirm_receipt(delivery.delivery_id, requester_actor)

        assert result.data["points_awarded"] == 20
        stored = store.snapshot(Delivery, delivery.delivery_id)
        assert stored.requester_confirmed_at == clock.now - timedelta(minutes=5)
        assert store.snapshot(User, ngo.user_id).points == 20


# =============================================================================
# Cancellation and failure
# =============================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_assigned_releases_both_claims(
        self, delivery_service, store, donor, requester, ngo, clock, sink, dispatcher
    ):
        delivery_id, donation, request = await _bind(
            delivery_service, store, donor, requester, ngo, clock
        )

        result = await delivery_service.cancel(delivery_id, actor_for(ngo), "Vehicle broke down")

        assert result.success
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.status == DeliveryStatus.CANCELLED
        assert delivery.cancelled_by == ngo.user_id
        assert delivery.cancellation_reason == "Vehicle broke down"
        assert delivery.cancelled_at == clock.now

        stored_donation = store.snapshot(Donation, donation.donation_id)
        assert stored_donation.status == DonationStatus.ACTIVE
        assert stored_donation.assigned_ngo_id is None
        stored_request = store.snapshot(Request, request.request_id)
        assert stored_request.status == RequestStatus.PENDING
        assert stored_request.acceptance == Unaccepted()
        assert stored_request.assigned_donation_id is None

        await dispatcher.drain()
        assert sink.events_for(donor.user_id)[-1] == "delivery_cancelled"
        assert sink.events_for(requester.user_id)[-1] == "delivery_cancelled"
        assert "delivery_cancelled" not in sink.events_for(ngo.user_id)

    @pytest.mark.asyncio
    async def test_cancel_after_pickup_returns_donation_to_active(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, donation, request = await _bind(
            delivery_service, store, donor, requester, ngo, clock
        )
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)

        result = await delivery_service.cancel(delivery_id, actor_for(ngo), "Recipient unreachable")

        assert result.previous_status == DeliveryStatus.DELIVERY_IN_PROGRESS
        assert store.snapshot(Donation, donation.donation_id).status == DonationStatus.ACTIVE
        assert store.snapshot(Request, request.request_id).status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_admin_cancel_notifies_all_parties(
        self, delivery_service, store, donor, requester, ngo, admin_actor, clock, sink, dispatcher
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.cancel(delivery_id, admin_actor, "Duplicate")

        assert result.success
        await dispatcher.drain()
        assert sink.events_for(ngo.user_id)[-1] == "delivery_cancelled"

    @pytest.mark.asyncio
    async def test_cancel_delivered_is_conflict(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)
        await delivery_service.complete_delivery(delivery_id, actor_for(ngo), FoodCondition.GOOD)

        result = await delivery_service.cancel(delivery_id, actor_for(ngo), "Too late")

        assert result.code == "conflict"
        assert result.error.current_status == "delivered"

    @pytest.mark.asyncio
    async def test_requester_cannot_cancel(
        self, delivery_service, store, donor, requester, requester_actor, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.cancel(delivery_id, requester_actor, "Changed my mind")

        assert result.code == "forbidden"


class TestFail:
    @pytest.mark.asyncio
    async def test_fail_cancels_donation_and_reopens_request(
        self, delivery_service, store, donor, requester, ngo, clock, sink, dispatcher
    ):
        delivery_id, donation, request = await _bind(
            delivery_service, store, donor, requester, ngo, clock
        )
        await _drive_to_in_progress(delivery_service, delivery_id, ngo)

        result = await delivery_service.fail(delivery_id, actor_for(ngo), "Food spilled")

        assert result.new_status == DeliveryStatus.FAILED
        delivery = store.snapshot(Delivery, delivery_id)
        assert delivery.failure_reason == "Food spilled"
        assert delivery.failed_at == clock.now
        stored_donation = store.snapshot(Donation, donation.donation_id)
        assert stored_donation.status == DonationStatus.CANCELLED
        assert stored_donation.cancellation_reason == "Delivery failed: Food spilled"
        assert store.snapshot(Request, request.request_id).status == RequestStatus.PENDING

        await dispatcher.drain()
        assert sink.events_for(requester.user_id)[-1] == "delivery_cancelled"
        failed_notice = sink.sent[-1]
        assert failed_notice.payload["status"] == "failed"

    @pytest.mark.asyncio
    async def test_fail_before_pickup_is_conflict(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.fail(delivery_id, actor_for(ngo), "No show")

        assert result.code == "conflict"


# =============================================================================
# Tracking, issues, reads
# =============================================================================


class TestTrackingAndIssues:
    @pytest.mark.asyncio
    async def test_update_location_overwrites_position(
        self, delivery_service, store, donor, requester, ngo, clock, sink, dispatcher
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        await delivery_service.update_location(delivery_id, actor_for(ngo), 12.98, 77.60)
        result = await delivery_service.update_location(delivery_id, actor_for(ngo), 12.99, 77.61)

        assert result.success
        delivery = store.snapshot(Delivery, delivery_id)
        assert (delivery.current_latitude, delivery.current_longitude) == (12.99, 77.61)
        assert delivery.location_updated_at == clock.now
        await dispatcher.drain()
        assert sink.events_for(requester.user_id).count("location_update") == 2

    @pytest.mark.parametrize(("latitude", "longitude"), [(91.0, 77.6), (12.9, -181.0)])
    @pytest.mark.asyncio
    async def test_update_location_rejects_bad_coordinates(
        self, delivery_service, store, donor, requester, ngo, clock, latitude, longitude
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.update_location(
            delivery_id, actor_for(ngo), latitude, longitude
        )

        assert result.code == "invalid_input"

    @pytest.mark.asyncio
    async def test_report_issue_appends_and_notifies_admins(
        self,
        delivery_service,
        store,
        donor,
        donor_actor,
        requester,
        ngo,
        admin,
        clock,
        sink,
        dispatcher,
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.report_issue(
            delivery_id, donor_actor, IssueType.PICKUP_DELAY, "Nobody came"
        )

        assert result.success
        assert result.new_status == DeliveryStatus.ASSIGNED
        issues = store.snapshot(Delivery, delivery_id).issues
        assert issues == [
            {
                "type": "pickup_delay",
                "description": "Nobody came",
                "reported_by": str(donor.user_id),
                "reported_at": clock.now.isoformat(),
            }
        ]
        await dispatcher.drain()
        assert sink.events_for(admin.user_id) == ["delivery_issue_reported"]

    @pytest.mark.asyncio
    async def test_uninvolved_user_cannot_report(
        self, delivery_service, store, donor, other_donor, requester, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        result = await delivery_service.report_issue(
            delivery_id, actor_for(other_donor), IssueType.OTHER, "Curious"
        )

        assert result.code == "forbidden"
        assert store.snapshot(Delivery, delivery_id).issues == []

    @pytest.mark.asyncio
    async def test_get_for_actor_checks_involvement(
        self, delivery_service, store, donor, other_donor, requester, requester_actor, ngo, clock
    ):
        delivery_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)

        allowed = await delivery_service.get_for_actor(delivery_id, requester_actor)
        denied = await delivery_service.get_for_actor(delivery_id, actor_for(other_donor))

        assert allowed.entity.delivery_id == delivery_id
        assert denied.code == "forbidden"

    @pytest.mark.asyncio
    async def test_list_active_for_ngo_skips_closed(
        self, delivery_service, store, donor, requester, ngo, clock
    ):
        open_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        closed_id, _, _ = await _bind(delivery_service, store, donor, requester, ngo, clock)
        await delivery_service.cancel(closed_id, actor_for(ngo), "Duplicate")

        result = await delivery_service.list_active_for_ngo(ngo.user_id)

        assert result.data["count"] == 1
        assert [d.delivery_id for d in result.entity] == [open_id]
