import pytest
from datetime import timedelta, timezone

from opd_allocation.core.exceptions import DoctorMismatch, DoctorNotFound, SlotNotFound, TokenNotFound
from opd_allocation.models import Doctor, Slot, SlotStatus, Token, TokenSource, WaitingEntry
from opd_allocation.schemas.allocation import AdmissionResult, TokenRequest
from opd_allocation.services.allocation_service import AllocationService, generate_token_number

from .conftest import NOW, assert_dense_positions, assert_slot_invariants, token_request, tokens_in


@pytest.fixture
def service(db, clock):
    return AllocationService(db, clock)


@pytest.fixture
def clinic(doctor, make_slot):
    """Slot A (capacity 10) at +2h, slot B (capacity 2) at +3h."""
    return make_slot(doctor, hours=2, capacity=10), make_slot(doctor, hours=3, capacity=2)


def fill_with_online(service, doctor, slot, count):
    outcomes = []
    for requester_id in range(1, count + 1):
        outcomes.append(
            service.allocate(requester_id, token_request(doctor, TokenSource.ONLINE, slot))
        )
    return outcomes


class TestAllocationScenarios:

    def test_online_requests_fill_preferred_slot(self, db, service, doctor, clinic):
        """Ten online requests for slot A are all admitted to A."""
        slot_a, slot_b = clinic
        outcomes = fill_with_online(service, doctor, slot_a, 10)

        assert all(o.outcome == AdmissionResult.ADMITTED for o in outcomes)
        assert all(o.slot_id == slot_a.id for o in outcomes)
        db.refresh(slot_a)
        assert slot_a.current_occupancy == 10
        assert slot_a.status == SlotStatus.FULL
        assert_slot_invariants(db)

    def test_paid_request_displaces_latest_online(self, db, service, doctor, clinic):
        """A paid request takes slot A and moves the most recent online token to B."""
        slot_a, slot_b = clinic
        online = fill_with_online(service, doctor, slot_a, 10)

        outcome = service.allocate(50, token_request(doctor, TokenSource.PAID_PRIORITY, slot_a))

        assert outcome.outcome == AdmissionResult.ADMITTED
        assert outcome.slot_id == slot_a.id
        assert len(outcome.displaced) == 1
        moved = outcome.displaced[0]
        assert moved.token_id == online[-1].token.id
        assert moved.from_slot_id == slot_a.id
        assert moved.to_slot_id == slot_b.id

        db.expire_all()
        displaced = db.get(Token, moved.token_id)
        assert displaced.slot_id == slot_b.id
        assert displaced.is_reallocation
        assert displaced.original_slot_id == slot_a.id
        assert displaced.appointment_time == slot_b.start_time
        assert db.get(Slot, slot_a.id).current_occupancy == 10
        assert db.get(Slot, slot_b.id).current_occupancy == 1
        assert_slot_invariants(db)

    def test_emergency_request_displaces_next_online(self, db, service, doctor, clinic):
        slot_a, slot_b = clinic
        online = fill_with_online(service, doctor, slot_a, 10)
        service.allocate(50, token_request(doctor, TokenSource.PAID_PRIORITY, slot_a))

        outcome = service.allocate(60, token_request(doctor, TokenSource.EMERGENCY, slot_a))

        assert outcome.slot_id == slot_a.id
        assert outcome.displaced[0].token_id == online[-2].token.id
        db.expire_all()
        assert db.get(Slot, slot_b.id).current_occupancy == 2
        assert db.get(Slot, slot_b.id).status == SlotStatus.FULL
        assert_slot_invariants(db)

    def test_walk_ins_queue_when_nothing_can_be_displaced(self, db, service, doctor, clinic):
        """Walk-ins never displace online tokens; they go to the queue in arrival order."""
        slot_a, slot_b = clinic
        fill_with_online(service, doctor, slot_a, 10)
        service.allocate(50, token_request(doctor, TokenSource.PAID_PRIORITY, slot_a))
        service.allocate(60, token_request(doctor, TokenSource.EMERGENCY, slot_a))

        outcomes = [
            service.allocate(100 + i, token_request(doctor, TokenSource.WALK_IN, slot_a))
            for i in range(5)
        ]

        assert [o.outcome for o in outcomes] == [AdmissionResult.QUEUED] * 5
        assert [o.queue_position for o in outcomes] == [1, 2, 3, 4, 5]
        assert db.query(Token).count() == 12
        assert_slot_invariants(db)
        assert_dense_positions(db, doctor.id)


class TestAllocationPaths:

    def test_without_preference_takes_first_free_slot_chronologically(self, db, service, doctor, make_slot):
        later = make_slot(doctor, hours=5, capacity=3)
        earlier = make_slot(doctor, hours=1, capacity=3)

        outcome = service.allocate(1, token_request(doctor, TokenSource.ONLINE))

        assert outcome.slot_id == earlier.id
        assert not outcome.token.is_reallocation

    def test_earliest_time_is_respected(self, db, service, doctor, make_slot):
        make_slot(doctor, hours=1, capacity=3)
        afternoon = make_slot(doctor, hours=6, capacity=3)

        request = token_request(
            doctor, TokenSource.ONLINE, earliest=NOW + timedelta(hours=4)
        )
        outcome = service.allocate(1, request)

        assert outcome.slot_id == afternoon.id

    def test_slots_before_now_are_skipped(self, db, service, doctor, make_slot):
        make_slot(doctor, hours=-1, capacity=3)
        upcoming = make_slot(doctor, hours=1, capacity=3)

        outcome = service.allocate(1, token_request(doctor, TokenSource.ONLINE))

        assert outcome.slot_id == upcoming.id

    def test_full_preferred_slot_falls_back_to_later_free_slot(self, db, service, doctor, make_slot):
        """Equal scores cannot displace, so the request moves to the next free slot."""
        first = make_slot(doctor, hours=1, capacity=1)
        second = make_slot(doctor, hours=2, capacity=1)
        service.allocate(1, token_request(doctor, TokenSource.ONLINE, first))

        outcome = service.allocate(2, token_request(doctor, TokenSource.ONLINE, first))

        assert outcome.slot_id == second.id
        assert outcome.token.is_reallocation
        assert outcome.token.original_slot_id == first.id
        assert outcome.displaced == []

    def test_closed_slots_are_never_used(self, db, service, doctor, make_slot):
        make_slot(doctor, hours=1, capacity=5, status=SlotStatus.CLOSED)

        outcome = service.allocate(1, token_request(doctor, TokenSource.EMERGENCY))

        assert outcome.outcome == AdmissionResult.QUEUED

    def test_displacement_without_later_room_queues_the_request(self, db, service, doctor, make_slot):
        only = make_slot(doctor, hours=1, capacity=1)
        service.allocate(1, token_request(doctor, TokenSource.WALK_IN, only))

        outcome = service.allocate(2, token_request(doctor, TokenSource.PAID_PRIORITY, only))

        assert outcome.outcome == AdmissionResult.QUEUED
        assert len(tokens_in(db, only)) == 1
        assert_slot_invariants(db)

    def test_full_schedule_queues_even_an_emergency(self, db, service, doctor, make_slot):
        first = make_slot(doctor, hours=1, capacity=1)
        second = make_slot(doctor, hours=2, capacity=1)
        make_slot(doctor, hours=3, capacity=1)
        walk_in = service.allocate(1, token_request(doctor, TokenSource.WALK_IN, first))
        service.allocate(2, token_request(doctor, TokenSource.PAID_PRIORITY, second))

        # Third slot is free, so the follow-up is simply admitted there
        free = service.allocate(3, token_request(doctor, TokenSource.FOLLOW_UP))
        assert free.displaced == []

        outcome = service.allocate(4, token_request(doctor, TokenSource.ONLINE))
        assert outcome.outcome == AdmissionResult.QUEUED

        outcome = service.allocate(5, token_request(doctor, TokenSource.EMERGENCY))
        assert outcome.outcome == AdmissionResult.QUEUED
        assert [t.id for t in tokens_in(db, first)] == [walk_in.token.id]
        assert_slot_invariants(db)

    def test_preferred_slot_of_other_doctor_is_rejected(self, db, service, doctor, make_slot):
        other = Doctor(name="Dr. Imran Khan", specialization="ENT")
        db.add(other)
        db.commit()
        foreign_slot = make_slot(other, hours=1)

        with pytest.raises(DoctorMismatch):
            service.allocate(1, token_request(doctor, TokenSource.ONLINE, foreign_slot))
        assert db.query(Token).count() == 0

    def test_unknown_preferred_slot(self, db, service, doctor):
        request = TokenRequest(doctor_id=doctor.id, source=TokenSource.ONLINE, preferred_slot_id=999)
        with pytest.raises(SlotNotFound):
            service.allocate(1, request)

    def test_unknown_doctor(self, db, service):
        with pytest.raises(DoctorNotFound):
            service.allocate(1, TokenRequest(doctor_id=404, source=TokenSource.ONLINE))

    def test_queued_request_records_entry(self, db, service, doctor):
        outcome = service.allocate(7, token_request(doctor, TokenSource.FOLLOW_UP, reason="review"))

        entry = db.get(WaitingEntry, outcome.waiting_entry_id)
        assert entry.requester_id == 7
        assert entry.priority_score == 60
        assert entry.reason == "review"
        assert entry.expires_at == NOW + timedelta(days=7)

    def test_timezone_aware_earliest_time_is_normalised(self, db, service, doctor, make_slot):
        """An offset timestamp is compared as naive UTC."""
        make_slot(doctor, hours=1, capacity=3)
        afternoon = make_slot(doctor, hours=6, capacity=3)
        ist = timezone(timedelta(hours=5, minutes=30))
        earliest = (NOW + timedelta(hours=4)).replace(tzinfo=timezone.utc).astimezone(ist)

        request = token_request(doctor, TokenSource.ONLINE, earliest=earliest)
        assert request.earliest_time == NOW + timedelta(hours=4)
        assert request.earliest_time.tzinfo is None

        outcome = service.allocate(1, request)
        assert outcome.slot_id == afternoon.id


class TestTokenQueries:

    def test_get_token(self, db, service, doctor, make_slot):
        make_slot(doctor, hours=1)
        outcome = service.allocate(1, token_request(doctor, TokenSource.ONLINE))

        token = service.get_token(outcome.token.id)
        assert token.token_number == outcome.token.token_number

    def test_get_missing_token(self, db, service):
        with pytest.raises(TokenNotFound):
            service.get_token(12345)

    def test_slot_availability_by_day(self, db, service, doctor, make_slot):
        today = make_slot(doctor, hours=1, capacity=1)
        make_slot(doctor, hours=26, capacity=4)
        make_slot(doctor, hours=2, capacity=4, status=SlotStatus.CANCELLED)
        service.allocate(1, token_request(doctor, TokenSource.ONLINE, today))

        availability = service.slot_availability(doctor.id, NOW.date())

        assert availability.total_slots == 1
        assert availability.available_slots == 0
        assert availability.slots[0].available_spots == 0
        assert service.slot_availability(doctor.id).total_slots == 2

    def test_token_numbers_are_unique(self):
        numbers = {generate_token_number("EMG") for _ in range(50)}
        assert len(numbers) == 50
        assert all(n.startswith("EMG-") for n in numbers)
