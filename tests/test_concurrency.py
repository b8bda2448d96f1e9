from concurrent.futures import ThreadPoolExecutor
import threading

from opd_allocation.core.locking import DoctorLockRegistry
from opd_allocation.models import Slot, TokenSource, WaitingEntry, WaitingStatus
from opd_allocation.schemas.allocation import AdmissionResult
from opd_allocation.services.allocation_service import AllocationService
from opd_allocation.services.cancellation_service import CancellationService

from .conftest import assert_dense_positions, assert_slot_invariants, token_request


def run_in_session(session_factory, work):
    session = session_factory()
    try:
        return work(session)
    finally:
        session.close()


class TestDoctorSection:

    def test_registry_returns_one_lock_per_doctor(self):
        registry = DoctorLockRegistry()
        assert registry.lock_for(1) is registry.lock_for(1)
        assert registry.lock_for(1) is not registry.lock_for(2)

    def test_concurrent_requests_never_overbook(self, db, session_factory, clock, doctor, make_slot):
        """Twenty simultaneous requests for five places: five admitted, fifteen queued."""
        slot = make_slot(doctor, hours=2, capacity=5)
        requests = {i: token_request(doctor, TokenSource.ONLINE, slot) for i in range(1, 21)}
        start = threading.Barrier(20)

        def request(requester_id):
            def work(session):
                start.wait()
                service = AllocationService(session, clock)
                return service.allocate(requester_id, requests[requester_id])
            return run_in_session(session_factory, work)

        with ThreadPoolExecutor(max_workers=20) as pool:
            outcomes = list(pool.map(request, requests))

        admitted = [o for o in outcomes if o.outcome == AdmissionResult.ADMITTED]
        queued = [o for o in outcomes if o.outcome == AdmissionResult.QUEUED]
        assert len(admitted) == 5
        assert len(queued) == 15
        assert sorted(o.queue_position for o in queued) == list(range(1, 16))

        db.expire_all()
        assert db.get(Slot, slot.id).current_occupancy == 5
        assert_slot_invariants(db)
        assert_dense_positions(db, doctor.id)

    def test_freed_place_goes_to_queue_not_to_newcomer(self, db, session_factory, clock, doctor, make_slot):
        """A cancellation racing a fresh request: the queued requester always wins."""
        slot = make_slot(doctor, hours=2, capacity=1)
        allocation = AllocationService(db, clock)
        holder = allocation.allocate(1, token_request(doctor, TokenSource.PAID_PRIORITY, slot))
        queued = allocation.allocate(2, token_request(doctor, TokenSource.ONLINE, slot))
        holder_id = holder.token.id
        fresh_request = token_request(doctor, TokenSource.ONLINE, slot)
        start = threading.Barrier(2)

        def cancel(session):
            start.wait()
            return CancellationService(session, clock).cancel(holder_id)

        def newcomer(session):
            start.wait()
            service = AllocationService(session, clock)
            return service.allocate(3, fresh_request)

        with ThreadPoolExecutor(max_workers=2) as pool:
            cancelled = pool.submit(run_in_session, session_factory, cancel)
            fresh = pool.submit(run_in_session, session_factory, newcomer)
            cancelled.result()
            fresh_outcome = fresh.result()

        assert fresh_outcome.outcome == AdmissionResult.QUEUED
        db.expire_all()
        assert db.get(WaitingEntry, queued.waiting_entry_id).status == WaitingStatus.PROMOTED
        assert db.get(WaitingEntry, fresh_outcome.waiting_entry_id).queue_position == 1
        assert_slot_invariants(db)
        assert_dense_positions(db, doctor.id)
