import threading
from datetime import timedelta

import pytest
from bson import ObjectId

import errors
from conftest import event_payload
from database import utcnow


def test_new_event_is_pending(services, bank):
    event = services.events.create(event_payload(), bank["bank"]["_id"], "City Blood Bank")
    assert event["status"] == "pending"
    assert event["registered_count"] == 0
    assert event["is_full"] is False
    assert event["event_status"] == "Upcoming"
    assert event["requirements"].startswith("Must be 18+")


def test_create_rejects_bad_dates(services, bank):
    start = utcnow() + timedelta(days=2)
    with pytest.raises(errors.InvalidDateRange):
        services.events.create(event_payload(start_date=start, end_date=start - timedelta(hours=1)), bank["bank"]["_id"], "B")
    with pytest.raises(errors.InvalidDateRange):
        services.events.create(event_payload(start_date=utcnow() - timedelta(days=1)), bank["bank"]["_id"], "B")


def test_register_requires_approval(services, bank, donor):
    event = services.events.create(event_payload(), bank["bank"]["_id"], "City Blood Bank")
    with pytest.raises(errors.ValidationError):
        services.events.register(event["_id"], donor["user"]["_id"])


def test_capacity_is_never_exceeded(services, approved_event, donor, other_donor):
    event = approved_event(max_capacity=1)
    registered = services.events.register(event["_id"], donor["user"]["_id"])
    assert registered["registered_count"] == 1
    assert registered["is_full"] is True

    with pytest.raises(errors.EventFull):
        services.events.register(event["_id"], other_donor["user"]["_id"])
    assert services.events.get(event["_id"])["registered_count"] == 1


def test_duplicate_registration_rejected(services, approved_event, donor):
    event = approved_event()
    services.events.register(event["_id"], donor["user"]["_id"])
    with pytest.raises(errors.AlreadyRegistered):
        services.events.register(event["_id"], donor["user"]["_id"])


def test_register_then_unregister_restores_count(services, approved_event, donor, other_donor):
    event = approved_event()
    services.events.register(event["_id"], other_donor["user"]["_id"])
    before = services.events.get(event["_id"])["registered_count"]

    services.events.register(event["_id"], donor["user"]["_id"])
    after = services.events.unregister(event["_id"], donor["user"]["_id"])
    assert after["registered_count"] == before
    assert [r["user_id"] for r in after["registrations"]] == [other_donor["user"]["_id"]]

    with pytest.raises(errors.NotRegistered):
        services.events.unregister(event["_id"], donor["user"]["_id"])


def test_organizer_edit_of_approved_event_returns_to_pending(services, approved_event, bank):
    event = approved_event()
    updated = services.events.update(event["_id"], {"title": "Evening Blood Drive"}, bank["identity"])
    assert updated["title"] == "Evening Blood Drive"
    assert updated["status"] == "pending"
    assert updated["approved_by"] is None
    assert updated["approved_at"] is None


def test_organizer_cannot_pick_status_on_edit(services, approved_event, bank):
    event = approved_event()
    with pytest.raises(errors.ForbiddenError):
        services.events.update(event["_id"], {"title": "Moved drive", "status": "cancelled"}, bank["identity"])
    assert services.events.get(event["_id"])["status"] == "approved"


def test_organizer_cancels_event(services, approved_event, bank, donor):
    event = approved_event()
    cancelled = services.events.cancel(event["_id"], bank["identity"])
    assert cancelled["status"] == "cancelled"
    assert cancelled["event_status"] == "Cancelled"
    with pytest.raises(errors.InvalidTransition):
        services.events.cancel(event["_id"], bank["identity"])
    with pytest.raises(errors.ValidationError):
        services.events.register(event["_id"], donor["user"]["_id"])


def test_admin_edit_keeps_status(services, approved_event, admin):
    event = approved_event()
    updated = services.events.update(event["_id"], {"location": "Town Hall"}, admin["identity"])
    assert updated["status"] == "approved"


def test_other_bank_cannot_edit(services, approved_event):
    from blood_banks import bank_identity

    other = services.blood_banks.create("Other Bank", "other@example.org", "otherpass")
    event = approved_event()
    with pytest.raises(errors.ForbiddenError):
        services.events.update(event["_id"], {"title": "Hijacked"}, bank_identity(other))


def test_capacity_cannot_drop_below_registrations(services, approved_event, admin, donor, other_donor):
    event = approved_event(max_capacity=5)
    services.events.register(event["_id"], donor["user"]["_id"])
    services.events.register(event["_id"], other_donor["user"]["_id"])
    with pytest.raises(errors.ValidationError):
        services.events.update(event["_id"], {"max_capacity": 1}, admin["identity"])


def test_update_rejects_end_before_start(services, approved_event, admin):
    event = approved_event()
    with pytest.raises(errors.InvalidDateRange):
        services.events.update(event["_id"], {"end_date": utcnow() + timedelta(days=1)}, admin["identity"])


def test_review_only_from_pending(services, approved_event, admin):
    event = approved_event()
    with pytest.raises(errors.InvalidTransition):
        services.events.reject(event["_id"], admin["user"]["_id"], "Duplicate listing")


def test_reject_requires_reason(services, bank, admin):
    event = services.events.create(event_payload(), bank["bank"]["_id"], "City Blood Bank")
    with pytest.raises(errors.ValidationError):
        services.events.reject(event["_id"], admin["user"]["_id"], "  ")
    rejected = services.events.reject(event["_id"], admin["user"]["_id"], "Missing venue permit")
    assert rejected["status"] == "rejected"
    assert rejected["rejection_reason"] == "Missing venue permit"


def test_listings(services, approved_event, bank, donor):
    event = approved_event()
    services.events.create(event_payload(title="Still pending"), bank["bank"]["_id"], "City Blood Bank")
    services.events.register(event["_id"], donor["user"]["_id"])

    public, total = services.events.list_public()
    assert total == 1
    assert public[0]["_id"] == event["_id"]
    assert len(services.events.list_for_organizer(bank["bank"]["_id"])) == 2
    assert [e["_id"] for e in services.events.list_for_user(donor["user"]["_id"])] == [event["_id"]]

    overview = services.events.list_all()
    assert overview["total"] == 2
    assert overview["status_counts"] == {"approved": 1, "pending": 1}


def test_registrations_view(services, approved_event, bank, donor):
    event = approved_event()
    services.events.register(event["_id"], donor["user"]["_id"])
    view = services.events.registrations(event["_id"], bank["identity"])
    assert view["registered_count"] == 1
    assert view["registrations"][0]["user"]["email"] == "donor@example.com"
    with pytest.raises(errors.ForbiddenError):
        services.events.registrations(event["_id"], donor["identity"])


def test_concurrent_registrations_fill_exactly_to_capacity(services, approved_event):
    event = approved_event(max_capacity=1)
    users = [str(ObjectId()) for _ in range(8)]
    barrier = threading.Barrier(len(users))
    outcomes = []

    def attempt(user_id):
        barrier.wait()
        try:
            services.events.register(event["_id"], user_id)
            outcomes.append("ok")
        except errors.EventFull:
            outcomes.append("full")

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in users]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("full") == len(users) - 1
    assert services.events.get(event["_id"])["registered_count"] == 1


def test_registration_rechecks_after_stale_read(services, approved_event, donor, other_donor, monkeypatch):
    event = approved_event(max_capacity=1)
    registry = services.events
    real_find = registry._find
    reads = []

    def find_while_rival_registers(event_id):
        current = real_find(event_id)
        reads.append(event_id)
        if len(reads) == 1:
            # another donor takes the last place after this read
            registry.collection.update_one(
                {"_id": current["_id"]},
                {
                    "$push": {
                        "registrations": {"user_id": other_donor["user"]["_id"], "registered_at": utcnow(), "status": "confirmed"},
                        "registrant_ids": other_donor["user"]["_id"],
                    },
                    "$inc": {"registered_count": 1},
                },
            )
        return current

    monkeypatch.setattr(registry, "_find", find_while_rival_registers)
    with pytest.raises(errors.EventFull):
        registry.register(event["_id"], donor["user"]["_id"])
    assert len(reads) == 2
    assert real_find(event["_id"])["registrant_ids"] == [other_donor["user"]["_id"]]
