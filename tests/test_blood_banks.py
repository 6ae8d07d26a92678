import threading
from datetime import datetime

import pytest

import errors
from blood_banks import (
    EARTH_RADIUS_KM,
    BloodBankRegistry,
    haversine_km,
    is_currently_open,
    low_stock_types,
    operating_hours_display,
)
from schemas import OperatingHours


def test_new_bank_has_placeholder_license_and_empty_stock(bank):
    created = bank["bank"]
    assert created["license_number"].startswith("TEMP-")
    assert set(created["blood_stock"].values()) == {0}
    assert len(created["blood_stock"]) == 8
    assert created["location"] is None
    assert "password_hash" not in created


def test_duplicate_bank_email(services, bank):
    with pytest.raises(errors.DuplicateEmail):
        services.blood_banks.create("Other", "BANK@example.org", "secret1")


def test_bank_login_rejects_wrong_password(services, bank):
    with pytest.raises(errors.InvalidCredentials):
        services.blood_banks.login("bank@example.org", "wrong")


def test_subtract_clamps_at_zero(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "O+", 5, "set")
    result = services.blood_banks.update_stock(bank_id, "O+", 10, "subtract")
    assert result["new_quantity"] == 0
    assert services.blood_banks.stock(bank_id)["blood_stock"]["O+"] == 0


def test_stock_operations(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "A-", 12, "set")
    services.blood_banks.update_stock(bank_id, "A-", 3, "add")
    result = services.blood_banks.update_stock(bank_id, "A-", 5, "subtract")
    assert result["new_quantity"] == 10
    assert result["blood_stock"]["O+"] == 0


def test_concurrent_stock_changes_are_not_lost(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "O+", 100, "set")
    ops = ["add"] * 10 + ["subtract"] * 10
    barrier = threading.Barrier(len(ops))

    def change(op):
        barrier.wait()
        services.blood_banks.update_stock(bank_id, "O+", 7, op)

    threads = [threading.Thread(target=change, args=(op,)) for op in ops]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert services.blood_banks.stock(bank_id)["blood_stock"]["O+"] == 100


def test_set_negative_clamps_and_other_types_untouched(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "B+", 7, "set")
    result = services.blood_banks.update_stock(bank_id, "AB-", -4, "set")
    assert result["new_quantity"] == 0
    assert result["blood_stock"]["B+"] == 7


def test_stock_rejects_unknown_type_and_operation(services, bank):
    bank_id = bank["bank"]["_id"]
    with pytest.raises(errors.InvalidBloodType):
        services.blood_banks.update_stock(bank_id, "Q+", 1, "set")
    with pytest.raises(errors.ValidationError):
        services.blood_banks.update_stock(bank_id, "O+", 1, "multiply")


def test_stock_summary(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "O-", 25, "set")
    summary = services.blood_banks.stock(bank_id)
    assert summary["total_units"] == 25
    assert {"type": "O-", "units": 25} not in summary["low_stock_types"]
    assert len(summary["low_stock_types"]) == 7


def test_is_currently_open_inclusive_window():
    hours = OperatingHours()
    monday = datetime(2024, 1, 1, 9, 0)
    assert is_currently_open(hours, monday)
    assert is_currently_open(hours, monday.replace(hour=17))
    assert not is_currently_open(hours, monday.replace(hour=17, minute=1))
    sunday = datetime(2024, 1, 7, 10, 0)
    assert not is_currently_open(hours, sunday)


def test_operating_hours_display_groups_days():
    hours = OperatingHours().model_dump()
    assert operating_hours_display(hours) == "Mon-Tue-Wed-Thu-Fri: 09:00 - 17:00"
    hours["saturday"]["is_open"] = True
    assert operating_hours_display(hours) == "Mon-Tue-Wed-Thu-Fri: 09:00 - 17:00, Sat: 09:00 - 13:00"
    closed = {day: {**value, "is_open": False} for day, value in hours.items()}
    assert operating_hours_display(closed) == "Hours not specified"


def test_low_stock_threshold():
    stock = {"O+": 10, "O-": 9}
    low = [entry["type"] for entry in low_stock_types(stock)]
    assert "O+" not in low
    assert "O-" in low


def test_profile_update_sets_location_and_display(services, bank):
    bank_id = bank["bank"]["_id"]
    hours = OperatingHours().model_dump()
    hours["sunday"]["is_open"] = True
    updated = services.blood_banks.update_profile(
        bank_id,
        {"coordinates": [-89.65, 39.78], "operating_hours": hours, "address": {"city": "Springfield", "state": "IL"}},
    )
    assert updated["location"] == {"type": "Point", "coordinates": [-89.65, 39.78]}
    assert updated["operating_hours_display"].endswith("Sun: 09:00 - 13:00")
    assert updated["address"]["country"] == "USA"


def test_list_and_search(services, bank):
    services.blood_banks.update(bank["bank"]["_id"], {"address": {"city": "Springfield", "state": "IL"}})
    services.blood_banks.update_stock(bank["bank"]["_id"], "A+", 4, "set")

    banks, total = services.blood_banks.list_banks(city="spring")
    assert total == 1
    banks, total = services.blood_banks.list_banks(blood_type="B+", has_stock=True)
    assert total == 0
    banks, total = services.blood_banks.list_banks(blood_type="A+", has_stock=True)
    assert total == 1
    assert services.blood_banks.search("city blood")[0]["name"] == "City Blood Bank"
    with pytest.raises(errors.ValidationError):
        services.blood_banks.search("   ")


def test_nearby_sorted_by_distance(services, admin, bank):
    near_id = bank["bank"]["_id"]
    far = services.blood_banks.create("Far Bank", "far@example.org", "farpass")
    services.blood_banks.update(near_id, {"coordinates": [-89.65, 39.78]})
    services.blood_banks.update(far["_id"], {"coordinates": [-89.30, 39.90]})

    found = services.blood_banks.nearby(39.78, -89.66, radius_km=100)
    assert [b["_id"] for b in found] == [near_id, far["_id"]]
    assert found[0]["distance_km"] < found[1]["distance_km"]
    assert services.blood_banks.nearby(39.78, -89.66, radius_km=5)[0]["_id"] == near_id
    assert len(services.blood_banks.nearby(39.78, -89.66, radius_km=5)) == 1


def test_nearby_narrows_with_geo_index(services, monkeypatch):
    queries = []

    class RecordingCollection:
        def find(self, query):
            queries.append(query)
            return []

    monkeypatch.setattr(services.database, "geo_index", True)
    monkeypatch.setattr(BloodBankRegistry, "collection", property(lambda self: RecordingCollection()))

    assert services.blood_banks.nearby(39.78, -89.66, radius_km=20, blood_type="O-", has_stock=True) == []
    center, radius = queries[0]["location"]["$geoWithin"]["$centerSphere"]
    assert center == [-89.66, 39.78]
    assert radius == pytest.approx(20 / EARTH_RADIUS_KM)
    assert queries[0]["is_active"] is True


def test_haversine_known_distance():
    # Paris to London is roughly 344 km
    assert 340 < haversine_km(48.8566, 2.3522, 51.5074, -0.1278) < 348


def test_dashboard_stats(services, bank):
    bank_id = bank["bank"]["_id"]
    services.blood_banks.update_stock(bank_id, "O+", 30, "set")
    dashboard = services.blood_banks.dashboard(bank_id, now=datetime(2024, 1, 1, 10, 0))
    assert dashboard["stats"]["total_blood_units"] == 30
    assert dashboard["stats"]["is_currently_open"] is True
    assert dashboard["blood_bank"]["_id"] == bank_id


def test_invalid_id_is_not_found(services):
    with pytest.raises(errors.NotFoundError):
        services.blood_banks.get("not-an-id")
