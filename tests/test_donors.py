import pytest

import errors


def donor_payload(**overrides):
    data = {"name": "Riley Giver", "email": "riley@example.com", "phone": "+1 555 010 5000", "blood_type": "B-"}
    data.update(overrides)
    return data


def test_create_and_filter(services):
    services.donors.create(donor_payload())
    services.donors.create(donor_payload(name="Avery", email="avery@example.com", blood_type="O+"))

    donors, total = services.donors.list(blood_type="B-")
    assert total == 1
    assert donors[0]["name"] == "Riley Giver"
    assert len(services.donors.by_blood_type("O+")) == 1
    with pytest.raises(errors.InvalidBloodType):
        services.donors.by_blood_type("X")


def test_missing_required_field(services):
    data = donor_payload()
    del data["phone"]
    with pytest.raises(errors.ValidationError) as info:
        services.donors.create(data)
    assert info.value.errors[0]["field"] == "phone"


def test_update_and_delete(services):
    donor = services.donors.create(donor_payload())
    updated = services.donors.update(donor["_id"], {"is_available": False, "last_donation_date": "2024-03-01"})
    assert updated["is_available"] is False
    assert updated["last_donation_date"] == "2024-03-01"

    services.donors.delete(donor["_id"])
    with pytest.raises(errors.NotFoundError):
        services.donors.get(donor["_id"])
