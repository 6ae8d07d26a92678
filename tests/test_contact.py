import pytest

import errors


def submission(**overrides):
    data = {
        "first_name": "Casey",
        "last_name": "Visitor",
        "email": "Casey@Example.com",
        "subject": "Question about donating",
        "message": "Can I donate if I travelled abroad last month?",
    }
    data.update(overrides)
    return data


def test_submit_defaults(services):
    message = services.contact.submit(submission())
    assert message["status"] == "pending"
    assert message["priority"] == "medium"
    assert message["email"] == "casey@example.com"
    assert message["is_read"] is False


def test_short_subject_is_reported(services):
    with pytest.raises(errors.ValidationError) as info:
        services.contact.submit(submission(subject="Hey"))
    assert [e["field"] for e in info.value.errors] == ["subject"]


def test_every_violation_is_listed(services):
    with pytest.raises(errors.ValidationError) as info:
        services.contact.submit(submission(first_name="  ", message="short", email="nope"))
    fields = {e["field"] for e in info.value.errors}
    assert fields == {"first_name", "message", "email"}


def test_status_change_is_recorded_once(services, admin):
    message = services.contact.submit(submission())
    admin_id = admin["user"]["_id"]
    services.contact.update(message["_id"], {"status": "in-progress"}, admin_id)
    updated = services.contact.update(message["_id"], {"status": "in-progress", "priority": "high"}, admin_id)

    assert updated["priority"] == "high"
    assert len(updated["status_history"]) == 1
    assert updated["status_history"][0]["note"] == "Status changed to in-progress"
    assert updated["status_history"][0]["changed_by"]["email"] == "admin@example.com"


def test_mark_read_is_idempotent(services, admin):
    message = services.contact.submit(submission())
    first = services.contact.mark_read(message["_id"], admin["user"]["_id"])
    second = services.contact.mark_read(message["_id"], admin["user"]["_id"])
    assert first["is_read"] is True
    assert first["read_at"] == second["read_at"]
    assert second["status"] == "pending"


def test_notes_and_response(services, admin):
    message = services.contact.submit(submission())
    admin_id = admin["user"]["_id"]
    with pytest.raises(errors.ValidationError):
        services.contact.add_note(message["_id"], "", admin_id)
    noted = services.contact.add_note(message["_id"], "Forwarded to medical team", admin_id)
    assert noted["admin_notes"][0]["note"] == "Forwarded to medical team"
    assert noted["status"] == "pending"

    answered = services.contact.respond(message["_id"], "Please wait 28 days after travel.", admin_id)
    assert answered["status"] == "resolved"
    assert answered["admin_response"]["message"] == "Please wait 28 days after travel."
    with pytest.raises(errors.ValidationError):
        services.contact.respond(message["_id"], "Too short", admin_id)


def test_list_messages_with_stats(services, admin):
    first = services.contact.submit(submission())
    services.contact.submit(submission(subject="Urgent: drive cancelled?", priority="urgent"))
    services.contact.mark_read(first["_id"], admin["user"]["_id"])

    result = services.contact.list_messages(search="drive")
    assert result["pagination"]["total"] == 1
    assert result["stats"] == {"total": 2, "pending": 2, "in_progress": 0, "resolved": 0, "unread": 1, "urgent": 1}
    with pytest.raises(errors.ValidationError):
        services.contact.list_messages(sort_by="password")


def test_messages_for_email(services):
    services.contact.submit(submission())
    services.contact.submit(submission(email="someone@example.com"))
    mine = services.contact.messages_for_email("CASEY@example.com")
    assert len(mine) == 1
    assert "admin_notes" not in mine[0]


def test_messages_for_email_needs_an_address(services):
    for email in ("", "casey.example.com"):
        with pytest.raises(errors.ValidationError) as info:
            services.contact.messages_for_email(email)
        assert info.value.message == "Valid email is required"


def test_messages_for_email_shows_who_answered(services, admin):
    message = services.contact.submit(submission())
    services.contact.respond(message["_id"], "Please wait 28 days after travel.", admin["user"]["_id"])

    mine = services.contact.messages_for_email("casey@example.com")
    assert mine[0]["admin_response"]["responded_by"]["email"] == "admin@example.com"
    assert mine[0]["status_history"][-1]["changed_by"]["first_name"] == "Ada"
    assert "password_hash" not in mine[0]["admin_response"]["responded_by"]


def test_delete(services):
    message = services.contact.submit(submission())
    services.contact.delete(message["_id"])
    with pytest.raises(errors.NotFoundError):
        services.contact.get(message["_id"])
