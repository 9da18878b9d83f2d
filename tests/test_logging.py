from chatrelay.logging import _redact_pii, redact_subject, sanitize_error_message


def test_redact_subject_keeps_prefix_and_short_fragment():
    assert redact_subject("anon_3b241101-e2bb") == "anon_3b24***"
    assert redact_subject("user_alice") == "user_alic***"
    assert redact_subject("abc") == "***"
    assert redact_subject(None) is None


def test_processor_masks_subject_fields_and_secrets():
    event = _redact_pii(
        None,
        "info",
        {"event": "x", "user_id": "anon_3b241101-e2bb", "api_key": "sk-abcdef123"},
    )

    assert event["user_id"] == "anon_3b24***"
    assert event["api_key"] == "sk***23"


def test_sanitize_error_message_strips_sql_and_paths():
    cleaned = sanitize_error_message("failed: SELECT * FROM chat_message at /var/lib/pg/data")

    assert "chat_message" not in cleaned
    assert "/var/lib" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
