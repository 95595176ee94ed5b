"""Unit tests for Gmail metadata parsing helpers."""

from mailbox_cleanup.gmail.parsing import importance_from_labels, message_to_email_record
from mailbox_cleanup.models import ImportanceLevel


def test_message_to_email_record_parses_basic_fields(sample_email_data) -> None:
    record = message_to_email_record(sample_email_data)

    assert record.gmail_id == "msg123456"
    assert record.thread_id == "thread789"
    assert record.internal_date_ms == 1700000000000
    assert record.subject == "Weekly Newsletter - Python Tips"
    assert record.from_raw == "Python Weekly <Newsletter@Python.org>"
    assert record.from_email == "newsletter@python.org"
    assert record.size_bytes == 48213
    assert record.is_unread is True
    assert record.is_deleted is False


def test_message_to_email_record_derives_scores(sample_email_data) -> None:
    promo = message_to_email_record(sample_email_data)
    spam = message_to_email_record({**sample_email_data, "labelIds": ["SPAM"]})

    assert promo.promotional_score == 1.0
    assert promo.spam_score == 0.0
    assert promo.importance_level is ImportanceLevel.LOW
    assert spam.spam_score == 1.0
    assert spam.promotional_score == 0.0


def test_message_to_email_record_tolerates_missing_fields() -> None:
    record = message_to_email_record({"id": "m1", "labelIds": ["TRASH"]})

    assert record.internal_date_ms is None
    assert record.from_email is None
    assert record.size_bytes == 0
    assert record.is_deleted is True


def test_importance_from_labels() -> None:
    assert importance_from_labels(["INBOX", "IMPORTANT"]) is ImportanceLevel.HIGH
    assert importance_from_labels(["STARRED", "CATEGORY_PROMOTIONS"]) is ImportanceLevel.HIGH
    assert importance_from_labels(["CATEGORY_SOCIAL"]) is ImportanceLevel.LOW
    assert importance_from_labels(["INBOX"]) is ImportanceLevel.MEDIUM
