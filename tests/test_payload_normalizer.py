"""Tests for webhook / provider payload normalization."""

from datetime import datetime, timezone

import pytest

from app.services.payload_normalizer import (
    ChatDetails,
    PayloadShape,
    extract_chat_details,
    extract_item_id_from_url,
    extract_messages_array,
    extract_sent_message_id,
    is_own_author,
    normalize_chat_info,
    normalize_history_message,
    normalize_item_info,
    normalize_price,
    normalize_unread,
    normalize_webhook,
    parse_timestamp,
    stable_key,
)

from conftest import ACCOUNT_ID, webhook_body

NEW_YEAR = datetime(2025, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Envelope shapes
# ---------------------------------------------------------------------------


def test_v3_webhook_envelope():
    event = normalize_webhook(webhook_body(), ACCOUNT_ID)

    assert event.shape is PayloadShape.PAYLOAD_VALUE
    assert event.event_id == "evt-1"
    assert event.event_type == "message"
    assert event.chat_id == "chat-1"
    assert event.message_id == "msg-1"
    assert event.author_id == "555"
    assert event.text == "Здравствуйте! Товар в наличии?"
    assert event.created_at == NEW_YEAR


def test_data_value_envelope_with_camel_case_keys():
    event = normalize_webhook({"data": {"value": {"chatId": "c-7", "messageId": "m-7", "text": "hi"}}})

    assert event.shape is PayloadShape.DATA_VALUE
    assert event.chat_id == "c-7"
    assert event.message_id == "m-7"
    assert event.text == "hi"


def test_flat_message_with_numeric_ids():
    event = normalize_webhook({"chat_id": 123, "id": 5, "authorId": 9, "content": {"message": {"text": "x"}}})

    assert event.shape is PayloadShape.TOP_LEVEL
    assert event.chat_id == "123"
    assert event.message_id == "5"
    assert event.author_id == "9"
    assert event.text == "x"


@pytest.mark.parametrize("body", [None, [], "text", 42])
def test_non_dict_body_is_unknown(body):
    event = normalize_webhook(body)
    assert event.shape is PayloadShape.UNKNOWN
    assert event.chat_id is None
    assert event.text == ""


def test_missing_fields_never_raise():
    event = normalize_webhook({"payload": {"value": {}}})
    assert event.chat_id is None
    assert event.message_id is None
    assert event.created_at is None
    assert event.details == ChatDetails()


# ---------------------------------------------------------------------------
# Timestamps and numbers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "value",
    [1735689600, 1735689600000, "1735689600", "1735689600000", "2025-01-01T00:00:00Z", 1735689600.0],
)
def test_parse_timestamp_accepts_seconds_millis_and_iso(value):
    assert parse_timestamp(value) == NEW_YEAR


@pytest.mark.parametrize(
    "value, expected",
    [
        (123456789012, datetime(1973, 11, 29, 21, 33, 9, 12000, tzinfo=timezone.utc)),
        ("123456789012", datetime(1973, 11, 29, 21, 33, 9, 12000, tzinfo=timezone.utc)),
        (1735689600000, NEW_YEAR),
        (17356896000, datetime(2520, 1, 8, tzinfo=timezone.utc)),
    ],
)
def test_parse_timestamp_millis_threshold(value, expected):
    assert parse_timestamp(value) == expected


@pytest.mark.parametrize("value", [None, True, 12345, "12345", "", "not a date", float("inf")])
def test_parse_timestamp_rejects_garbage(value):
    assert parse_timestamp(value) is None


def test_parse_timestamp_naive_iso_is_utc():
    assert parse_timestamp("2025-01-01T00:00:00") == NEW_YEAR


@pytest.mark.parametrize(
    "value, expected",
    [
        (2590, 2590),
        (12.9, 12),
        ("1 990 ₽", 1990),
        ("12.5", 12),
        ({"value": "2590"}, 2590),
        ({"amount": {"value": 300}}, 300),
        (True, 1),
        ("бесплатно", None),
        (None, None),
        (float("nan"), None),
    ],
)
def test_normalize_price(value, expected):
    assert normalize_price(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(3, 3), (-3, 0), ("5 новых", 5), ({"count": 2}, 2), (True, 1), (False, 0), ("", None), ("нет", None)],
)
def test_normalize_unread(value, expected):
    assert normalize_unread(value) == expected


def test_stable_key_is_deterministic():
    parts = ["chat-1", "555", "2025-01-01T00:00:00+00:00", "hello"]
    assert stable_key(parts) == stable_key(list(parts))
    assert stable_key(parts).startswith("k_")
    assert stable_key(parts) != stable_key(parts[:-1] + ["hello!"])
    assert stable_key(["a", None]) == stable_key(["a", ""])


# ---------------------------------------------------------------------------
# Chat details
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://www.avito.ru/moskva/bytovaya_tehnika/utyug_philips_7671727110", 7671727110),
        ("https://www.avito.ru/moskva/bytovaya_tehnika/utyug_7671727110?context=abc", 7671727110),
        ("https://www.avito.ru/moskva", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_item_id_from_url(url, expected):
    assert extract_item_id_from_url(url) == expected


def _chat_info():
    return {
        "id": "chat-1",
        "users": [
            {"id": ACCOUNT_ID, "name": "Магазин"},
            {"id": 555, "name": " Артем "},
        ],
        "context": {
            "type": "item",
            "value": {
                "id": 42,
                "title": "Утюг Philips",
                "url": "https://www.avito.ru/moskva/utyug_42",
                "price_string": "2 590 ₽",
            },
        },
    }


def test_chat_details_skip_own_account_participant():
    details = extract_chat_details(_chat_info(), ACCOUNT_ID)

    assert details.customer_name == "Артем"
    assert details.item_title == "Утюг Philips"
    assert details.ad_url == "https://www.avito.ru/moskva/utyug_42"
    assert details.item_id == 42
    assert details.price == 2590


def test_chat_details_item_id_falls_back_to_url():
    details = extract_chat_details({"item": {"url": "https://www.avito.ru/x/plita_98765"}}, ACCOUNT_ID)
    assert details.item_id == 98765


def test_chat_details_root_id_is_not_an_item_id():
    details = extract_chat_details({"id": 777, "chat_id": "c"}, ACCOUNT_ID)
    assert details.item_id is None


def test_normalize_chat_info_uses_same_probing():
    details = normalize_chat_info(_chat_info(), ACCOUNT_ID)
    assert details.customer_name == "Артем"


def test_as_patch_drops_empty_hints():
    details = ChatDetails(customer_name="Ольга", item_title="", ad_url=None, chat_url="https://avito.ru/c")
    assert details.as_patch() == {"customer_name": "Ольга", "chat_url": "https://avito.ru/c"}


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------


def test_is_own_author():
    assert is_own_author("1000", ACCOUNT_ID)
    assert not is_own_author("555", ACCOUNT_ID)
    assert not is_own_author(None, ACCOUNT_ID)
    assert not is_own_author("1000", None)


def test_extract_messages_array_versions():
    msg = {"id": "m1", "content": {"text": "hi"}}
    assert extract_messages_array({"messages": [msg, "junk"]}) == [msg]
    assert extract_messages_array({"result": {"items": [msg]}}) == [msg]
    assert extract_messages_array([msg, 1]) == [msg]
    assert extract_messages_array({"message": msg}) == [msg]
    assert extract_messages_array(msg) == [msg]
    assert extract_messages_array(None) == []


def test_normalize_history_message_direction():
    own = normalize_history_message(
        {"id": "m1", "author_id": ACCOUNT_ID, "created": 1735689600, "content": {"text": "Добрый день"}},
        ACCOUNT_ID,
    )
    assert own.direction == "OUT"
    assert own.sent_at == NEW_YEAR
    assert own.text == "Добрый день"

    customer = normalize_history_message({"id": 2, "author_id": 555, "text": "?"}, ACCOUNT_ID)
    assert customer.avito_message_id == "2"
    assert customer.direction == "IN"


def test_normalize_history_message_without_id_is_skipped():
    assert normalize_history_message({"text": "no id"}, ACCOUNT_ID) is None
    assert normalize_history_message("junk", ACCOUNT_ID) is None


def test_normalize_item_info_nested():
    info = normalize_item_info(42, {"data": {"title": " Плита ", "price": {"value": 3490}}, "url": "https://a/b_42"})
    assert info.item_id == 42
    assert info.title == "Плита"
    assert info.price == 3490
    assert info.url == "https://a/b_42"


def test_extract_sent_message_id():
    assert extract_sent_message_id({"result": {"id": 7}}) == "7"
    assert extract_sent_message_id({"id": "abc"}) == "abc"
    assert extract_sent_message_id({}) is None
