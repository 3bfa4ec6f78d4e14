"""Unit tests for servicedesk_core.billing.paynow."""

from __future__ import annotations

import hashlib
from decimal import Decimal

import pytest
from servicedesk_core.billing.paynow import (
    build_init_request,
    build_reference,
    compute_hash,
    decode_form,
    encode_form,
    map_status,
    parse_init_response,
    parse_notice,
    sign,
    tenant_from_reference,
    verify_hash,
)
from servicedesk_core.errors import ValidationError
from servicedesk_core.models.billing import PaymentStatus

KEY = "integration-key-123"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


class TestHash:
    def test_matches_manual_sha512(self):
        fields = {"reference": "SUB-t1-1", "amount": "29.00", "status": "Paid"}
        expected = hashlib.sha512(("SUB-t1-1" + "29.00" + "Paid" + KEY).encode()).hexdigest().upper()
        assert compute_hash(fields, KEY) == expected

    def test_hash_field_is_ignored(self):
        fields = {"reference": "x", "status": "Paid"}
        assert compute_hash({**fields, "hash": "ABC"}, KEY) == compute_hash(fields, KEY)

    def test_order_matters(self):
        assert compute_hash({"a": "1", "b": "2"}, KEY) != compute_hash({"b": "2", "a": "1"}, KEY)

    def test_sign_then_verify(self):
        signed = sign({"reference": "SUB-t1-1", "status": "Paid"}, KEY)
        assert verify_hash(signed, KEY)

    def test_lowercase_hash_accepted(self):
        signed = sign({"reference": "SUB-t1-1", "status": "Paid"}, KEY)
        signed["hash"] = signed["hash"].lower()
        assert verify_hash(signed, KEY)

    def test_tampered_field_rejected(self):
        signed = sign({"reference": "SUB-t1-1", "amount": "29.00", "status": "Paid"}, KEY)
        signed["amount"] = "1.00"
        assert not verify_hash(signed, KEY)

    def test_wrong_key_rejected(self):
        signed = sign({"reference": "SUB-t1-1", "status": "Paid"}, KEY)
        assert not verify_hash(signed, "other-key")

    def test_missing_hash_or_key(self):
        assert not verify_hash({"reference": "x"}, KEY)
        assert not verify_hash(sign({"reference": "x"}, KEY), "")


class TestFormCodec:
    def test_decode_preserves_order_and_blanks(self):
        fields = decode_form(b"reference=SUB-t1-1&amount=29.00&paynowreference=&status=Paid")
        assert list(fields) == ["reference", "amount", "paynowreference", "status"]
        assert fields["paynowreference"] == ""

    def test_encode_decode(self):
        fields = {"returnurl": "https://app.test/return?x=1", "status": "Message"}
        assert decode_form(encode_form(fields)) == fields


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


class TestReferences:
    def test_subscription_reference(self):
        reference = build_reference("tenant-abc", 1700000000000)
        assert reference == "SUB-tenant-abc-1700000000000"
        assert tenant_from_reference(reference) == "tenant-abc"

    def test_one_off_reference(self):
        reference = build_reference("t1", 5, subscription=False)
        assert reference == "TENANT-t1-5"
        assert tenant_from_reference(reference) == "t1"

    @pytest.mark.parametrize("value", ["", "ORDER-1-2", "SUB-t1", "SUB-t1-abc"])
    def test_unrecognised(self, value):
        with pytest.raises(ValidationError):
            tenant_from_reference(value)


# ---------------------------------------------------------------------------
# Status mapping and notices
# ---------------------------------------------------------------------------


class TestMapStatus:
    @pytest.mark.parametrize("raw", ["Paid", "Awaiting Delivery", "delivered"])
    def test_success(self, raw):
        assert map_status(raw) == PaymentStatus.SUCCESS

    @pytest.mark.parametrize("raw", ["Cancelled", "Failed", "Disputed", "Refunded"])
    def test_failure(self, raw):
        assert map_status(raw) == PaymentStatus.FAILED

    @pytest.mark.parametrize("raw", ["Created", "Sent", "something new"])
    def test_pending(self, raw):
        assert map_status(raw) == PaymentStatus.PENDING


class TestParseNotice:
    def test_full_notice(self):
        notice = parse_notice(
            {
                "Reference": "SUB-t1-1",
                "PaynowReference": "9911",
                "Amount": "29.00",
                "Status": "Paid",
                "PollUrl": "https://paynow.test/poll/1",
            }
        )
        assert notice.reference == "SUB-t1-1"
        assert notice.paynow_reference == "9911"
        assert notice.amount == Decimal("29.00")
        assert notice.outcome == PaymentStatus.SUCCESS
        assert notice.poll_url == "https://paynow.test/poll/1"

    def test_missing_status(self):
        with pytest.raises(ValidationError):
            parse_notice({"reference": "SUB-t1-1"})

    def test_bad_amount(self):
        with pytest.raises(ValidationError):
            parse_notice({"reference": "SUB-t1-1", "status": "Paid", "amount": "lots"})

    def test_blank_optional_fields(self):
        notice = parse_notice({"reference": "SUB-t1-1", "status": "Sent", "paynowreference": "", "amount": ""})
        assert notice.paynow_reference is None
        assert notice.amount is None
        assert notice.outcome == PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


class TestInitiation:
    def test_request_is_signed(self):
        fields = build_init_request(
            integration_id="1234",
            integration_key=KEY,
            reference="SUB-t1-1",
            amount=Decimal("29"),
            description="BASIC monthly",
            email="admin@acme.test",
            return_url="https://app.test/return",
            result_url="https://api.test/webhook",
        )
        assert fields["amount"] == "29.00"
        assert fields["status"] == "Message"
        assert verify_hash(fields, KEY)

    def test_ok_response(self):
        reply = sign({"status": "Ok", "browserurl": "https://paynow.test/pay/1", "pollurl": "https://paynow.test/poll/1"}, KEY)
        response = parse_init_response(reply, KEY)
        assert response.ok
        assert response.browser_url == "https://paynow.test/pay/1"
        assert response.poll_url == "https://paynow.test/poll/1"

    def test_ok_response_with_bad_hash(self):
        reply = {"status": "Ok", "browserurl": "https://evil.test", "hash": "00"}
        response = parse_init_response(reply, KEY)
        assert not response.ok
        assert "hash" in (response.error or "")

    def test_error_response(self):
        response = parse_init_response({"status": "Error", "error": "Invalid Id."}, KEY)
        assert not response.ok
        assert response.error == "Invalid Id."
