"""
Unit tests for gateway signature verification.
"""
import json

import pytest

from core.signature import SignatureVerifier, compute_signature
from tests.conftest import KEY_SECRET, WEBHOOK_SECRET, sign, sign_payment

RAW_BODY = (
    b'{"event": "payment.captured",\n  "payload": {"payment": {"entity": '
    b'{"id": "pay_1", "order_id": "order_1", "notes": {"name": "Zo\xc3\xab"}}}}}'
)


class TestSignatureVerifier:
    """Test suite for SignatureVerifier."""

    @pytest.fixture
    def verifier(self) -> SignatureVerifier:
        return SignatureVerifier(WEBHOOK_SECRET, KEY_SECRET)

    @pytest.mark.unit
    def test_valid_signature(self, verifier: SignatureVerifier) -> None:
        assert verifier.verify(RAW_BODY, sign(RAW_BODY)) is True

    @pytest.mark.unit
    def test_signature_with_surrounding_whitespace(self, verifier: SignatureVerifier) -> None:
        assert verifier.verify(RAW_BODY, f"  {sign(RAW_BODY)}\n") is True

    @pytest.mark.unit
    def test_mutated_body_rejected(self, verifier: SignatureVerifier) -> None:
        """Flipping any single bit of the body invalidates the signature."""
        signature = sign(RAW_BODY)
        for position in (0, len(RAW_BODY) // 2, len(RAW_BODY) - 1):
            mutated = bytearray(RAW_BODY)
            mutated[position] ^= 0x01
            assert verifier.verify(bytes(mutated), signature) is False

    @pytest.mark.unit
    def test_mutated_signature_rejected(self, verifier: SignatureVerifier) -> None:
        signature = sign(RAW_BODY)
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
        assert verifier.verify(RAW_BODY, flipped) is False
        assert verifier.verify(RAW_BODY, signature[:-1]) is False

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, verifier: SignatureVerifier) -> None:
        assert verifier.verify(RAW_BODY, sign(RAW_BODY, secret="other_secret")) is False

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "   "])
    def test_missing_signature_rejected(self, verifier: SignatureVerifier, signature) -> None:
        assert verifier.verify(RAW_BODY, signature) is False

    @pytest.mark.unit
    def test_empty_body_rejected(self, verifier: SignatureVerifier) -> None:
        assert verifier.verify(b"", sign(b"")) is False

    @pytest.mark.unit
    def test_unconfigured_secret_fails_closed(self) -> None:
        verifier = SignatureVerifier("")
        assert verifier.verify(RAW_BODY, compute_signature("", RAW_BODY)) is False

    @pytest.mark.unit
    def test_non_ascii_signature_header_does_not_raise(self, verifier: SignatureVerifier) -> None:
        assert verifier.verify(RAW_BODY, "sïgnature") is False

    @pytest.mark.unit
    def test_reserialized_json_does_not_verify(self, verifier: SignatureVerifier) -> None:
        """
        Raw-bytes regression: the gateway signs the wire bytes, so a signature
        checked against re-serialized JSON fails for a genuinely valid delivery.
        """
        signature = sign(RAW_BODY)
        reserialized = json.dumps(json.loads(RAW_BODY)).encode()

        assert reserialized != RAW_BODY
        assert verifier.verify(reserialized, signature) is False
        assert verifier.verify(RAW_BODY, signature) is True


class TestPaymentSignature:
    """Checkout widget signature (order_id|payment_id)."""

    @pytest.mark.unit
    def test_valid_payment_signature(self) -> None:
        verifier = SignatureVerifier(WEBHOOK_SECRET, KEY_SECRET)
        signature = sign_payment("order_abc", "pay_xyz")
        assert verifier.verify_payment("order_abc", "pay_xyz", signature) is True

    @pytest.mark.unit
    def test_swapped_ids_rejected(self) -> None:
        verifier = SignatureVerifier(WEBHOOK_SECRET, KEY_SECRET)
        signature = sign_payment("order_abc", "pay_xyz")
        assert verifier.verify_payment("pay_xyz", "order_abc", signature) is False

    @pytest.mark.unit
    def test_missing_fields_rejected(self) -> None:
        verifier = SignatureVerifier(WEBHOOK_SECRET, KEY_SECRET)
        assert verifier.verify_payment("order_abc", None, "sig") is False
        assert verifier.verify_payment("order_abc", "pay_xyz", "") is False

    @pytest.mark.unit
    def test_missing_key_secret_fails_closed(self) -> None:
        verifier = SignatureVerifier(WEBHOOK_SECRET)
        signature = sign_payment("order_abc", "pay_xyz")
        assert verifier.verify_payment("order_abc", "pay_xyz", signature) is False
