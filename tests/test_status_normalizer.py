"""
Unit tests for legacy -> canonical status normalization and the write gate
"""

import pytest

from models import LegacyTradeStatus, TradeStatus
from services.status_normalizer import StatusNormalizer, TransientStatusWriteError


class TestNormalize:

    @pytest.mark.parametrize("legacy, canonical", [
        ("pending", TradeStatus.OPEN),
        ("escrow_pending", TradeStatus.ACCEPTED),
        ("payment_pending", TradeStatus.ESCROWED),
        ("payment_confirmed", TradeStatus.PAYMENT_SENT),
        ("releasing", TradeStatus.COMPLETED),
        ("disputed", TradeStatus.DISPUTED),
    ])
    def test_legacy_values_collapse(self, legacy, canonical):
        assert StatusNormalizer.normalize(legacy) == canonical

    def test_canonical_values_pass_through(self):
        for status in TradeStatus:
            assert StatusNormalizer.normalize(status.value) == status
            assert StatusNormalizer.normalize(status) is status

    def test_unknown_value_raises(self):
        with pytest.raises(ValueError):
            StatusNormalizer.normalize("shipped")

    def test_mapping_is_complete(self):
        report = StatusNormalizer.validate_mapping_completeness()
        assert report["validation_passed"]
        assert report["total_legacy_statuses"] == len(LegacyTradeStatus)


class TestWriteGate:
    """Only canonical values may be written"""

    @pytest.mark.parametrize("transient", ["escrow_pending", "payment_pending", "payment_confirmed", "releasing"])
    def test_transient_values_rejected(self, transient):
        assert StatusNormalizer.is_transient(transient)
        with pytest.raises(TransientStatusWriteError) as exc_info:
            StatusNormalizer.validate_status_write(transient)
        assert exc_info.value.transient
        assert "Use minimal status instead" in str(exc_info.value)

    def test_pending_is_legacy_not_transient_but_still_rejected(self):
        assert not StatusNormalizer.is_transient("pending")
        with pytest.raises(TransientStatusWriteError) as exc_info:
            StatusNormalizer.validate_status_write("pending")
        assert exc_info.value.canonical == TradeStatus.OPEN
        assert not exc_info.value.transient

    def test_canonical_values_accepted(self):
        for status in TradeStatus:
            assert StatusNormalizer.validate_status_write(status.value) == status

    def test_unknown_values_are_plain_value_errors(self):
        with pytest.raises(ValueError) as exc_info:
            StatusNormalizer.validate_status_write("bogus")
        assert not isinstance(exc_info.value, TransientStatusWriteError)


class TestHelpers:

    def test_expand_status_lists_every_stored_alias(self):
        assert set(StatusNormalizer.expand_status("completed")) == {"completed", "releasing"}
        assert set(StatusNormalizer.expand_status(TradeStatus.OPEN)) == {"open", "pending"}
        assert StatusNormalizer.expand_status("open")[0] == "open"

    def test_actions(self):
        assert StatusNormalizer.normalize_action("mark_paid") == TradeStatus.PAYMENT_SENT
        assert StatusNormalizer.normalize_action(" Accept ") == TradeStatus.ACCEPTED
        assert StatusNormalizer.normalize_action("teleport") is None
        assert StatusNormalizer.normalize_action(None) is None

    def test_denormalize_and_equivalence(self):
        assert StatusNormalizer.denormalize("open") == LegacyTradeStatus.PENDING
        assert StatusNormalizer.denormalize("escrowed") == LegacyTradeStatus.ESCROWED
        assert StatusNormalizer.are_equivalent("releasing", "completed")
        assert not StatusNormalizer.are_equivalent("accepted", "escrowed")

    def test_display_names(self):
        assert StatusNormalizer.get_display_name("payment_confirmed") == "Payment Sent"
