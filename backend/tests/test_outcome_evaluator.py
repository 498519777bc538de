"""
Outcome evaluation and the push/void policy switch
"""
import pytest

from core.outcome_evaluator import LegOutcome, ParlayOutcome, PushVoidPolicy, evaluate


class TestBasicOutcomes:
    def test_all_win(self):
        result = evaluate(["win", "win", "win"])
        assert result.outcome == ParlayOutcome.WIN
        assert result.effective_leg_count == 3
        assert result.is_final

    def test_any_loss_loses(self):
        result = evaluate(["win", "loss", "win"])
        assert result.outcome == ParlayOutcome.LOSS
        assert result.reason == "LEG_LOST"

    def test_loss_beats_push_under_either_policy(self):
        for policy in PushVoidPolicy:
            assert evaluate(["push", "loss"], policy).outcome == ParlayOutcome.LOSS

    def test_pending_is_indeterminate(self):
        result = evaluate([("a", "win"), ("b", "pending")])
        assert result.outcome == ParlayOutcome.INDETERMINATE
        assert result.reason == "PENDING_LEGS:b"
        assert not result.is_final

    def test_pending_wins_over_loss(self):
        """Nothing is decided while a leg is still ungraded"""
        assert evaluate(["loss", "pending"]).outcome == ParlayOutcome.INDETERMINATE

    def test_no_legs(self):
        result = evaluate([])
        assert result.outcome == ParlayOutcome.INDETERMINATE
        assert result.reason == "NO_LEGS"

    def test_accepts_enum_values(self):
        assert evaluate([LegOutcome.WIN]).outcome == ParlayOutcome.WIN

    def test_unknown_outcome_rejected(self):
        with pytest.raises(ValueError):
            evaluate(["maybe"])


class TestPushVoidPolicy:
    def test_default_policy_treats_push_as_loss(self):
        result = evaluate([("a", "win"), ("b", "push")])
        assert result.outcome == ParlayOutcome.LOSS
        assert result.voided_legs == ("b",)
        assert result.reason == "PUSH_VOID_AS_LOSS"

    def test_void_leg_recomputes_leg_count(self):
        result = evaluate([("a", "win"), ("b", "void"), ("c", "win"), ("d", "push")], PushVoidPolicy.VOID_LEG)
        assert result.outcome == ParlayOutcome.WIN
        assert result.effective_leg_count == 2
        assert result.voided_legs == ("b", "d")

    def test_all_voided_is_indeterminate(self):
        result = evaluate(["void", "push"], PushVoidPolicy.VOID_LEG)
        assert result.outcome == ParlayOutcome.INDETERMINATE
        assert result.reason == "ALL_LEGS_VOIDED"

    def test_parse(self):
        assert PushVoidPolicy.parse("void_leg") == PushVoidPolicy.VOID_LEG
        assert PushVoidPolicy.parse(" LOSS ") == PushVoidPolicy.LOSS
        assert PushVoidPolicy.parse(PushVoidPolicy.LOSS) == PushVoidPolicy.LOSS

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            PushVoidPolicy.parse("REFUND")
