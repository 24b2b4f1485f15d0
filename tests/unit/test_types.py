"""
Unit tests for FIELDVOICE shared types.

Run:
    pytest tests/unit/test_types.py -v
"""

import pytest

from fieldvoice.types import (
    ActionOutcome,
    ActionType,
    ContextSnapshot,
    DegradationLevel,
    FailureKind,
    Intent,
    IntentSource,
    ProviderRole,
    ProviderTier,
    RecognitionState,
    Utterance,
    VoiceTurnResult,
)


class TestDegradationLevel:
    """Tier permission table."""

    def test_full_allows_everything(self):
        for role in ProviderRole:
            assert DegradationLevel.FULL.allowed_tiers(role) == {
                ProviderTier.NETWORK, ProviderTier.LOCAL
            }

    def test_partial_keeps_network_stt_only(self):
        level = DegradationLevel.PARTIAL
        assert ProviderTier.NETWORK in level.allowed_tiers(ProviderRole.STT)
        assert level.allowed_tiers(ProviderRole.INTENT) == {ProviderTier.LOCAL}
        assert level.allowed_tiers(ProviderRole.TTS) == {ProviderTier.LOCAL}

    def test_basic_is_local_only(self):
        for role in ProviderRole:
            assert DegradationLevel.BASIC.allowed_tiers(role) == {ProviderTier.LOCAL}

    def test_disabled_allows_nothing(self):
        for role in ProviderRole:
            assert not DegradationLevel.DISABLED.allowed_tiers(role)

    def test_each_level_restricts_previous(self):
        levels = list(DegradationLevel)
        for better, worse in zip(levels, levels[1:]):
            assert worse.is_worse_than(better)
            for role in ProviderRole:
                assert worse.allowed_tiers(role) <= better.allowed_tiers(role)


class TestActionType:

    @pytest.mark.parametrize("raw,expected", [
        ("create_record", ActionType.CREATE_RECORD),
        ("CreateRecord", ActionType.CREATE_RECORD),
        ("setActiveContext", ActionType.SET_ACTIVE_CONTEXT),
        (" navigate ", ActionType.NAVIGATE),
        ("Unknown", ActionType.UNKNOWN),
    ])
    def test_parse(self, raw, expected):
        assert ActionType.parse(raw) is expected

    def test_parse_rejects_unknown_action(self):
        with pytest.raises(ValueError):
            ActionType.parse("delete_everything")


class TestUtterance:
    """Utterance ownership and transcript rules."""

    def test_interims_non_decreasing(self):
        utterance = Utterance(raw_audio=b"\x00\x00")
        first = utterance.add_interim("create", 0.4)
        second = utterance.add_interim("create job", 0.5)
        assert second.received_at >= first.received_at
        assert [s.text for s in utterance.interim_transcripts] == ["create", "create job"]

    def test_final_set_once(self):
        utterance = Utterance()
        utterance.set_final("go to schedule", 0.9)
        with pytest.raises(ValueError):
            utterance.set_final("again", 0.9)

    def test_final_not_before_interims(self):
        utterance = Utterance()
        interim = utterance.add_interim("go", 0.3)
        final = utterance.set_final("go to schedule", 0.9)
        assert final.received_at >= interim.received_at

    def test_release(self):
        utterance = Utterance(raw_audio=b"\x01\x02")
        assert not utterance.is_released
        utterance.release()
        utterance.release()
        assert utterance.is_released
        assert utterance.raw_audio is None

    def test_duration(self):
        utterance = Utterance()
        assert utterance.duration_sec == 0.0
        utterance.finish()
        assert utterance.duration_sec >= 0.0


class TestIntent:

    def test_entities_immutable(self):
        entities = {"title": "Roof Repair"}
        intent = Intent(ActionType.CREATE_RECORD, entities, 0.7)
        entities["title"] = "changed"
        assert intent.entities["title"] == "Roof Repair"
        with pytest.raises(TypeError):
            intent.entities["title"] = "x"

    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            Intent(ActionType.QUERY, {}, 1.2)

    def test_unknown(self):
        intent = Intent.unknown()
        assert intent.action is ActionType.UNKNOWN
        assert intent.confidence == 0.0
        assert not intent.is_actionable
        assert intent.source is IntentSource.OFFLINE_PATTERN

    def test_to_dict(self):
        intent = Intent(ActionType.NAVIGATE, {"destination": "schedule"}, 0.7)
        assert intent.to_dict()["entities"] == {"destination": "schedule"}
        assert intent.to_dict()["action"] == "navigate"


class TestVoiceTurnResult:

    def test_success_dict(self):
        utterance = Utterance()
        utterance.set_final("go to schedule", 0.9)
        result = VoiceTurnResult(
            utterance=utterance,
            intent=Intent(ActionType.NAVIGATE, {"destination": "schedule"}, 0.7),
            action_outcome=ActionOutcome(True, "opened"),
            spoken_response="Opening schedule",
            degradation_level_at_run=DegradationLevel.BASIC,
            sequence=4,
        )
        data = result.to_dict()
        assert result.succeeded
        assert data["transcript"] == "go to schedule"
        assert data["degradation_level"] == "basic"
        assert data["failure"] is None
        assert data["sequence"] == 4

    def test_failure_dict(self):
        result = VoiceTurnResult(
            utterance=None,
            intent=None,
            action_outcome=None,
            spoken_response="",
            degradation_level_at_run=DegradationLevel.DISABLED,
            failure=FailureKind.NO_PROVIDER_AVAILABLE,
        )
        assert not result.succeeded
        assert result.transcript == ""
        assert result.to_dict()["failure"] == "no_provider_available"

    def test_clarification_outcome_not_dispatched(self):
        outcome = ActionOutcome.clarification()
        assert not outcome.success
        assert not outcome.dispatched


def test_recognition_terminal_states():
    assert RecognitionState.FINALIZED.is_terminal
    assert RecognitionState.FAILED.is_terminal
    assert not RecognitionState.LISTENING.is_terminal


def test_context_snapshot_dict():
    snapshot = ContextSnapshot("job-1", "jobs", ("navigate",))
    assert snapshot.to_dict()["recent_action_history"] == ["navigate"]
