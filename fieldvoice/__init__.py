"""
FIELDVOICE - Voice Command Pipeline for Field Operations

Turns spoken commands into application actions while staying usable as
connectivity and provider availability degrade.

Architecture:
    - Capture: conditioned microphone audio segmented into utterances
    - Providers: STT / intent reasoning / TTS, network or on-device, with
      health tracking and ranked selection
    - Degradation: one authoritative level (FULL, PARTIAL, BASIC, DISABLED)
      gating which provider tiers each stage may use
    - Recovery: a single retry / backoff / fallback policy table
"""

__version__ = "0.1.0"

# Version tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)

from fieldvoice.exceptions import FieldVoiceError

from fieldvoice.types import (
    ActionOutcome,
    ActionType,
    ContextSnapshot,
    DegradationLevel,
    FailureKind,
    Intent,
    ProviderRole,
    ProviderTier,
    RecoveryAction,
    Utterance,
    VoiceTurnResult,
)

from fieldvoice.orchestrator import (
    PipelineState,
    VoicePipeline,
    create_voice_pipeline,
)
