"""Playback transport state machine and audio-output command types."""

from .audio import (
    AudioOutputInterface,
    NullAudioOutput,
    SetRate,
    SetVolume,
    StartDecodingFrom,
    StopDecoding,
)
from .engine import CompletionPolicy, PlaybackEngine, TransportState

__all__ = [
    "AudioOutputInterface",
    "CompletionPolicy",
    "NullAudioOutput",
    "PlaybackEngine",
    "SetRate",
    "SetVolume",
    "StartDecodingFrom",
    "StopDecoding",
    "TransportState",
]
