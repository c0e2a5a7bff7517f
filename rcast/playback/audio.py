"""Commands sent to the audio-output collaborator.

The playback engine never decodes audio itself. It sends these intents to an
AudioOutputInterface implementation owned by the host application, which in
turn reports position and end-of-stream back through the engine's callbacks
using the token of the StartDecodingFrom it is serving.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartDecodingFrom:
    """Start (or restart) decoding `source` at `position_millis`.

    `source` is a local file path or the enclosure URL for streaming.
    """

    source: str
    position_millis: int
    rate: float
    token: int


@dataclass(frozen=True)
class StopDecoding:
    token: int


@dataclass(frozen=True)
class SetRate:
    rate: float
    token: int


@dataclass(frozen=True)
class SetVolume:
    """Output volume on a 0-100 scale."""

    volume: float


AudioCommand = Union[StartDecodingFrom, StopDecoding, SetRate, SetVolume]


class AudioOutputInterface(ABC):
    """Receiver of playback commands."""

    @abstractmethod
    def send(self, command: AudioCommand) -> None:
        """
        Deliver one command. Must not call back into the engine synchronously.
        """
        pass


class NullAudioOutput(AudioOutputInterface):
    """Discards commands; used when no audio device is attached."""

    def send(self, command: AudioCommand) -> None:
        logger.debug(f"Audio command ignored: {command}")
