from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import sounddevice as sd

from ...utils.logger import get_logger
from ..errors import CaptureError

logger = get_logger(__name__)


@dataclass
class AudioDevice:
    name: str
    index: int
    channels: int
    default_sample_rate: float


class AudioRecorder:
    """Microphone capture through sounddevice. Implements ``AudioCapture``."""

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        device: Optional[str] = None,
        on_audio_level: Optional[Callable[[float], None]] = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.on_audio_level = on_audio_level

        self._stream: Optional[sd.InputStream] = None
        self._audio_buffer: List[np.ndarray] = []
        self._is_recording = False

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    def start(self) -> None:
        if self._is_recording:
            return

        self._audio_buffer = []

        try:
            self._stream = sd.InputStream(
                samplerate=float(self.sample_rate),
                channels=self.channels,
                device=self._get_device_index(),
                dtype="float32",
                callback=self._audio_callback,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise CaptureError(f"Audio device error: {e}") from e
        except Exception as e:
            self._stream = None
            raise CaptureError(f"Failed to start recording: {e}") from e

        self._is_recording = True
        logger.debug("Recording started")

    def stop(self) -> Optional[np.ndarray]:
        if not self._is_recording:
            return None

        self._close_stream()

        if not self._audio_buffer:
            return None

        audio_data = np.concatenate(self._audio_buffer, axis=0)
        self._audio_buffer = []
        logger.debug(f"Recording stopped: {len(audio_data)} samples")
        return audio_data

    def cancel(self) -> None:
        if self._is_recording:
            self._close_stream()
        self._audio_buffer = []

    def _close_stream(self) -> None:
        self._is_recording = False
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as e:
                raise CaptureError(f"Audio device error: {e}") from e
            finally:
                self._stream = None

    def _audio_callback(self, indata: np.ndarray, frames: int, time, status) -> None:
        if status:
            logger.debug(f"Audio callback status: {status}")
        if self._is_recording:
            self._audio_buffer.append(indata.copy())

            if self.on_audio_level is not None:
                level = float(np.abs(indata).mean())
                self.on_audio_level(min(1.0, level * 10))

    def _get_device_index(self) -> Optional[int]:
        if self.device is None:
            return None

        for device in self.list_devices():
            if device.name == self.device:
                return device.index

        logger.warning(f"Input device '{self.device}' not found, using default")
        return None

    @staticmethod
    def list_devices() -> List[AudioDevice]:
        devices = []

        for i, device in enumerate(sd.query_devices()):
            if device["max_input_channels"] > 0:
                devices.append(
                    AudioDevice(
                        name=device["name"],
                        index=i,
                        channels=device["max_input_channels"],
                        default_sample_rate=device["default_samplerate"],
                    )
                )

        return devices
