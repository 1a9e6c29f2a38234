"""
Local inference engine adapters.

The pipeline only ever talks to an engine through the three calls of
``InferenceEngine``: load a model directory, run it on a buffer of samples,
unload it. ``SherpaOnnxEngine`` is the default implementation.
"""

import os
from typing import Any, Protocol, runtime_checkable

import numpy as np

from ...utils.logger import get_logger
from .file_utils import detect_model_type, find_file_by_suffix, find_file_exact

logger = get_logger(__name__)


@runtime_checkable
class InferenceEngine(Protocol):
    def load(self, model_path: str) -> Any:
        """Load a model and return an opaque native instance."""

    def run(self, native: Any, audio: np.ndarray, sample_rate: int) -> str:
        """Transcribe ``audio`` with a loaded instance."""

    def unload(self, native: Any) -> None:
        """Free a loaded instance."""


def to_mono_float32(audio: np.ndarray) -> np.ndarray:
    if audio.dtype == np.int16:
        audio_float = audio.astype(np.float32) / 32768.0
    else:
        audio_float = audio.astype(np.float32)

    if audio_float.ndim > 1:
        audio_float = (
            audio_float[:, 0] if audio_float.shape[1] > 1 else audio_float.flatten()
        )
    return audio_float


class SherpaOnnxEngine:
    def __init__(self, num_threads: int = 4, provider: str = "cpu"):
        self.num_threads = num_threads
        self.provider = provider

    def load(self, model_path: str) -> Any:
        import sherpa_onnx

        if not os.path.isdir(model_path):
            raise RuntimeError(
                f"Model directory not found: {model_path}. "
                f"Please download the model first."
            )

        model_type = detect_model_type(model_path)
        if model_type is None:
            raise RuntimeError(f"Unrecognized model files in {model_path}")

        logger.info(
            f"Loading model '{os.path.basename(model_path)}' as type '{model_type}' "
            f"with {self.provider.upper()} provider"
        )

        if model_type == "whisper":
            return sherpa_onnx.OfflineRecognizer.from_whisper(
                encoder=find_file_by_suffix(
                    model_path, "-encoder.onnx", "-encoder.int8.onnx"
                ),
                decoder=find_file_by_suffix(
                    model_path, "-decoder.onnx", "-decoder.int8.onnx"
                ),
                tokens=find_file_by_suffix(model_path, "-tokens.txt", "tokens.txt"),
                num_threads=self.num_threads,
                provider=self.provider,
                debug=False,
                decoding_method="greedy_search",
            )

        return sherpa_onnx.OfflineRecognizer.from_transducer(
            encoder=find_file_exact(
                model_path, ["encoder.onnx", "encoder.int8.onnx", "encoder.fp16.onnx"]
            ),
            decoder=find_file_exact(
                model_path, ["decoder.onnx", "decoder.int8.onnx", "decoder.fp16.onnx"]
            ),
            joiner=find_file_exact(
                model_path, ["joiner.onnx", "joiner.int8.onnx", "joiner.fp16.onnx"]
            ),
            tokens=find_file_exact(model_path, ["tokens.txt"]),
            num_threads=self.num_threads,
            provider=self.provider,
            debug=False,
            decoding_method="greedy_search",
            model_type="nemo_transducer",
        )

    def run(self, native: Any, audio: np.ndarray, sample_rate: int) -> str:
        stream = native.create_stream()
        stream.accept_waveform(sample_rate, to_mono_float32(audio))
        native.decode_stream(stream)
        return stream.result.text

    def unload(self, native: Any) -> None:
        # The recognizer frees its ONNX sessions when garbage collected.
        del native
