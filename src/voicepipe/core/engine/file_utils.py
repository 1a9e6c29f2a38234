import os
from typing import Optional

import platformdirs


def get_models_dir() -> str:
    return os.path.join(
        platformdirs.user_data_dir("voicepipe", appauthor=False), "models"
    )


def resolve_model_path(model_id: str) -> str:
    """Model ids are directory names under the models dir, or absolute paths."""
    if os.path.isabs(model_id):
        return model_id
    return os.path.join(get_models_dir(), model_id)


def find_file_by_suffix(directory: str, *suffixes: str) -> Optional[str]:
    try:
        for filename in sorted(os.listdir(directory)):
            for suffix in suffixes:
                if filename.endswith(suffix):
                    return os.path.join(directory, filename)
    except OSError:
        pass
    return None


def has_file_with_suffix(directory: str, *suffixes: str) -> bool:
    return find_file_by_suffix(directory, *suffixes) is not None


def find_file_exact(directory: str, candidates: list[str]) -> Optional[str]:
    for name in candidates:
        path = os.path.join(directory, name)
        if os.path.exists(path):
            return path
    return None


def is_valid_whisper_model(model_path: str) -> bool:
    has_encoder = has_file_with_suffix(
        model_path, "-encoder.onnx", "-encoder.int8.onnx"
    )
    has_decoder = has_file_with_suffix(
        model_path, "-decoder.onnx", "-decoder.int8.onnx"
    )
    has_tokens = has_file_with_suffix(model_path, "-tokens.txt", "tokens.txt")
    return has_encoder and has_decoder and has_tokens


def is_valid_transducer_model(model_path: str) -> bool:
    return all(
        find_file_exact(model_path, candidates) is not None
        for candidates in (
            ["encoder.onnx", "encoder.int8.onnx", "encoder.fp16.onnx"],
            ["decoder.onnx", "decoder.int8.onnx", "decoder.fp16.onnx"],
            ["joiner.onnx", "joiner.int8.onnx", "joiner.fp16.onnx"],
            ["tokens.txt"],
        )
    )


def detect_model_type(model_path: str) -> Optional[str]:
    """Return ``"whisper"``, ``"transducer"`` or ``None`` for a model directory."""
    if is_valid_whisper_model(model_path):
        return "whisper"
    if is_valid_transducer_model(model_path):
        return "transducer"
    return None
