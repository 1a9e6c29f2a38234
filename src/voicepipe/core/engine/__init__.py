from .backends import InferenceEngine, SherpaOnnxEngine
from .file_utils import get_models_dir, resolve_model_path
from .manager import EngineHandle, EngineResourceManager

__all__ = [
    "InferenceEngine",
    "SherpaOnnxEngine",
    "EngineHandle",
    "EngineResourceManager",
    "get_models_dir",
    "resolve_model_path",
]
