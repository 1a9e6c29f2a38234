import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict


class Enhancement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    prompt: str


def load_default_enhancements() -> List[Enhancement]:
    json_path = Path(__file__).parent / "enhancement_prompts.json"

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return [Enhancement.model_validate(item) for item in data]


_default_enhancements: Optional[List[Enhancement]] = None


def get_default_enhancements() -> List[Enhancement]:
    global _default_enhancements
    if _default_enhancements is None:
        _default_enhancements = load_default_enhancements()
    return _default_enhancements


def index_enhancements(enhancements: Iterable[Enhancement]) -> Dict[str, Enhancement]:
    """Map prompt id to preset. The first preset wins on duplicate ids."""
    result: Dict[str, Enhancement] = {}
    for enhancement in enhancements:
        result.setdefault(enhancement.id, enhancement)
    return result
