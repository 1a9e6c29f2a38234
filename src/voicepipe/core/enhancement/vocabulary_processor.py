"""Vocabulary replacement processor."""

import re
from typing import Sequence, Tuple

from ...utils.logger import get_logger

logger = get_logger(__name__)


def apply_vocabulary_replacements(
    text: str,
    replacements: Sequence[Tuple[str, str]],
    case_sensitive: bool = True,
) -> str:
    """
    Apply vocabulary replacements to text.

    Replaces all occurrences of 'original' with 'replacement' for each rule.
    Processes rules in the order they were defined.

    Args:
        text: The raw transcript
        replacements: Sequence of (original, replacement) pairs
        case_sensitive: Whether to match case-sensitively (default True)

    Returns:
        Text with all replacements applied
    """
    if not replacements or not text:
        return text

    result = text
    for original, replacement in replacements:
        if not original:
            continue

        if case_sensitive:
            result = result.replace(original, replacement)
        else:
            result = re.sub(
                re.escape(original),
                lambda _match: replacement,
                result,
                flags=re.IGNORECASE,
            )

    if result != text:
        logger.debug(
            f"Applied vocabulary replacements: '{text[:50]}...' -> '{result[:50]}...'"
        )

    return result
