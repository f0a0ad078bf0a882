"""
Provider-agnostic sanitizer for model output.

Reasoning models sometimes echo their chain of thought or the transcript
framing back at us; both are stripped before text reaches the user.
"""

import re

_REASONING_BLOCKS = [
    re.compile(r'<think>.*?</think>', re.IGNORECASE | re.DOTALL),
    re.compile(r'<thinking>.*?</thinking>', re.IGNORECASE | re.DOTALL),
    re.compile(r'<reasoning>.*?</reasoning>', re.IGNORECASE | re.DOTALL),
]

_TRANSCRIPT_TAGS = re.compile(r'</?TRANSCRIPT>', re.IGNORECASE)


def filter_output(text: str) -> str:
    """Remove reasoning blocks and transcript tags, then trim whitespace."""
    if not text:
        return ""

    cleaned = text
    for pattern in _REASONING_BLOCKS:
        cleaned = pattern.sub('', cleaned)

    cleaned = _TRANSCRIPT_TAGS.sub('', cleaned)

    # Collapse the blank lines a removed block leaves behind
    cleaned = re.sub(r'\n{3,}', '\n\n', cleaned)

    return cleaned.strip()
