"""Pure functions for extracting the program from a model response."""

from __future__ import annotations

import re
from typing import Optional

FN_START = "■fn_start"
FN_END = "■fn_end"


def extract_code(response: str) -> Optional[str]:
    """Extract Python code from a model response.

    Uses a layered extraction approach with fallback chain:
    1. Marker block: everything after ``■fn_start`` (up to ``■fn_end``)
    2. Fenced blocks: ```python, ~~~python, bare ```
    3. Indented blocks: 4-space or tab-indented code
    """
    # Layer 1: Marker block
    marked = extract_marker_block(response)
    if marked is not None:
        fenced = extract_fenced_blocks(marked)
        return fenced[0].strip() if fenced else marked.strip()

    # Layer 2: Fenced blocks
    matches = extract_fenced_blocks(response)
    if matches:
        return matches[0].strip()

    # Layer 3: Indented blocks
    indented = extract_indented_block(response)
    if indented and looks_like_python(indented):
        return indented

    return None


def extract_marker_block(response: str) -> Optional[str]:
    """Return the text between the program markers.

    The closing marker is usually consumed as a stop sequence, so a missing
    ``■fn_end`` means "until the end of the response".
    """
    start = response.find(FN_START)
    if start < 0:
        return None
    body = response[start + len(FN_START) :]
    end = body.find(FN_END)
    return body if end < 0 else body[:end]


def extract_fenced_blocks(response: str) -> list[str]:
    """Extract all fenced code blocks from a response.

    Tries multiple fence styles in order:
    1. ```python ... ```
    2. ~~~python ... ~~~
    3. ``` ... ``` (validates as Python)
    """
    pattern = r"```(?:python|py)\s*(.*?)```"
    matches = re.findall(pattern, response, re.DOTALL)
    if matches:
        return matches

    pattern = r"~~~(?:python|py)\s*(.*?)~~~"
    matches = re.findall(pattern, response, re.DOTALL)
    if matches:
        return matches

    pattern = r"```\s*(.*?)```"
    matches = re.findall(pattern, response, re.DOTALL)
    if matches:
        python_matches = [m for m in matches if looks_like_python(m)]
        if python_matches:
            return python_matches

    return []


def extract_indented_block(response: str) -> Optional[str]:
    """Extract code from an indented block (4 spaces or tab).

    Finds contiguous indented lines and returns them with indentation removed.
    """
    lines = response.split("\n")
    code_lines: list[str] = []
    in_code = False

    for line in lines:
        if line.startswith("    ") or line.startswith("\t"):
            in_code = True
            code_lines.append(line[4:] if line.startswith("    ") else line[1:])
        elif in_code:
            if line.strip():
                break
            code_lines.append("")

    while code_lines and not code_lines[-1].strip():
        code_lines.pop()
    return "\n".join(code_lines) if code_lines else None


def looks_like_python(code: str) -> bool:
    """Check if code looks like a program."""
    indicators = [
        "def ",
        "await ",
        "print(",
        "for ",
        "if ",
        "while ",
        "return ",
        "= ",
        "==",
        "+=",
        "try:",
        "except",
        "think(",
    ]
    return any(ind in code for ind in indicators)
