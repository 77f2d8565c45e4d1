"""Single-occurrence string replacement used by the editFile tool.

An exact match is tried first. If there is none, the old text is matched
line by line ignoring leading and trailing whitespace, so that small
indentation differences in model output still land.
"""

import re

_QUOTES = str.maketrans({"\u2018": "'", "\u2019": "'", "\u201c": '"', "\u201d": '"'})


def _line_key(line: str) -> str:
    return line.strip().translate(_QUOTES)


def _line_offsets(content: str) -> list[int]:
    offsets = [0]
    for m in re.finditer("\n", content):
        offsets.append(m.end())
    return offsets


def _find_trimmed(content: str, old_string: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of every whitespace-insensitive line match."""
    old_lines = old_string.strip("\n").split("\n")
    lines = content.split("\n")
    offsets = _line_offsets(content)
    keys = [_line_key(line) for line in lines]
    wanted = [_line_key(line) for line in old_lines]
    if not any(wanted):
        return []

    spans = []
    n = len(wanted)
    for i in range(len(lines) - n + 1):
        if keys[i : i + n] == wanted:
            end_line = i + n - 1
            spans.append((offsets[i], offsets[end_line] + len(lines[end_line])))
    return spans


def replace(content: str, old_string: str, new_string: str) -> str:
    """Replace exactly one occurrence of old_string.

    Raises ValueError when old_string is empty, identical to new_string,
    missing, or ambiguous.
    """
    if not old_string:
        raise ValueError("oldString must not be empty")
    if old_string == new_string:
        raise ValueError("oldString and newString are identical, nothing to change")

    count = content.count(old_string)
    if count == 1:
        return content.replace(old_string, new_string, 1)
    if count > 1:
        raise ValueError(
            f"oldString matches {count} locations, include more context to make it unique"
        )

    spans = _find_trimmed(content, old_string)
    if not spans:
        raise ValueError("oldString not found in file")
    if len(spans) > 1:
        raise ValueError(
            f"oldString matches {len(spans)} locations, include more context to make it unique"
        )
    start, end = spans[0]
    return content[:start] + new_string.strip("\n") + content[end:]
