"""
Cell parsing utilities for the Kiln plugin.

Buffers are split into cells by lines matching a delimiter regex such as
'# %%'. Line numbers in and out of this module are 1-indexed, like Neovim's.
"""
import re
from typing import List, Tuple


def _is_delimiter(line: str, delimiter_pattern: str) -> bool:
    return re.match(delimiter_pattern, line.strip()) is not None


def _strip_blank_edges(cell_lines: List[str]) -> List[str]:
    start, end = 0, len(cell_lines)
    while start < end and not cell_lines[start].strip():
        start += 1
    while end > start and not cell_lines[end - 1].strip():
        end -= 1
    return cell_lines[start:end]


def extract_cell(lines: List[str], lnum: int, delimiter_pattern: str) -> Tuple[str, int, int]:
    """
    Extract the code cell containing line lnum.

    A cursor on a delimiter line belongs to the cell that the delimiter opens.

    Args:
        lines: List of buffer lines
        lnum: Current line number (1-indexed)
        delimiter_pattern: Regex pattern for cell delimiters

    Returns:
        tuple: (cell_code, cell_start_line, cell_end_line) where lines are 1-indexed
    """
    if not lines:
        return "", 0, 0

    idx = min(max(lnum - 1, 0), len(lines) - 1)

    start = 0
    for i in range(idx, -1, -1):
        if _is_delimiter(lines[i], delimiter_pattern):
            start = i + 1
            break

    end = len(lines)
    for i in range(idx + 1, len(lines)):
        if _is_delimiter(lines[i], delimiter_pattern):
            end = i
            break

    code = '\n'.join(_strip_blank_edges(lines[start:end]))
    return code, start + 1, end


def extract_line(lines: List[str], lnum: int) -> str:
    """Return line lnum (1-indexed) without surrounding whitespace, or '' when out of range."""
    if lnum < 1 or lnum > len(lines):
        return ""
    return lines[lnum - 1].strip()
