"""
CSV helpers for uploaded address lists.

This module provides utilities for:
- Delimiter detection from a leading sample of the upload
- Header normalization (BOM removal, whitespace trimming, duplicate handling)
- Locating the email column in a header row
- Email extraction from display formats (Name <email>, "email", etc.)
- Email normalization (lowercase domain, strip whitespace and wrapping quotes)
"""

import re
from typing import Any

# BOM characters to strip
BOM_CHARS = "\ufeff\ufffe"

DELIMITER_CANDIDATES = (",", ";", "\t")

# Regex for extracting email from "Name <email@domain.com>" format
ANGLE_BRACKET_EMAIL_RE = re.compile(r"<([^<>@\s]+@[^<>@\s]+)>")
# Regex for extracting email from "email@domain.com (Name)" format
PAREN_EMAIL_RE = re.compile(r"^([^@\s]+@[^@\s]+)\s*\(.*\)$")


def detect_delimiter(sample: str, sample_lines: int = 5) -> str:
    """
    Guess the delimiter of a CSV from its first few lines.

    Each candidate is scored by how many times it appears per line (outside
    quotes) and how consistent that count is. Comma wins ties and is the
    fallback when nothing matches.

    Args:
        sample: Leading text of the file (a few KB is enough)
        sample_lines: Number of complete lines to analyze

    Returns:
        The detected delimiter character
    """
    lines = [line for line in sample.splitlines()[:sample_lines] if line.strip()]
    if not lines:
        return ","

    lines[0] = lines[0].lstrip(BOM_CHARS)

    best_delim = ","
    best_score = 0.0
    for delim in DELIMITER_CANDIDATES:
        counts = [_count_delimiter_outside_quotes(line, delim) for line in lines]
        avg = sum(counts) / len(counts)
        if avg == 0:
            continue
        variance = sum((c - avg) ** 2 for c in counts) / len(counts)
        score = avg / (1 + variance / avg)
        # Strictly greater: earlier candidates (comma first) win ties
        if score > best_score:
            best_score = score
            best_delim = delim

    return best_delim


def _count_delimiter_outside_quotes(line: str, delim: str) -> int:
    """Count delimiter occurrences outside of double-quoted fields."""
    count = 0
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == delim and not in_quotes:
            count += 1
    return count


def normalize_headers(headers: list[str]) -> tuple[list[str], dict[str, Any]]:
    """
    Normalize CSV headers: trim whitespace, remove BOM, handle duplicates.

    The normalized names are used as record keys for validation only; the
    output file keeps the original header row.

    Duplicate handling:
    - First occurrence keeps original name
    - Subsequent occurrences get "_2", "_3", etc. suffix

    Returns:
        Tuple of (normalized_headers, mapping_info) where mapping_info has
        "duplicates" (name -> renamed versions) and "had_duplicates".
    """
    normalized: list[str] = []
    seen: dict[str, int] = {}
    duplicates: dict[str, list[str]] = {}

    for i, header in enumerate(headers):
        clean = header.strip().lstrip(BOM_CHARS).strip()

        if not clean:
            clean = f"column_{i + 1}"

        if clean in seen:
            seen[clean] += 1
            new_name = f"{clean}_{seen[clean]}"
            duplicates.setdefault(clean, [clean]).append(new_name)
            clean = new_name
        else:
            seen[clean] = 1

        normalized.append(clean)

    return normalized, {"duplicates": duplicates, "had_duplicates": bool(duplicates)}


def find_email_column(headers: list[str]) -> str | None:
    """
    Pick the column holding email addresses.

    Heuristic: the first header containing "email" (case-insensitive), so
    "Email", "work_email" and "E-Mail Address" style names all match via
    their lowercase form. When no header matches, the first column is used.
    Returns None only for an empty header list.
    """
    if not headers:
        return None
    for header in headers:
        lowered = header.lower()
        if "email" in lowered or "e-mail" in lowered:
            return header
    return headers[0]


def extract_email_from_field(value: str) -> str:
    """
    Extract email address from various field formats.

    Supported formats:
    - "Name <email@domain.com>" -> email@domain.com
    - "email@domain.com (Name)" -> email@domain.com
    - "<email@domain.com>" -> email@domain.com
    - '"email@domain.com"' -> email@domain.com
    - Plain email -> email@domain.com

    Returns the extracted address, or the cleaned value if no pattern matched.
    """
    if not value:
        return ""

    value = value.strip()

    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        value = value[1:-1].strip()

    match = ANGLE_BRACKET_EMAIL_RE.search(value)
    if match:
        return match.group(1).strip()

    match = PAREN_EMAIL_RE.match(value)
    if match:
        return match.group(1).strip()

    return value


def normalize_email(email: str) -> str:
    """
    Normalize an email address for consistent validation.

    Strips whitespace and surrounding quotes or angle brackets, then lowercases
    the domain (local part case is preserved per RFC 5321). Trailing
    punctuation is left in place for the syntax check to reject.

    Returns the normalized address, or "" when there is no usable
    local@domain pair.
    """
    if not email:
        return ""

    email = email.strip()

    if len(email) >= 2 and email[0] == email[-1] and email[0] in ('"', "'"):
        email = email[1:-1].strip()

    if email.startswith("<") and email.endswith(">"):
        email = email[1:-1].strip()

    if "@" not in email:
        return ""

    local_part, domain = email.rsplit("@", 1)
    local_part = local_part.strip()
    domain = domain.strip().lower()
    if not local_part or not domain:
        return ""

    return f"{local_part}@{domain}"
