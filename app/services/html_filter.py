from typing import Sequence, Tuple


def apply_html_substitutions(body: bytes, rules: Sequence[Tuple[bytes, bytes]]) -> bytes:
    """Apply replacement rules in order, each one to the output of the previous.

    Every rule replaces all non-overlapping occurrences of its pattern. Rules
    with an empty pattern are ignored.
    """
    for pattern, replacement in rules:
        if not pattern:
            continue
        body = body.replace(pattern, replacement)
    return body
