"""Deterministic string similarity algorithms for fuzzy rules."""

from __future__ import annotations

from collections.abc import Callable

_JW_PREFIX_SCALE = 0.1
_JW_MAX_PREFIX = 4


def jaro_similarity(left: str, right: str) -> float:
    """Return the Jaro similarity of two strings in [0, 1]."""

    if left == right:
        return 1.0
    left_len = len(left)
    right_len = len(right)
    if left_len == 0 or right_len == 0:
        return 0.0

    match_window = max(max(left_len, right_len) // 2 - 1, 0)
    left_matched = [False] * left_len
    right_matched = [False] * right_len
    matches = 0
    for i, char in enumerate(left):
        start = max(0, i - match_window)
        end = min(i + match_window + 1, right_len)
        for j in range(start, end):
            if right_matched[j] or right[j] != char:
                continue
            left_matched[i] = True
            right_matched[j] = True
            matches += 1
            break
    if matches == 0:
        return 0.0

    transpositions = 0
    j = 0
    for i in range(left_len):
        if not left_matched[i]:
            continue
        while not right_matched[j]:
            j += 1
        if left[i] != right[j]:
            transpositions += 1
        j += 1
    half_transpositions = transpositions / 2
    return (
        matches / left_len
        + matches / right_len
        + (matches - half_transpositions) / matches
    ) / 3.0


def jaro_winkler_similarity(left: str, right: str) -> float:
    """Jaro similarity boosted by the length of the common prefix (max 4)."""

    jaro = jaro_similarity(left, right)
    prefix = 0
    for left_char, right_char in zip(left[:_JW_MAX_PREFIX], right[:_JW_MAX_PREFIX]):
        if left_char != right_char:
            break
        prefix += 1
    return jaro + prefix * _JW_PREFIX_SCALE * (1.0 - jaro)


def levenshtein_distance(left: str, right: str) -> int:
    """Return the minimum number of single-character edits between two strings."""

    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def levenshtein_similarity(left: str, right: str) -> float:
    """Edit distance scaled to [0, 1] by the longer string's length."""

    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(left, right) / longest


SIMILARITY_ALGORITHMS: dict[str, Callable[[str, str], float]] = {
    "jaro_winkler": jaro_winkler_similarity,
    "levenshtein": levenshtein_similarity,
}


def get_similarity_algorithm(name: str) -> Callable[[str, str], float]:
    """Return the similarity function registered under ``name``."""

    try:
        return SIMILARITY_ALGORITHMS[name]
    except KeyError:
        supported = ", ".join(sorted(SIMILARITY_ALGORITHMS))
        raise KeyError(f"Unknown similarity algorithm '{name}' (supported: {supported})") from None
