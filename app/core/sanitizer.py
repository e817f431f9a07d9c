"""Heuristic cleanup of model output.

Two independent passes, applied in order:

* echo trim (continue/expand only): drop the user's original text when the
  model repeats it at the start of its answer;
* boilerplate strip (all actions): drop at most one conversational lead-in
  and at most one trailing explanation block.

Both are best-effort cosmetics. The pattern tables are plain data so new
phrasings can be added without touching the control flow.
"""

import re

from app.core.prompts import AIAction

ECHO_TRIM_ACTIONS = frozenset({AIAction.CONTINUE.value, AIAction.EXPAND.value})

# How far into the answer a verbatim echo may start and still be trimmed.
ECHO_SEARCH_WINDOW = 50

_LEADING_PUNCTUATION = re.compile(r"^[\s，。、；：！？,.;:!?]+")

PREFIX_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^当然可以[！!]\s*",
        r"^好的[，,]\s*",
        r"^以下是[^：:\n]*[：:]\s*\n*",
        r"^格式优化后[：:]\s*\n*",
        r"^优化结果[：:]\s*\n*",
        r"^排版美化后[：:]\s*\n*",
        r"^润色后[：:]\s*\n*",
        r"^摘要[：:]\s*\n*",
        r"^扩写后[：:]\s*\n*",
        r"^续写[：:]\s*\n*",
        r"^此版本[^。]*。[^\n]*\n+",
        r"^本次[^。]*。[^\n]*\n+",
        r"^这[是次][^。]*。[^\n]*\n+",
        r"^已[为对][^。]*。[^\n]*\n+",
        r"^保持了[^。]*。[^\n]*\n+",
        r"^(?:sure|certainly|of course|okay|ok)[!,.]?\s+",
        r"^here(?: is|'s| are) (?:the |your )?[^:\n]*:\s*\n*",
        r"^(?:summary|continuation|expanded (?:version|content)|polished (?:version|text)):\s*\n*",
    )
]

SUFFIX_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE | re.DOTALL)
    for p in (
        r"\n\n---\s*\n.*$",
        r"\n\n优化说明[：:].*$",
        r"\n\n说明[：:].*$",
        r"\n\n如图所示.*$",
        r"\n\n此版本.*$",
        r"\n\n本次.*$",
        r"\n\n以上.*$",
        r"\n\n希望.*$",
        r"\n\n(?:note|explanation)s?:.*$",
        r"\n\n(?:i hope|hope this|let me know).*$",
    )
]


def _trim_once(result: str, clean_original: str) -> str | None:
    clean_result = result.strip()

    # A prefix match is just the index == 0 case.
    index = clean_result.find(clean_original)
    if index == -1 or index >= ECHO_SEARCH_WINDOW:
        return None

    remainder = clean_result[index + len(clean_original):].strip()
    return _LEADING_PUNCTUATION.sub("", remainder)


def trim_echo(result: str, original: str) -> str:
    """Remove ``original`` when the model echoed it at the top of ``result``.

    Trimming repeats until no echo is left near the top, so running it on
    its own output changes nothing. Returns ``result`` unchanged when no echo
    is found.
    """
    clean_original = original.strip()
    if not clean_original:
        return result

    trimmed = _trim_once(result, clean_original)
    while trimmed is not None:
        result = trimmed
        trimmed = _trim_once(result, clean_original)
    return result


def strip_boilerplate(result: str) -> str:
    """Drop the first matching lead-in and the first matching trailer."""
    cleaned = result
    for pattern in PREFIX_PATTERNS:
        match = pattern.match(cleaned)
        if match:
            cleaned = cleaned[match.end():].strip()
            break

    for pattern in SUFFIX_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            cleaned = cleaned[: match.start()].strip()
            break

    return cleaned


def sanitize_response(result: str, original: str, action: AIAction | str) -> str:
    """Run both cleanup passes for ``action``."""
    action_value = action.value if isinstance(action, AIAction) else action
    if action_value in ECHO_TRIM_ACTIONS:
        result = trim_echo(result, original)
    return strip_boilerplate(result)
