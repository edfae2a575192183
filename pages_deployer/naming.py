import re

_INVALID = re.compile(r"[^a-z0-9-]")
_DASHES = re.compile(r"-+")


def canonicalize(task_name: str) -> str:
    """Turn a free-form task name into a GitHub repository name.

    Lower-cases, maps anything outside ``[a-z0-9-]`` to ``-``, collapses dash
    runs and trims dashes from both ends. Canonical names map to themselves.
    """
    name = _INVALID.sub("-", (task_name or "").lower())
    name = _DASHES.sub("-", name)
    return name.strip("-")
