"""Turn raw push failures into messages worth putting in a status condition."""

from __future__ import annotations


WRITE_ACCESS_HINT = "push rejected; check git secret has write access"


def normalize_gitpython_push_error(text: str) -> str:
    """Normalize the summary line the GitPython backend reports for a failed push.

    Some providers (GitLab, at least) start stderr with a bare ``remote:``
    line, which is all that survives as the summary. The real reason is lost,
    but a rejected push with no explanation is nearly always missing write
    access.
    """
    if text.strip() == "remote:":
        return WRITE_ACCESS_HINT
    return text


def normalize_cli_push_error(text: str) -> str:
    """Collapse multi-line ``git push`` stderr into one readable line.

    Providers like to send banners, so every line loses its ``remote:`` prefix
    and any spaces, tabs or ``=`` fencing around it; empty lines are dropped
    and the rest joined under a single ``remote:`` prefix.
    """
    lines = text.split("\n")
    if len(lines) == 1:
        return text
    parts = []
    for line in lines:
        if line.startswith("remote:"):
            line = line[len("remote:"):]
        line = line.strip(" \t=")
        if line:
            parts.append(line)
    return "remote: " + " ".join(parts)
