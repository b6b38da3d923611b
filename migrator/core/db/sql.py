"""SQL script helpers.

Migration scripts are opaque to the engine, but most DBAPI drivers execute a
single statement per call, so scripts are split on top-level semicolons before
they are sent to the driver.
"""

import re

_TRIGGER_RE = re.compile(r"^\s*CREATE\s+(?:TEMP\s+|TEMPORARY\s+)?TRIGGER\b", re.IGNORECASE)


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments outside of quoted literals."""
    return "".join(_scan(sql, keep_comments=False))


def split_statements(sql: str) -> list[str]:
    """Split a script into individual statements.

    Semicolons inside quoted literals, quoted identifiers, comments and
    ``CREATE TRIGGER ... BEGIN ... END`` bodies do not terminate a statement.

    Args:
        sql: Script text.

    Returns:
        Non-empty statements without their trailing semicolon.
    """
    statements: list[str] = []
    current: list[str] = []
    depth = 0
    word: list[str] = []

    def flush_word() -> None:
        nonlocal depth
        if not word:
            return
        token = "".join(word).upper()
        word.clear()
        if _TRIGGER_RE.match("".join(current)):
            if token in ("BEGIN", "CASE"):
                depth += 1
            elif token == "END" and depth > 0:
                depth -= 1

    for chunk in _scan(sql, keep_comments=False):
        if len(chunk) > 1 or chunk in ("'", '"', "`"):
            # quoted literal, emitted whole
            flush_word()
            current.append(chunk)
            continue
        if chunk.isalnum() or chunk == "_":
            word.append(chunk)
            current.append(chunk)
            continue
        flush_word()
        if chunk == ";" and depth == 0:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            continue
        current.append(chunk)

    flush_word()
    statement = "".join(current).strip()
    if statement:
        statements.append(statement)
    return statements


def _scan(sql: str, keep_comments: bool):
    """Yield single characters, whole quoted literals, and (optionally) comments."""
    i = 0
    length = len(sql)
    while i < length:
        char = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ""

        if char == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = length if end == -1 else end
            if keep_comments:
                yield sql[i:end]
            i = end
            continue

        if char == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            end = length if end == -1 else end + 2
            if keep_comments:
                yield sql[i:end]
            else:
                yield " "
            i = end
            continue

        if char in ("'", '"', "`"):
            j = i + 1
            while j < length:
                # backslash is an ordinary character in standard SQL literals
                if sql[j] == char:
                    # doubled quote is an escaped quote
                    if j + 1 < length and sql[j + 1] == char:
                        j += 2
                        continue
                    break
                j += 1
            yield sql[i : j + 1]
            i = j + 1
            continue

        yield char
        i += 1


def has_unbalanced_quotes(sql: str) -> bool:
    """Return True when a quoted literal or identifier is never closed."""
    for chunk in _scan(sql, keep_comments=False):
        if chunk[0] in ("'", '"', "`") and (len(chunk) == 1 or chunk[-1] != chunk[0]):
            return True
    return False


def mask_literals(sql: str) -> str:
    """Replace quoted literals with empty ones and drop comments."""
    return "".join(
        chunk[0] * 2 if chunk[0] in ("'", '"', "`") else chunk for chunk in _scan(sql, keep_comments=False)
    )
