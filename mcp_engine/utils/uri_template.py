"""Шаблоны URI RFC 6570 уровня 1 (`{var}`): сопоставление URI с шаблоном."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import unquote

_VARIABLE = re.compile(r"\{([A-Za-z0-9_]+)\}")


@lru_cache(maxsize=256)
def compile_uri_template(template: str) -> Tuple[Pattern[str], Tuple[str, ...]]:
    names: List[str] = []
    parts: List[str] = []
    position = 0
    for match in _VARIABLE.finditer(template):
        parts.append(re.escape(template[position : match.start()]))
        parts.append(f"(?P<{match.group(1)}>[^/]+)")
        names.append(match.group(1))
        position = match.end()
    parts.append(re.escape(template[position:]))
    return re.compile("^" + "".join(parts) + "$"), tuple(names)


def match_uri_template(template: str, uri: str) -> Optional[Dict[str, str]]:
    """Возвращает значения переменных, если `uri` подходит под шаблон."""
    pattern, names = compile_uri_template(template)
    match = pattern.match(uri)
    if match is None:
        return None
    return {name: unquote(match.group(name)) for name in names}


__all__ = ["compile_uri_template", "match_uri_template"]
