from __future__ import annotations

import re
from typing import Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode

from ..utils.errors import ConfigurationError

_QUERY_BLOCK = re.compile(r"\{\?([A-Za-z0-9_,]*)\}")


class UriTemplate:
    """A literal base URI followed by at most one ``{?a,b,c}`` query block.

    Chained blocks such as ``{?a}{?b}`` are refused when the template is
    built; matching refuses URIs that carry parameters outside the block.
    """

    def __init__(self, template: str) -> None:
        blocks = _QUERY_BLOCK.findall(template)
        if len(blocks) > 1:
            raise ConfigurationError(f"URI template {template!r} has more than one query block")
        base = _QUERY_BLOCK.sub("", template)
        if "{" in base or "}" in base:
            raise ConfigurationError(f"URI template {template!r} contains unsupported expressions")
        if blocks and not template.endswith("}"):
            raise ConfigurationError(f"Query block must end URI template {template!r}")

        self.template = template
        self.base = base
        self.params: Tuple[str, ...] = tuple(p for p in blocks[0].split(",") if p) if blocks else ()

    @classmethod
    def build(cls, base: str, params: Sequence[str]) -> "UriTemplate":
        if not params:
            return cls(base)
        return cls(f"{base}{{?{','.join(params)}}}")

    def __str__(self) -> str:
        return self.template

    def __repr__(self) -> str:
        return f"UriTemplate({self.template!r})"

    def expand(self, values: Mapping[str, object]) -> str:
        pairs = [
            (name, str(values[name]))
            for name in self.params
            if values.get(name) not in (None, "")
        ]
        if not pairs:
            return self.base
        return f"{self.base}?{urlencode(pairs)}"

    def match(self, uri: str) -> Optional[Dict[str, str]]:
        base, _, query = uri.partition("?")
        if base != self.base:
            return None
        if not query:
            return {}

        values: Dict[str, str] = {}
        try:
            pairs = parse_qsl(query, keep_blank_values=True, strict_parsing=True)
        except ValueError:
            return None
        for name, value in pairs:
            if name not in self.params or name in values:
                return None
            values[name] = value
        return values
