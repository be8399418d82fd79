from __future__ import annotations

import os
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qs

from .config import (
    ENV_MODEL_URL,
    ENV_MODEL_URLS,
    QUERY_FORCE_CPU_KEYS,
    QUERY_LIST_KEYS,
    QUERY_SINGLE_KEYS,
    get_force_cpu,
)
from .errors import NoModelSources

Query = Union[str, Mapping[str, str], None]


def parse_list(s: str) -> List[str]:
    return [t.strip() for t in s.split(",") if t.strip()]


def _query_dict(query: Query) -> dict:
    """
    Accept either a raw query string ("?model=a&models=b,c") or a mapping.
    """
    if query is None:
        return {}
    if isinstance(query, str):
        parsed = parse_qs(query.lstrip("?"), keep_blank_values=False)
        return {k: v[0] for k, v in parsed.items() if v}
    return {k: v for k, v in query.items() if isinstance(v, str)}


def _first(q: dict, keys: Sequence[str]) -> str:
    for k in keys:
        v = (q.get(k) or "").strip()
        if v:
            return v
    return ""


def _dedupe(items: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    out = []
    for item in items:
        s = item.strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return tuple(out)


def resolve_model_sources(
    explicit: Optional[Sequence[str]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    query: Query = None,
) -> Tuple[str, ...]:
    """
    Build the ordered, de-duplicated list of model locations.

    Precedence: query single value, query list, then RMBG_MODEL_URLS (falling
    back to RMBG_MODEL_URL). An explicit list replaces env/query resolution.

    Raises:
        NoModelSources: when nothing resolves.
    """
    if explicit is not None:
        flat: List[str] = []
        for item in explicit:
            flat.extend(parse_list(item))
        sources = _dedupe(flat)
    else:
        env = os.environ if env is None else env
        env_raw = (env.get(ENV_MODEL_URLS) or env.get(ENV_MODEL_URL) or "").strip()
        env_urls = parse_list(env_raw) if env_raw else []

        q = _query_dict(query)
        qp_urls: List[str] = []
        one = _first(q, QUERY_SINGLE_KEYS)
        many = _first(q, QUERY_LIST_KEYS)
        if one:
            qp_urls.append(one)
        if many:
            qp_urls.extend(parse_list(many))
        sources = _dedupe([*qp_urls, *env_urls])

    if not sources:
        raise NoModelSources()
    return sources


def force_cpu_requested(query: Query = None) -> bool:
    q = _query_dict(query)
    v = _first(q, QUERY_FORCE_CPU_KEYS).lower()
    if v in ("1", "true"):
        return True
    return get_force_cpu()
