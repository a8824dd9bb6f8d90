"""Asset narrowing and selection for downloads."""

import fnmatch
import re
from typing import Callable, List, Optional, Pattern, Sequence

from .errors import AmbiguousSelectionError, NoMatchingAssetError
from .models import Asset

SelectCallback = Callable[[Sequence[Asset]], Optional[Asset]]


def compile_regexes(patterns: Sequence[str], exact_case: bool = False) -> List[Pattern]:
    flags = 0 if exact_case else re.IGNORECASE
    try:
        return [re.compile(p, flags) for p in patterns]
    except re.error as e:
        raise ValueError(f"Invalid regex filter: {e}") from e


def _contains(name: str, keyword: str, exact_case: bool) -> bool:
    if exact_case:
        return keyword in name
    return keyword.lower() in name.lower()


def _glob_match(name: str, pattern: str, exact_case: bool) -> bool:
    if exact_case:
        return fnmatch.fnmatchcase(name, pattern)
    return fnmatch.fnmatchcase(name.lower(), pattern.lower())


def filter_assets(
    assets: Sequence[Asset],
    regexes: Sequence[str] = (),
    globs: Sequence[str] = (),
    match_keywords: Sequence[str] = (),
    exclude_keywords: Sequence[str] = (),
    exact_case: bool = False,
) -> List[Asset]:
    """
    Narrow candidates in order:
      1. regex filters (keep matches of any), else
      2. glob filters (same, glob semantics),
      3. match keywords (contains any) and exclude keywords (contains none).
    Step 3 applies regardless of 1/2.
    """
    out = list(assets)
    if regexes:
        compiled = compile_regexes(regexes, exact_case)
        out = [a for a in out if any(r.search(a.name) for r in compiled)]
    elif globs:
        out = [a for a in out if any(_glob_match(a.name, g, exact_case) for g in globs)]

    match_keywords = [k for k in match_keywords if k]
    exclude_keywords = [k for k in exclude_keywords if k]
    if match_keywords:
        out = [a for a in out if any(_contains(a.name, k, exact_case) for k in match_keywords)]
    if exclude_keywords:
        out = [a for a in out if not any(_contains(a.name, k, exact_case) for k in exclude_keywords)]
    return out


def select_asset(
    candidates: Sequence[Asset],
    source: str,
    yes: bool = False,
    select: Optional[SelectCallback] = None,
) -> Asset:
    """Pick the single candidate, or defer to `select`; never guess."""
    if not candidates:
        raise NoMatchingAssetError(source)
    if len(candidates) == 1:
        return candidates[0]
    if yes or select is None:
        raise AmbiguousSelectionError([a.name for a in candidates])
    chosen = select(candidates)
    if chosen is None:
        raise AmbiguousSelectionError([a.name for a in candidates])
    return chosen
