"""Candidate selection: skip tags, quality gates, orientation balance, weighted tag picks."""

from __future__ import annotations

import math
import random
from typing import Iterable, Mapping, Sequence

from .api import Illust

# Tags marking images unsuitable as wallpapers: no/simple background,
# chibi and character sheets, sketches, manga pages and AI output.
# Entries match as case-insensitive substrings, so bare short words
# ("sd", "png", "simple", "シンプル") are not listed.
DEFAULT_SKIP_TAGS: tuple[str, ...] = (
    "透過png", "透明背景", "transparent", "transparent_background",
    "白背景", "白バック", "white_background", "simple_background",
    "単色背景", "solid_background", "grey_background", "gray_background",
    "ちびキャラ", "chibi", "ミニキャラ", "デフォルメ",
    "キャラクターデザイン", "character_design", "立ち絵", "character_sheet",
    "落書き", "sketch", "doodle",
    "漫画", "manga", "comic", "コミック", "4コマ",
    "AI生成", "AI-generated", "novelai", "midjourney", "stable_diffusion", "ai_generated", "aiイラスト",
)

R18_TAGS = {"r-18", "r18"}


def should_skip(tags: Iterable[str], skip_tags: Iterable[str] = DEFAULT_SKIP_TAGS) -> bool:
    """True if any skip tag occurs (case-insensitively) inside any of ``tags``."""
    lowered = [t.lower() for t in tags]
    for skip in skip_tags:
        s = skip.lower().strip()
        if s and any(s in t for t in lowered):
            return True
    return False


def is_r18(tags: Iterable[str]) -> bool:
    return any(t.lower() in R18_TAGS for t in tags)


def passes_quality(illust: Illust, *, min_bookmarks: int = 0, min_side: int = 0) -> bool:
    """Reject known-small or known-unpopular works; unknown metrics pass."""
    if min_side and illust.width and illust.height and min(illust.width, illust.height) < min_side:
        return False
    if min_bookmarks and illust.bookmark_count is not None and illust.bookmark_count < min_bookmarks:
        return False
    return True


def is_landscape(illust: Illust) -> bool:
    if not illust.width or not illust.height:
        return False
    return illust.width / illust.height > 1.0


def select_candidates(
    illusts: Sequence[Illust],
    limit: int,
    *,
    skip_tags: Iterable[str] = DEFAULT_SKIP_TAGS,
    balance: bool = True,
    min_bookmarks: int = 0,
    min_side: int = 0,
) -> list[Illust]:
    """Filter a listing and, when ``balance`` is set, fill landscape and
    portrait buckets up to ``ceil(limit / 2)`` each.

    The result lists landscape picks first, then portrait picks.  Works
    with unknown dimensions go to the portrait bucket.
    """
    skip_tags = list(skip_tags)
    usable = (
        i for i in illusts
        if not should_skip(i.tags, skip_tags)
        and passes_quality(i, min_bookmarks=min_bookmarks, min_side=min_side)
    )
    if not balance:
        out: list[Illust] = []
        for i in usable:
            if len(out) >= limit:
                break
            out.append(i)
        return out

    half = math.ceil(limit / 2)
    landscape: list[Illust] = []
    portrait: list[Illust] = []
    for i in usable:
        bucket = landscape if is_landscape(i) else portrait
        if len(bucket) < half:
            bucket.append(i)
        if len(landscape) >= half and len(portrait) >= half:
            break
    return landscape + portrait


def weighted_choice(tags: Sequence[Mapping], rng: random.Random | None = None) -> str | None:
    """Pick a favorite tag with probability proportional to its weight."""
    if not tags:
        return None
    rng = rng or random.Random()
    weights = [max(1, int(t.get("weight") or 1)) for t in tags]
    picked = rng.choices(list(tags), weights=weights, k=1)[0]
    return str(picked.get("tag_jp") or picked["tag"])
