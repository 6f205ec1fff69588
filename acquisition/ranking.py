"""Candidate scoring for audiobook and sidecar searches.

Everything here is pure: the same candidates, target and rules always yield
the same ordering and the same breakdowns.
"""

import math
import re
import unicodedata
from dataclasses import dataclass, field

from rapidfuzz import fuzz

QUALIFY_THRESHOLD = 50.0
COVERAGE_THRESHOLD = 0.80

_TITLE_MAX = 35.0
_AUTHOR_MAX = 15.0
_SEED_MAX = 15.0
_SIZE_MAX = 10.0
_SEED_FACTOR = 6.0
_DEFAULT_SOURCE_PRIORITY = 10

_SIDECAR_FORMAT_MAX = 40.0
_SIDECAR_SIZE_MAX = 30.0
_SIDECAR_TRUST_DEFAULT = 15.0
_SIDECAR_TRUST_MAX = 30.0

_MB = 1024 * 1024
_SIZE_BAND_PER_MINUTE = (0.2 * _MB, 2.0 * _MB)

_STOP_WORDS = frozenset({
    "a", "an", "the", "of", "on", "in", "at", "to", "for", "by", "and", "or", "with", "from",
})

# Ordered best to worst: chaptered container first, lossy last.
_FORMAT_SCORES = {
    "m4b": 25.0,
    "flac": 20.0,
    "m4a": 16.0,
    "aac": 14.0,
    "mp3": 12.0,
    "ogg": 10.0,
    "opus": 10.0,
    "wma": 6.0,
}
_UNKNOWN_FORMAT_SCORE = 8.0

_ROLE_MARKERS = (
    "narrat", "read by", "translat", "editor", "edited by", "foreword", "introduction", "illustrat",
)
_AUTHOR_SPLIT_RE = re.compile(r"\s*(?:,|&|;|\band\b|\s-\s)\s*", re.IGNORECASE)
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_APOSTROPHE_RE = re.compile(r"['’`]")
_BOUNDARY_CHARS = set("-–—:,;|/.([{")


@dataclass(frozen=True)
class Candidate:
    title: str
    source_name: str = ""
    source_id: int | None = None
    size_bytes: int | None = None
    seeders: int | None = None
    format_hint: str | None = None
    download_url: str | None = None
    guid: str | None = None
    flags: tuple = ()


@dataclass(frozen=True)
class SidecarCandidate:
    title: str
    source_name: str
    format: str
    download_urls: tuple = ()
    size_bytes: int | None = None
    match_method: str = "title"
    handle: str | None = None


@dataclass(frozen=True)
class BonusModifier:
    reason: str
    points: float


@dataclass(frozen=True)
class ScoreBreakdown:
    coverage: float
    coverage_passed: bool
    title_score: float
    author_score: float
    format_score: float
    seed_score: float
    size_score: float
    detected_format: str | None
    bonus_modifiers: tuple = ()
    notes: tuple = ()

    @property
    def match_score(self):
        return self.title_score + self.author_score


@dataclass(frozen=True)
class RankedResult:
    candidate: Candidate
    base_score: float
    bonus_points: float
    final_score: float
    breakdown: ScoreBreakdown
    position: int = field(default=0, compare=False)

    @property
    def qualified(self):
        return self.base_score >= QUALIFY_THRESHOLD and self.final_score >= QUALIFY_THRESHOLD

    @property
    def disqualified_by_bonus(self):
        return self.base_score >= QUALIFY_THRESHOLD and self.final_score < QUALIFY_THRESHOLD


@dataclass(frozen=True)
class RankedSidecar:
    candidate: SidecarCandidate
    score: float
    format_score: float
    size_score: float
    trust_score: float


def fold_text(value):
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _APOSTROPHE_RE.sub("", text.lower())
    return text


def tokenize(value):
    return _TOKEN_RE.findall(fold_text(value))


def normalize_text(value):
    return " ".join(tokenize(value))


def significant_words(title):
    tokens = tokenize(title)
    words = [token for token in tokens if token not in _STOP_WORDS]
    # A title made only of stop words still has to match something.
    return words or tokens


def title_coverage(target_title, candidate_title):
    words = set(significant_words(target_title))
    if not words:
        return 0.0
    candidate_tokens = set(tokenize(candidate_title))
    return len(words & candidate_tokens) / len(words)


def _token_spans(text):
    folded = fold_text(text)
    return folded, [(m.group(0), m.start(), m.end()) for m in _TOKEN_RE.finditer(folded)]


def _is_boundary(folded, spans, end_index):
    if end_index >= len(spans):
        return True
    gap = folded[spans[end_index - 1][2]:spans[end_index][1]]
    if any(ch in _BOUNDARY_CHARS for ch in gap):
        return True
    return spans[end_index][0] == "by"


def title_score(target_title, candidate_title):
    target_tokens = tokenize(target_title)
    folded, spans = _token_spans(candidate_title)
    candidate_tokens = [token for token, _start, _end in spans]
    target_norm = " ".join(target_tokens)
    candidate_norm = " ".join(candidate_tokens)
    if not target_tokens or not candidate_tokens:
        return 0.0, "empty title"

    width = len(target_tokens)
    found = False
    for start in range(len(candidate_tokens) - width + 1):
        if candidate_tokens[start:start + width] != target_tokens:
            continue
        found = True
        if _is_boundary(folded, spans, start + width):
            return _TITLE_MAX, "exact title match"
    if found:
        ratio = fuzz.ratio(target_norm, candidate_norm) / 100.0
        return _TITLE_MAX * ratio, "title continues past match"
    ratio = fuzz.token_sort_ratio(target_norm, candidate_norm) / 100.0
    return _TITLE_MAX * ratio, "fuzzy title match"


def split_authors(value):
    parts = []
    for raw in _AUTHOR_SPLIT_RE.split(value or ""):
        lowered = raw.lower()
        if any(marker in lowered for marker in _ROLE_MARKERS):
            continue
        normalized = normalize_text(raw)
        if normalized and normalized not in parts:
            parts.append(normalized)
    return parts


def author_score(target_author, candidate_title):
    authors = split_authors(target_author)
    if not authors:
        return _AUTHOR_MAX / 2, "no target author"
    candidate_norm = normalize_text(candidate_title)
    padded = f" {candidate_norm} "
    hits = sum(1 for author in authors if f" {author} " in padded)
    if hits:
        return _AUTHOR_MAX * hits / len(authors), f"author match {hits}/{len(authors)}"
    best = max(fuzz.partial_ratio(author, candidate_norm) for author in authors)
    return _AUTHOR_MAX * best / 100.0, "fuzzy author match"


def detect_format(candidate):
    hint = (candidate.format_hint or "").strip().lower().lstrip(".")
    if hint in _FORMAT_SCORES:
        return hint
    tokens = set(tokenize(candidate.title))
    for fmt in _FORMAT_SCORES:
        if fmt in tokens:
            return fmt
    return None


def format_score(fmt):
    if fmt is None:
        return _UNKNOWN_FORMAT_SCORE
    return _FORMAT_SCORES.get(fmt, _UNKNOWN_FORMAT_SCORE)


def seed_score(seeders):
    if seeders is None:
        return _SEED_MAX / 2
    return min(_SEED_MAX, math.log10(max(0, seeders) + 1) * _SEED_FACTOR)


def size_score(size_bytes, duration_seconds):
    if not size_bytes or not duration_seconds or duration_seconds <= 0:
        return _SIZE_MAX / 2
    per_minute = size_bytes / (duration_seconds / 60.0)
    low, high = _SIZE_BAND_PER_MINUTE
    if per_minute < low:
        return _SIZE_MAX * per_minute / low
    if per_minute > high:
        return _SIZE_MAX * high / per_minute
    return _SIZE_MAX


def _flag_rule_matches(rule, candidate):
    flag = getattr(rule, "flag", None)
    title_contains = getattr(rule, "title_contains", None)
    if not flag and not title_contains:
        return False
    if flag and flag.lower() not in {str(item).lower() for item in candidate.flags}:
        return False
    if title_contains and title_contains.lower() not in (candidate.title or "").lower():
        return False
    return True


def bonus_modifiers(candidate, source_priorities, flag_rules):
    modifiers = []
    priority = (source_priorities or {}).get(candidate.source_id, _DEFAULT_SOURCE_PRIORITY)
    if priority != _DEFAULT_SOURCE_PRIORITY:
        modifiers.append(BonusModifier(f"Source priority {priority}", float(priority - _DEFAULT_SOURCE_PRIORITY)))
    for rule in flag_rules or ():
        if _flag_rule_matches(rule, candidate):
            modifiers.append(BonusModifier(f"Flag rule '{rule.name}'", float(rule.points)))
    return tuple(modifiers)


def score_candidate(candidate, target, *, source_priorities=None, flag_rules=None):
    target_title = target.get("title") or ""
    notes = []

    coverage = title_coverage(target_title, candidate.title)
    passed = coverage >= COVERAGE_THRESHOLD
    fmt = detect_format(candidate)
    if passed:
        points_title, title_note = title_score(target_title, candidate.title)
        points_author, author_note = author_score(target.get("author"), candidate.title)
        notes.extend([title_note, author_note])
    else:
        points_title = points_author = 0.0
        notes.append(f"coverage {coverage:.0%} below {COVERAGE_THRESHOLD:.0%}")
    points_format = format_score(fmt)
    points_seed = seed_score(candidate.seeders)
    if candidate.seeders is None:
        notes.append("availability not reported")
    points_size = size_score(candidate.size_bytes, target.get("duration_seconds"))

    if passed:
        base = points_title + points_author + points_format + points_seed + points_size
        base = max(0.0, min(100.0, base))
    else:
        base = 0.0
    modifiers = bonus_modifiers(candidate, source_priorities, flag_rules)
    bonus = sum(modifier.points for modifier in modifiers)
    breakdown = ScoreBreakdown(
        coverage=coverage,
        coverage_passed=passed,
        title_score=points_title,
        author_score=points_author,
        format_score=points_format,
        seed_score=points_seed,
        size_score=points_size,
        detected_format=fmt,
        bonus_modifiers=modifiers,
        notes=tuple(notes),
    )
    return base, bonus, breakdown


def rank(candidates, target, source_priorities=None, flag_rules=None):
    """Score every candidate and order them best first.

    Ordering is final score, then base score, then input order. Use
    ``qualifying`` or ``select_best`` to apply the dual threshold.
    """
    scored = []
    for index, candidate in enumerate(candidates):
        base, bonus, breakdown = score_candidate(
            candidate,
            target,
            source_priorities=source_priorities,
            flag_rules=flag_rules,
        )
        scored.append((index, candidate, base, bonus, breakdown))
    scored.sort(key=lambda item: (-(item[2] + item[3]), -item[2], item[0]))
    return [
        RankedResult(
            candidate=candidate,
            base_score=base,
            bonus_points=bonus,
            final_score=base + bonus,
            breakdown=breakdown,
            position=position,
        )
        for position, (_index, candidate, base, bonus, breakdown) in enumerate(scored, start=1)
    ]


def qualifying(ranked):
    return [result for result in ranked if result.qualified]


def select_best(ranked):
    for result in ranked:
        if result.qualified:
            return result
    return None


def rank_sidecar(candidates, preferred_format, source_trust=None):
    preferred = (preferred_format or "").strip().lower().lstrip(".")
    sizes = [candidate.size_bytes for candidate in candidates if candidate.size_bytes]
    smallest = min(sizes) if sizes else None
    scored = []
    for index, candidate in enumerate(candidates):
        fmt = (candidate.format or "").strip().lower().lstrip(".")
        points_format = _SIDECAR_FORMAT_MAX if fmt and fmt == preferred else 0.0
        if candidate.size_bytes and smallest:
            points_size = _SIDECAR_SIZE_MAX * smallest / candidate.size_bytes
        else:
            points_size = _SIDECAR_SIZE_MAX / 2
        trust = (source_trust or {}).get(candidate.source_name, _SIDECAR_TRUST_DEFAULT)
        points_trust = max(0.0, min(_SIDECAR_TRUST_MAX, float(trust)))
        total = points_format + points_size + points_trust
        scored.append((index, RankedSidecar(candidate, total, points_format, points_size, points_trust)))
    scored.sort(key=lambda item: (-item[1].score, item[0]))
    return [ranked for _index, ranked in scored]
