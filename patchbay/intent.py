"""
Write-intent classification.

Turns a raw chat/comment message into one of three decisions:

  - read_only               nothing here asks for repository changes
  - clarification_required  it might, but we will not guess; offer exact rerun commands
  - write                   an explicit `apply:` / `change:` / `plan:` prefix, or a
                            confident conversational ask

High-impact detection is independent of the decision and forces a
confirmation round-trip for any write.

Everything in this module is pure: no I/O, no clock, no state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Sequence, Union

from loguru import logger
from pydantic import BaseModel

WriteKeyword = Literal["apply", "change", "plan"]

WRITE_PREFIX_KEYWORDS: tuple[WriteKeyword, ...] = ("apply", "change", "plan")

CONFIRMATION_TIMEOUT_MINUTES = 15

SAME_REQUEST_PLACEHOLDER = "<same request>"

# Score needed (together with a write cue and no hedging) to treat free text as a write.
WRITE_SCORE_THRESHOLD = 3
_MAX_WRITE_VERB_POINTS = 2


# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

HIGH_IMPACT_PATTERNS = [
    re.compile(r"\b(delete|remove|drop|destroy|wipe|purge|truncate)\b", re.IGNORECASE),
    re.compile(r"\brename\b", re.IGNORECASE),
    re.compile(r"\b(migrate|migration|schema|database)\b", re.IGNORECASE),
    re.compile(
        r"\b(secrets?|tokens?|credentials?|auth|permissions?|security|encryption|oauth|private key)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(all files|entire repo|whole repo|across (?:the )?repo|every file|project-wide|global)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(force[- ]push|rewrite history|rebase)\b", re.IGNORECASE),
]

_WRITE_VERBS = (
    "fix|update|implement|add|remove|delete|rename|refactor|change|create|write|patch|migrate"
)

WRITE_VERB_PATTERNS = [
    re.compile(rf"\b({_WRITE_VERBS})\b", re.IGNORECASE),
    re.compile(r"\b(open|create)\s+(?:a\s+)?pr\b", re.IGNORECASE),
    re.compile(r"\b(comment on|post to)\s+(?:the\s+)?(?:issue|pr)\b", re.IGNORECASE),
]

STRONG_REQUEST_PATTERNS = [
    re.compile(rf"^(?:please\s+)?(?:{_WRITE_VERBS}|open)\b", re.IGNORECASE),
    re.compile(
        rf"^(?:can|could|would|will)\s+you\s+(?:please\s+)?(?:{_WRITE_VERBS}|open)\b",
        re.IGNORECASE,
    ),
]

AMBIGUITY_PATTERNS = [
    re.compile(
        r"\b(maybe|might|if needed|if possible|when you can|sometime|should we|what do you think|consider)\b",
        re.IGNORECASE,
    ),
]

GIT_VOCABULARY_PATTERN = re.compile(
    r"\b(branch|commit|pull request|pr|issue comment|review comment|run tests?|build)\b",
    re.IGNORECASE,
)

FILE_OR_PATH_PATTERN = re.compile(
    r"\b([A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+\.[A-Za-z0-9_-]+|[A-Za-z0-9_.-]+\.[A-Za-z0-9_-]+:[0-9]+)\b"
)

_SLACK_MENTION_PATTERN = re.compile(r"<@[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class ReadOnlyIntent(BaseModel):
    outcome: Literal["read_only"] = "read_only"
    request: str


class ClarificationIntent(BaseModel):
    outcome: Literal["clarification_required"] = "clarification_required"
    request: str
    rerun_commands: tuple[str, str]
    quick_action_text: str


class WriteIntent(BaseModel):
    outcome: Literal["write"] = "write"
    request: str
    keyword: WriteKeyword
    source: Literal["explicit_prefix", "conversational"]
    high_impact: bool
    confirmation_required: bool


IntentResolution = Union[ReadOnlyIntent, ClarificationIntent, WriteIntent]


@dataclass(frozen=True)
class IntentScore:
    """Breakdown of the conversational scoring, kept for inspection and `patchbay classify`."""
    score: int
    write_cue: bool
    ambiguous: bool
    strong_request: bool
    write_verb_matches: int
    path_cue: bool
    git_cue: bool


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_message(text: str, bot_handles: Sequence[str] = ()) -> str:
    """Strip Slack `<@U…>` tokens and `@handle` mentions, then collapse whitespace."""
    cleaned = _SLACK_MENTION_PATTERN.sub(" ", text or "")
    for handle in bot_handles:
        handle = handle.lstrip("@")
        if handle:
            cleaned = re.sub(rf"@{re.escape(handle)}\b", " ", cleaned, flags=re.IGNORECASE)
    return _WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def extract_explicit_prefix(message: str) -> tuple[WriteKeyword, str] | None:
    """Return (keyword, request) when the message starts with `apply:`, `change:` or `plan:`."""
    trimmed = message.lstrip()
    lower = trimmed.lower()
    for keyword in WRITE_PREFIX_KEYWORDS:
        prefix = f"{keyword}:"
        if lower.startswith(prefix):
            return keyword, trimmed[len(prefix):].strip()
    return None


# ---------------------------------------------------------------------------
# Sub-predicates
# ---------------------------------------------------------------------------

def has_strong_request(text: str) -> bool:
    """Imperative write verb at the very start ("fix …", "could you update …")."""
    return any(p.search(text) for p in STRONG_REQUEST_PATTERNS)


def count_write_verb_matches(text: str) -> int:
    """Number of write-verb pattern families present; repeated verbs of one family count once."""
    return sum(1 for p in WRITE_VERB_PATTERNS if p.search(text))


def has_path_token(text: str, context_paths: Sequence[str] = ()) -> bool:
    if FILE_OR_PATH_PATTERN.search(text):
        return True
    return any(path and path in text for path in context_paths)


def has_git_vocabulary(text: str) -> bool:
    return bool(GIT_VOCABULARY_PATTERN.search(text))


def is_ambiguous(text: str) -> bool:
    """Hedging words ("maybe", "when you can", "should we") veto a conversational write."""
    return any(p.search(text) for p in AMBIGUITY_PATTERNS)


def is_high_impact(text: str) -> bool:
    return any(p.search(text) for p in HIGH_IMPACT_PATTERNS)


def score_write_intent(text: str, context_paths: Sequence[str] = ()) -> IntentScore:
    score = 0
    write_cue = False

    strong = has_strong_request(text)
    if strong:
        score += 2
        write_cue = True

    verb_matches = count_write_verb_matches(text)
    if verb_matches:
        score += min(verb_matches, _MAX_WRITE_VERB_POINTS)
        write_cue = True

    path_cue = has_path_token(text, context_paths)
    if path_cue:
        score += 1

    git_cue = has_git_vocabulary(text)
    if git_cue:
        score += 1
        write_cue = True

    return IntentScore(
        score=score,
        write_cue=write_cue,
        ambiguous=is_ambiguous(text),
        strong_request=strong,
        write_verb_matches=verb_matches,
        path_cue=path_cue,
        git_cue=git_cue,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def build_write_command(keyword: str, request: str) -> str:
    """The exact `<keyword>: <request>` string a user resends to retry or confirm."""
    return f"{keyword}: {request if request else SAME_REQUEST_PLACEHOLDER}"


def build_rerun_commands(request: str) -> tuple[str, str]:
    return build_write_command("apply", request), build_write_command("change", request)


def build_quick_action_text(request: str) -> str:
    apply_command, change_command = build_rerun_commands(request)
    return "\n".join([
        "I kept this run read-only because your request may involve repository changes, "
        "but write intent is ambiguous.",
        "If you want write mode, rerun with exactly one of:",
        f"- {apply_command}",
        f"- {change_command}",
    ])


def _clarify(request: str) -> ClarificationIntent:
    return ClarificationIntent(
        request=request,
        rerun_commands=build_rerun_commands(request),
        quick_action_text=build_quick_action_text(request),
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def classify_write_intent(
    text: str,
    bot_handles: Sequence[str] = (),
    context_paths: Sequence[str] = (),
) -> IntentResolution:
    message = normalize_message(text, bot_handles)

    if not message:
        logger.debug("[INTENT] Empty request after mention stripping; skipping")
        return ReadOnlyIntent(request="")

    explicit = extract_explicit_prefix(message)
    if explicit:
        keyword, request = explicit
        if not request:
            # A bare "apply:" carries nothing to execute.
            return _clarify(request)
        high_impact = is_high_impact(request)
        return WriteIntent(
            request=request,
            keyword=keyword,
            source="explicit_prefix",
            high_impact=high_impact,
            confirmation_required=high_impact,
        )

    scored = score_write_intent(message, context_paths)
    high_impact = is_high_impact(message)

    if scored.score >= WRITE_SCORE_THRESHOLD and scored.write_cue and not scored.ambiguous:
        return WriteIntent(
            request=message,
            keyword="apply",
            source="conversational",
            high_impact=high_impact,
            confirmation_required=high_impact,
        )

    if scored.write_cue or scored.score > 0:
        return _clarify(message)

    return ReadOnlyIntent(request=message)
