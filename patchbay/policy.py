"""
WritePolicyEnforcer: the last gate between an executor's edits and a commit.

Checks run in a fixed order and stop at the first refusal:

  1. denyPaths    (always wins, even over a matching allowPaths entry)
  2. allowPaths   (only when the list is non-empty)
  3. secret scan  (added diff lines only; the secret itself is never echoed)
  4. no changes   (nothing staged at all)

Refusals are returned as values so every caller has to look at `ok`.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence, Union

from loguru import logger
from pydantic import BaseModel

from patchbay.config_loader import WriteConfig

PolicyRefusalKind = Literal[
    "write-policy-denied-path",
    "write-policy-not-allowed",
    "write-policy-secret-detected",
    "write-policy-no-changes",
]

_GLOB_CHARS = set("*?[")


@dataclass
class WritePolicyConfig:
    allow_paths: list[str] = field(default_factory=list)
    deny_paths: list[str] = field(default_factory=list)
    secret_scan_enabled: bool = True

    @classmethod
    def from_write_config(cls, write: WriteConfig) -> "WritePolicyConfig":
        return cls(
            allow_paths=list(write.allow_paths),
            deny_paths=list(write.deny_paths),
            secret_scan_enabled=write.secret_scan.enabled,
        )


class PolicyPass(BaseModel):
    ok: Literal[True] = True


class PolicyRefusal(BaseModel):
    ok: Literal[False] = False
    kind: PolicyRefusalKind
    rule: str
    path: Optional[str] = None
    pattern: Optional[str] = None
    detector: Optional[str] = None
    message: str


PolicyResult = Union[PolicyPass, PolicyRefusal]


# ---------------------------------------------------------------------------
# Path matching
# ---------------------------------------------------------------------------

def normalize_path(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def path_matches(path: str, pattern: str) -> bool:
    """
    Match one repo-relative path against one policy pattern.

      "src/"        prefix match on the path
      "*.pem"       suffix match
      "docs/*.md"   any other glob, fnmatch against the full path
      "README.md"   exact match on the path or on its final segment
    """
    path = normalize_path(path)
    pattern = normalize_path(pattern)
    if not pattern:
        return False

    if pattern.endswith("/"):
        return path.startswith(pattern) or path == pattern.rstrip("/")

    if pattern.startswith("*.") and not _GLOB_CHARS.intersection(pattern[1:]):
        return path.endswith(pattern[1:])

    if _GLOB_CHARS.intersection(pattern):
        return fnmatch.fnmatchcase(path, pattern)

    return path == pattern or path.rsplit("/", 1)[-1] == pattern


def first_match(path: str, patterns: Sequence[str]) -> str | None:
    for pattern in patterns:
        if path_matches(path, pattern):
            return pattern
    return None


# ---------------------------------------------------------------------------
# Secret scan
# ---------------------------------------------------------------------------

SECRET_DETECTORS: list[tuple[str, re.Pattern]] = [
    ("regex:private-key", re.compile(r"-----BEGIN (?:[A-Z0-9]+ )?PRIVATE KEY-----")),
    ("regex:aws-access-key-id", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    ("regex:github-pat", re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36}|github_pat_[A-Za-z0-9_]{22,255})\b")),
    ("regex:slack-token", re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b")),
    ("regex:github-x-access-token-url", re.compile(r"https://x-access-token:[^@\s]+@github\.com")),
]


@dataclass(frozen=True)
class SecretFinding:
    detector: str
    path: str


def scan_for_secrets(diff_text: str) -> SecretFinding | None:
    """Scan lines added by a unified diff. Returns the first hit, without the matched text."""
    current_path = ""
    for line in diff_text.splitlines():
        if line.startswith("+++ "):
            target = line[4:].strip()
            current_path = target[2:] if target.startswith("b/") else target
            continue
        if not line.startswith("+"):
            continue
        added = line[1:]
        for name, pattern in SECRET_DETECTORS:
            if pattern.search(added):
                return SecretFinding(detector=name, path=current_path)
    return None


# ---------------------------------------------------------------------------
# Enforcer
# ---------------------------------------------------------------------------

class WritePolicyEnforcer:
    def __init__(self, config: WritePolicyConfig):
        self.config = config

    def check(self, staged_paths: Sequence[str], diff_text: str = "") -> PolicyResult:
        paths = [normalize_path(p) for p in staged_paths if p and p.strip()]

        for path in paths:
            pattern = first_match(path, self.config.deny_paths)
            if pattern is not None:
                logger.warning(f"[POLICY] Denied path {path} (pattern {pattern!r})")
                return PolicyRefusal(
                    kind="write-policy-denied-path",
                    rule="denyPaths",
                    path=path,
                    pattern=pattern,
                    message=f"Path {path} matches denyPaths pattern {pattern}",
                )

        if self.config.allow_paths:
            for path in paths:
                if first_match(path, self.config.allow_paths) is None:
                    logger.warning(f"[POLICY] Path {path} is outside allowPaths")
                    return PolicyRefusal(
                        kind="write-policy-not-allowed",
                        rule="allowPaths",
                        path=path,
                        message=f"Path {path} does not match any allowPaths pattern",
                    )

        if self.config.secret_scan_enabled and diff_text:
            finding = scan_for_secrets(diff_text)
            if finding is not None:
                logger.warning(f"[POLICY] Secret-like content in {finding.path} ({finding.detector})")
                return PolicyRefusal(
                    kind="write-policy-secret-detected",
                    rule="secretScan",
                    path=finding.path or None,
                    detector=finding.detector,
                    message=f"Secret-like content detected by {finding.detector}",
                )

        if not paths:
            logger.info("[POLICY] No staged changes")
            return PolicyRefusal(
                kind="write-policy-no-changes",
                rule="changes",
                message="No file changes were produced",
            )

        logger.debug(f"[POLICY] {len(paths)} staged path(s) passed")
        return PolicyPass()


# ---------------------------------------------------------------------------
# Refusal text
# ---------------------------------------------------------------------------

def _yaml_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_policy_refusal_message(
    refusal: PolicyRefusal,
    allow_paths: Sequence[str] = (),
) -> str:
    lines = ["Write request refused.", f"Reason: {refusal.kind}", f"Rule: {refusal.rule}"]
    if refusal.path:
        lines.append(f"File: {refusal.path}")

    if refusal.kind == "write-policy-denied-path":
        lines.append(f"Matched pattern: {refusal.pattern}")
    elif refusal.kind == "write-policy-not-allowed":
        current = ", ".join(_yaml_quote(p) for p in allow_paths) or "(none)"
        lines += [
            "Smallest config change:",
            "```yml",
            "write:",
            "  allowPaths:",
            f"    - {_yaml_quote(refusal.path or '')}",
            "```",
            f"Current allowPaths: {current}",
        ]
    elif refusal.kind == "write-policy-secret-detected":
        lines += [
            f"Detector: {refusal.detector}",
            "Remove/redact the secret-like content and retry",
        ]
    elif refusal.kind == "write-policy-no-changes":
        lines.append("No file changes were produced")

    return "\n".join(lines)
