"""Tests for idempotency keys, markers and branch names."""

import hashlib

from patchbay.idempotency import (
    build_commit_message,
    build_github_branch_name,
    build_pr_body,
    build_slack_branch_name,
    build_write_output_key,
    derive_idempotency_key,
    summarize_request,
)
from patchbay.workspace import validate_branch_name


def test_key_format_is_normalized():
    key = build_write_output_key(42, " Acme ", "Widgets", 7, 1001, "APPLY")
    assert key == "patchbay-write-output:v1:inst-42:acme/widgets:thread-7:trigger-1001:keyword-apply"


def test_derived_key_is_deterministic():
    first = derive_idempotency_key(42, "acme", "widgets", "7", "1001", "apply")
    second = derive_idempotency_key(42, "ACME", "widgets", "7", "1001", "Apply")
    assert first == second
    assert first.hash == hashlib.sha256(first.key.encode("utf-8")).hexdigest()[:12]
    assert first.marker == f"patchbay-write-output-key: {first.key}"


def test_distinct_triggers_get_distinct_keys():
    a = derive_idempotency_key(42, "acme", "widgets", "7", "1001", "apply")
    b = derive_idempotency_key(42, "acme", "widgets", "7", "1002", "apply")
    c = derive_idempotency_key(42, "acme", "widgets", "7", "1001", "change")
    assert len({a.key, b.key, c.key}) == 3
    assert len({a.hash, b.hash, c.hash}) == 3


def test_github_branch_names():
    key = derive_idempotency_key(42, "acme", "widgets", "7", "1001", "apply")
    assert build_github_branch_name(key.hash, "1001", pr_number=7) == f"patchbay/write/pr-7-comment-1001-{key.hash}"
    assert build_github_branch_name(key.hash, "1001", issue_number=9) == f"patchbay/write/issue-9-comment-1001-{key.hash}"
    assert build_github_branch_name(key.hash, "1001") == f"patchbay/write/repo-comment-1001-{key.hash}"
    validate_branch_name(build_github_branch_name(key.hash, "1001", pr_number=7))


def test_slack_branch_name_is_stable():
    args = ("Apply", "acme", "widgets", "C1", "1700000000.000100", "1700000001.000200", "fix the docs")
    name = build_slack_branch_name(*args)
    assert name == build_slack_branch_name(*args)
    assert name.startswith("patchbay/slack/apply-")
    assert len(name.rsplit("-", 1)[1]) == 12
    assert name != build_slack_branch_name(*args[:-1], "fix the tests")
    validate_branch_name(name)


def test_summarize_request():
    assert summarize_request("  fix\n the   docs ") == "fix the docs"
    assert summarize_request("") == "requested update"
    long = summarize_request("a" * 100)
    assert len(long) == 72
    assert long.endswith("...")


def test_commit_message_carries_marker_and_delivery():
    key = derive_idempotency_key(42, "acme", "widgets", "7", "1001", "apply")
    message = build_commit_message("update README wording", key.marker, delivery_id="d-1")
    assert message.splitlines() == [
        "chore(write): update README wording",
        "",
        key.marker,
        "patchbay-delivery-id: d-1",
    ]
    assert "delivery" not in build_commit_message("x", key.marker)


def test_pr_body_hides_marker_in_comment():
    body = build_pr_body("update README", "patchbay-write-output-key: k")
    assert "<!--\npatchbay-write-output-key: k\n-->" in body
    assert "> update README" in body
