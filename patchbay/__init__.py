"""
PATCHBAY: natural-language write requests turned into pull requests.

Requests arrive from a GitHub @mention or a Slack message, pass through
intent classification, confirmation, idempotency and write policy, and
leave as a pushed branch plus an opened (or updated) pull request.
"""

from patchbay.identity import __version__

__all__ = ["__version__"]
