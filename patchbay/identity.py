"""Product identity strings shared by the CLI, markers and bot branches."""

__codename__ = "PATCHBAY"
__tagline__ = "Ask in words. Ship as a PR."
__version__ = "0.3.0"

# Lowercase product slug used in markers, branch prefixes and config paths.
PRODUCT = "patchbay"

BANNER = r"""
  ___  _ _____ ___ _  _ ___   _ __   __
 | _ \/_\_   _/ __| || | _ ) /_\\ \ / /
 |  _/ _ \| || (__| __ | _ \/ _ \\ V /
 |_|/_/ \_\_| \___|_||_|___/_/ \_\|_|
"""
