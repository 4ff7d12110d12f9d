"""
policy-engine — task workflow policy engine.

Package root. Decides whether a change request needs a formal plan, drives the
Plan -> Build -> Verify workflow, guards dangerous operations behind explicit
confirmation, and wraps outbound calls in a timeout/retry/idempotency contract.

Import boundary: nothing heavy is imported here, and importing the package has
no side effects (no config loading, no logging setup).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
