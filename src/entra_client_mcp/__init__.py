"""Entra ID sign-in client exposed as MCP tools.

Acquires tokens silently first, escalates to one interactive sign-in when the
provider requires it, and calls the protected API and Graph profile endpoint
with the resulting bearer token.
"""

__version__ = "0.1.0"
