"""Connect — authentication and request-scoping core.

Sortable identifiers, signed access tokens with revocable refresh tokens,
request-scoped database contexts pinned to an account, and the browser-facing
session proxy that keeps raw tokens in HTTP-only cookies.
"""

__version__ = "0.1.0"
