"""Authentication.

Learn: Two credentials, two lifetimes:
1. Access token: signed JWT, one hour, stateless to verify
2. Refresh token: opaque id in a ledger, lives until sign-out

The verified access token's account id is what the authorized request
context pins on the database connection.
"""
