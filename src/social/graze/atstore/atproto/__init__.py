"""
AT Protocol Integration

Outbound communication with a user's PDS and the seam to the OAuth protocol
client.

Key Components:
- chain.py: Middleware chain for XRPC requests (DPoP proofs, metrics, debug)
- repo.py: `RepoClient` for `com.atproto.repo.*` record writes
- oauth.py: `OAuthProtocolClient` protocol and the state/session payloads
- session.py: `SessionLifecycle`, lazy restore and refresh of credentials

DPoP proofs are bound to the access token with the `ath` claim and retried
once with a fresh nonce when the server asks for one.
"""
