"""
Kiro Account Manager - multiple Kiro IDE identities on one machine.

Stores and refreshes credentials for social-login, identity-center and
directly imported accounts, drives the single in-flight login handshake
(including kiro:// redirects delivered to a second app instance), and
keeps the system machine id bound to at most one account.

  kiro-accounts login social --idp Github
  kiro-accounts switch <account-id>
  kiro-accounts serve               # command API + relaunch IPC
"""

__version__ = "0.3.0"

__all__ = [
    "__version__",
]
