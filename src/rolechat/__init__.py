"""
rolechat: role-gated group chat.

Server side: realtime capability tokens derived from role assignments,
and promote/demote transitions against a role store.
Client side: per-channel timeline reconciliation and a chat session SDK.
"""

__version__ = "0.1.0"
