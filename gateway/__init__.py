"""
Oni gateway: channel plugins, routing, sessions, pairing and the RPC surface.
"""
