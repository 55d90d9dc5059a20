"""
Agent scope, model resolution, turn running and log redaction.
"""
