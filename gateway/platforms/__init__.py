"""
Channel plugins. ``registry.build_default_registry`` wires the built-in ones.
"""
