"""
Kernel discovery, sessions and lifecycle for the Kiln plugin.
"""
