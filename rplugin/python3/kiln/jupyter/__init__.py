"""
Jupyter server connection, REST clients and server sessions for the Kiln plugin.
"""
