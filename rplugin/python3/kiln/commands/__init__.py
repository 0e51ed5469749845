"""
Command modules for the Kiln plugin.

This package contains command handlers organized by functionality:
- debug.py: Status and diagnostics
- kernel_mgmt.py: Server connection and kernel management commands
- execution.py: Code execution commands
"""
